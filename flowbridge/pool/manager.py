"""Named pools of reusable connections with FIFO acquire semantics.

A pool keeps an ordered list of idle connections, a map of connections handed
out to callers and a FIFO queue of waiting acquirers. Each waiter carries its
own deadline timer; releases hand connections straight to the oldest live
waiter so a connection is never owned by two callers.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import uuid4

from ..events import EventBus, EventType, get_event_bus
from ..exceptions import (
    ConnectionFailedError,
    PoolClosedError,
    PoolNotFoundError,
    PoolTimeoutError,
    TransientError,
)
from ..monitoring.metrics import (
    observe_pool_acquire_wait,
    record_pool_event,
    set_pool_connections,
)
from ..utils.config import PoolOptions, build_component_config, get_settings
from ..utils.logging import setup_logger
from ..utils.retry import RetryPolicy, execute_with_retry

logger = setup_logger(__name__, context={"component": "pool"})

T = TypeVar("T")


@dataclass
class ConnectionFactory:
    """Callables used by a pool to manage the lifecycle of raw connections."""

    create: Callable[[], Awaitable[Any]]
    destroy: Callable[[Any], Awaitable[None]] | None = None
    validate: Callable[[Any], Awaitable[bool]] | None = None


@dataclass(slots=True, eq=False)
class PooledConnection:
    """A raw connection handle plus the bookkeeping owned by its pool."""

    id: str
    pool_name: str
    handle: Any
    created_at: datetime
    last_used: float
    in_use: bool = False
    destroyed: bool = False

    def touch(self) -> None:
        """Refresh the last-used timestamp."""

        self.last_used = time.monotonic()


@dataclass(slots=True)
class PoolStatistics:
    """Monotone counters for a pool."""

    created: int = 0
    destroyed: int = 0
    acquired: int = 0
    released: int = 0
    timeouts: int = 0
    errors: int = 0
    rejections: int = 0

    def to_dict(self) -> dict[str, int]:
        """Return the counters as a dictionary."""

        return {
            "created": self.created,
            "destroyed": self.destroyed,
            "acquired": self.acquired,
            "released": self.released,
            "timeouts": self.timeouts,
            "errors": self.errors,
            "rejections": self.rejections,
        }


@dataclass(slots=True, eq=False)
class _Waiter:
    future: asyncio.Future[PooledConnection]
    enqueued_at: float
    timer: asyncio.TimerHandle | None = field(default=None)


class ConnectionPool:
    """A single named pool; use :class:`ConnectionPoolManager` to create one."""

    def __init__(
        self,
        name: str,
        factory: ConnectionFactory,
        options: PoolOptions,
        *,
        events: EventBus | None = None,
    ) -> None:
        self.name = name
        self.options = options
        self.stats = PoolStatistics()
        self._factory = factory
        self._events = events or get_event_bus()
        self._idle: deque[PooledConnection] = deque()
        self._active: dict[str, PooledConnection] = {}
        self._waiters: deque[_Waiter] = deque()
        self._creating = 0
        self._draining = False
        self._destroyed = False
        self._all_released = asyncio.Event()
        self._all_released.set()
        self._maintenance: list[asyncio.Task[None]] = []
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------ gauges
    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def waiting_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.future.done())

    @property
    def total_connections(self) -> int:
        return len(self._idle) + len(self._active) + self._creating

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    # --------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Warm the pool up to its minimum size and start maintenance loops."""

        await self.ensure_minimum()
        if self.options.reap_interval > 0:
            self._maintenance.append(
                asyncio.create_task(
                    self._run_periodically(self.options.reap_interval, self.reap_idle),
                    name=f"pool-reaper-{self.name}",
                )
            )
        if self.options.health_check_interval > 0:
            self._maintenance.append(
                asyncio.create_task(
                    self._run_periodically(self.options.health_check_interval, self.health_check),
                    name=f"pool-health-{self.name}",
                )
            )

    async def acquire(self) -> PooledConnection:
        """Return a connection, waiting up to ``acquire_timeout`` in FIFO order."""

        self._ensure_open()
        started = time.monotonic()

        connection: PooledConnection | None = None
        if not self._has_live_waiters():
            connection = await self._checkout()
        if connection is None:
            connection = await self._wait_for_connection()

        self._mark_acquired(connection, started)
        return connection

    async def release(self, connection: PooledConnection) -> None:
        """Return a connection; invalid connections are destroyed instead of reused."""

        if self._active.get(connection.id) is not connection:
            logger.warning(
                "Ignoring release of connection %s not owned by pool",
                connection.id,
                extra={"status": "warning"},
            )
            return

        valid = not self._destroyed and await self._validate(connection)
        self.stats.released += 1
        self._events.emit(
            EventType.POOL_RELEASE,
            self.name,
            pool=self.name,
            connection_id=connection.id,
            valid=valid,
        )

        if valid:
            self._checkin(connection)
        else:
            self._active.pop(connection.id, None)
            connection.in_use = False
            await self._destroy_connection(connection)
            self._refresh_release_state()
            if not self._destroyed:
                await self._fill_waiters()
        self._publish_gauges()

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Reject queued and future acquires, then wait for in-flight connections.

        Returns False when ``timeout`` seconds pass with connections still leased.
        """

        self._draining = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.timer is not None:
                waiter.timer.cancel()
            if not waiter.future.done():
                waiter.future.set_exception(
                    PoolClosedError(f"Pool '{self.name}' is draining")
                )
                self.stats.rejections += 1
                record_pool_event(self.name, "rejected")
        self._publish_gauges()
        if self._all_released.is_set():
            return True
        try:
            await asyncio.wait_for(self._all_released.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def destroy(self) -> None:
        """
        Drain the pool, stop maintenance and destroy every connection.

        Connections still leased after ``drain_timeout`` are closed underneath
        their holders; a later release of one is ignored.
        """

        if self._destroyed:
            return
        self._destroyed = True
        for task in self._maintenance:
            task.cancel()
        for task in self._maintenance:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._maintenance.clear()

        if not await self.drain(self.options.drain_timeout / 1000.0):
            leaked = list(self._active.values())
            logger.warning(
                "Closing %d connection(s) still leased after %dms",
                len(leaked),
                self.options.drain_timeout,
                extra={"status": "warning", "pool": self.name},
            )
            self._active.clear()
            for connection in leaked:
                await self._destroy_connection(connection)
            self._refresh_release_state()
        while self._idle:
            await self._destroy_connection(self._idle.popleft())
        self._publish_gauges()
        logger.info("Pool destroyed", extra={"status": "destroyed", "pool": self.name})

    # ------------------------------------------------------------- maintenance
    async def reap_idle(self) -> int:
        """Destroy idle connections unused for ``idle_timeout`` while above the minimum."""

        threshold = time.monotonic() - self.options.idle_timeout / 1000.0
        reaped = 0
        for connection in list(self._idle):
            if self.total_connections <= self.options.min_connections:
                break
            if connection.last_used < threshold and connection in self._idle:
                self._idle.remove(connection)
                await self._destroy_connection(connection)
                reaped += 1
        if reaped:
            logger.debug("Reaped %d idle connections", reaped, extra={"pool": self.name})
            self._publish_gauges()
        return reaped

    async def health_check(self) -> int:
        """Validate idle connections, destroy failures, then restore the minimum size."""

        removed = 0
        for connection in list(self._idle):
            if await self._validate(connection):
                continue
            if connection in self._idle:
                self._idle.remove(connection)
                await self._destroy_connection(connection)
                removed += 1
        await self.ensure_minimum()
        self._publish_gauges()
        return removed

    async def ensure_minimum(self) -> None:
        """Create connections until the pool holds at least ``min_connections``."""

        while (
            not self._draining
            and not self._destroyed
            and self.total_connections < self.options.min_connections
        ):
            try:
                connection = await self._create_connection()
            except ConnectionFailedError as exc:
                logger.warning(
                    "Unable to restore minimum pool size: %s",
                    exc,
                    extra={"status": "warning", "pool": self.name},
                )
                break
            self._checkin(connection)
        self._publish_gauges()

    def get_statistics(self) -> dict[str, Any]:
        """Return counters plus current gauges."""

        return {
            "name": self.name,
            **self.stats.to_dict(),
            "size": self.total_connections,
            "active": self.active_count,
            "idle": self.idle_count,
            "waiting": self.waiting_count,
            "draining": self._draining,
            "destroyed": self._destroyed,
            "min_connections": self.options.min_connections,
            "max_connections": self.options.max_connections,
        }

    # ---------------------------------------------------------------- internals
    def _ensure_open(self) -> None:
        if self._destroyed or self._draining:
            self.stats.rejections += 1
            record_pool_event(self.name, "rejected")
            state = "destroyed" if self._destroyed else "draining"
            raise PoolClosedError(f"Pool '{self.name}' is {state}")

    def _has_live_waiters(self) -> bool:
        return any(not waiter.future.done() for waiter in self._waiters)

    async def _checkout(self) -> PooledConnection | None:
        while self._idle:
            connection = self._idle.popleft()
            if connection.destroyed:
                continue
            self._active[connection.id] = connection
            self._all_released.clear()
            return connection

        if self.total_connections < self.options.max_connections:
            connection = await self._create_connection()
            if self._destroyed or self._draining:
                await self._destroy_connection(connection)
                self._ensure_open()
            self._active[connection.id] = connection
            self._all_released.clear()
            return connection
        return None

    async def _wait_for_connection(self) -> PooledConnection:
        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future(), enqueued_at=time.monotonic())
        waiter.timer = loop.call_later(
            self.options.acquire_timeout / 1000.0, self._expire_waiter, waiter
        )
        self._waiters.append(waiter)
        self._publish_gauges()

        if self.total_connections < self.options.max_connections:
            self._spawn(self._fill_waiters())

        try:
            return await waiter.future
        except asyncio.CancelledError:
            self._abandon_waiter(waiter)
            raise

    def _expire_waiter(self, waiter: _Waiter) -> None:
        if waiter.future.done():
            return
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        self.stats.timeouts += 1
        record_pool_event(self.name, "timeout")
        waiter.future.set_exception(PoolTimeoutError(self.name, self.options.acquire_timeout))
        self._publish_gauges()

    def _abandon_waiter(self, waiter: _Waiter) -> None:
        if waiter.timer is not None:
            waiter.timer.cancel()
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        future = waiter.future
        if future.done() and not future.cancelled() and future.exception() is None:
            # Handed over just before the caller was cancelled; give it back.
            connection = future.result()
            self._checkin(connection)
        self._publish_gauges()

    def _next_waiter(self) -> _Waiter | None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                return waiter
        return None

    def _checkin(self, connection: PooledConnection) -> None:
        """Hand a healthy connection to the oldest waiter or park it as idle."""

        connection.touch()
        waiter = None if (self._draining or self._destroyed) else self._next_waiter()
        if waiter is not None:
            if waiter.timer is not None:
                waiter.timer.cancel()
            connection.in_use = True
            self._active[connection.id] = connection
            self._all_released.clear()
            waiter.future.set_result(connection)
        else:
            self._active.pop(connection.id, None)
            connection.in_use = False
            if self._destroyed:
                self._spawn(self._destroy_connection(connection))
            else:
                self._idle.append(connection)
        self._refresh_release_state()
        self._publish_gauges()

    async def _fill_waiters(self) -> None:
        while (
            self._has_live_waiters()
            and not self._draining
            and not self._destroyed
            and self.total_connections < self.options.max_connections
        ):
            try:
                connection = await self._create_connection()
            except ConnectionFailedError as exc:
                waiter = self._next_waiter()
                if waiter is not None:
                    if waiter.timer is not None:
                        waiter.timer.cancel()
                    waiter.future.set_exception(exc)
                continue
            self._checkin(connection)

    def _mark_acquired(self, connection: PooledConnection, started: float) -> None:
        connection.in_use = True
        connection.touch()
        self._active[connection.id] = connection
        self._all_released.clear()
        self.stats.acquired += 1
        waited = time.monotonic() - started
        observe_pool_acquire_wait(self.name, waited)
        self._events.emit(
            EventType.POOL_ACQUIRE,
            self.name,
            pool=self.name,
            connection_id=connection.id,
            wait_ms=int(waited * 1000),
        )
        self._publish_gauges()

    def _refresh_release_state(self) -> None:
        if self._active:
            self._all_released.clear()
        else:
            self._all_released.set()

    async def _create_connection(self) -> PooledConnection:
        timeout = self.options.create_timeout / 1000.0
        policy = RetryPolicy(max_attempts=self.options.max_retries, initial_delay=100, max_delay=2_000)

        async def _create() -> Any:
            return await asyncio.wait_for(self._factory.create(), timeout=timeout)

        self._creating += 1
        try:
            handle = await execute_with_retry(
                _create,
                policy=policy,
                is_retryable=lambda exc: isinstance(
                    exc, (asyncio.TimeoutError, OSError, TransientError)
                ),
                log=logger,
            )
        except Exception as exc:
            self.stats.errors += 1
            record_pool_event(self.name, "error")
            self._events.emit(EventType.POOL_ERROR, self.name, pool=self.name, error=str(exc))
            raise ConnectionFailedError(
                f"Failed to create connection for pool '{self.name}': {exc}",
                details={"pool": self.name},
            ) from exc
        finally:
            self._creating -= 1

        connection = PooledConnection(
            id=f"{self.name}_{int(time.time() * 1000)}_{uuid4().hex[:8]}",
            pool_name=self.name,
            handle=handle,
            created_at=datetime.now(timezone.utc),
            last_used=time.monotonic(),
        )
        self.stats.created += 1
        record_pool_event(self.name, "created")
        self._events.emit(EventType.POOL_CONNECT, self.name, pool=self.name, connection_id=connection.id)
        return connection

    async def _destroy_connection(self, connection: PooledConnection) -> None:
        if connection.destroyed:
            return
        connection.destroyed = True
        connection.in_use = False
        try:
            if self._factory.destroy is not None:
                await self._factory.destroy(connection.handle)
            else:
                close = getattr(connection.handle, "close", None)
                if close is not None:
                    result = close()
                    if asyncio.iscoroutine(result):
                        await result
        except Exception as exc:
            self.stats.errors += 1
            logger.warning(
                "Failed to close connection %s: %s",
                connection.id,
                exc,
                exc_info=True,
                extra={"status": "warning", "pool": self.name},
            )
        finally:
            self.stats.destroyed += 1
            record_pool_event(self.name, "destroyed")
            self._events.emit(
                EventType.POOL_DISCONNECT, self.name, pool=self.name, connection_id=connection.id
            )

    async def _validate(self, connection: PooledConnection) -> bool:
        if connection.destroyed:
            return False
        if self._factory.validate is None:
            return True
        try:
            return bool(await self._factory.validate(connection.handle))
        except Exception as exc:
            logger.debug(
                "Connection %s failed validation: %s",
                connection.id,
                exc,
                extra={"pool": self.name},
            )
            return False

    async def _run_periodically(self, interval_ms: int, task: Callable[[], Awaitable[Any]]) -> None:
        while not self._destroyed:
            await asyncio.sleep(interval_ms / 1000.0)
            try:
                await task()
            except Exception:
                logger.warning(
                    "Pool maintenance task failed",
                    exc_info=True,
                    extra={"status": "warning", "pool": self.name},
                )

    def _spawn(self, coroutine: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _publish_gauges(self) -> None:
        set_pool_connections(
            self.name,
            idle=self.idle_count,
            active=self.active_count,
            waiting=self.waiting_count,
        )


class ConnectionPoolManager:
    """Registry of named connection pools."""

    def __init__(
        self,
        defaults: PoolOptions | dict[str, Any] | None = None,
        *,
        events: EventBus | None = None,
        strict: bool = False,
    ) -> None:
        self._strict = strict
        self._defaults = build_component_config(PoolOptions, defaults, strict=strict)
        self._events = events or get_event_bus()
        self._pools: dict[str, ConnectionPool] = {}
        self._lock = asyncio.Lock()

    @property
    def defaults(self) -> PoolOptions:
        return self._defaults

    async def create_pool(
        self,
        name: str,
        factory: ConnectionFactory,
        options: PoolOptions | dict[str, Any] | None = None,
    ) -> ConnectionPool:
        """Create and warm a pool; returns the existing pool when ``name`` is taken."""

        async with self._lock:
            existing = self._pools.get(name)
            if existing is not None and not existing.is_destroyed:
                return existing

            if isinstance(options, dict):
                merged = {**self._defaults.model_dump(), **options}
                resolved = build_component_config(PoolOptions, merged, strict=self._strict)
            elif options is None:
                resolved = self._defaults
            else:
                resolved = options

            pool = ConnectionPool(name, factory, resolved, events=self._events)
            self._pools[name] = pool

        await pool.start()
        logger.info(
            "Created pool with %d-%d connections",
            resolved.min_connections,
            resolved.max_connections,
            extra={"status": "created", "pool": name},
        )
        return pool

    def get_pool(self, name: str) -> ConnectionPool:
        """Return the named pool."""

        pool = self._pools.get(name)
        if pool is None:
            available = ", ".join(sorted(self._pools)) or "none"
            raise PoolNotFoundError(f"Pool '{name}' does not exist. Available pools: {available}.")
        return pool

    def has_pool(self, name: str) -> bool:
        return name in self._pools

    async def acquire(self, name: str) -> PooledConnection:
        """Acquire a connection from the named pool."""

        return await self.get_pool(name).acquire()

    async def release(self, name: str, connection: PooledConnection) -> None:
        """Release a connection back to the named pool."""

        await self.get_pool(name).release(connection)

    async def execute_with(self, name: str, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``fn(handle)`` on a pooled connection, releasing it on every path."""

        pool = self.get_pool(name)
        connection = await pool.acquire()
        try:
            return await fn(connection.handle)
        finally:
            await pool.release(connection)

    @asynccontextmanager
    async def lease(self, name: str) -> AsyncIterator[Any]:
        """Async context manager yielding a raw connection handle."""

        pool = self.get_pool(name)
        connection = await pool.acquire()
        try:
            yield connection.handle
        finally:
            await pool.release(connection)

    async def drain_pool(self, name: str, timeout: float | None = None) -> bool:
        return await self.get_pool(name).drain(timeout)

    async def destroy_pool(self, name: str) -> None:
        """Destroy the named pool and forget it."""

        pool = self.get_pool(name)
        await pool.destroy()
        self._pools.pop(name, None)

    async def shutdown(self) -> None:
        """Destroy every pool."""

        pools = list(self._pools.values())
        self._pools.clear()
        await asyncio.gather(*(pool.destroy() for pool in pools))

    def get_pool_statistics(self, name: str | None = None) -> dict[str, Any]:
        """Return statistics for one pool or every pool keyed by name."""

        if name is not None:
            return self.get_pool(name).get_statistics()
        return {pool_name: pool.get_statistics() for pool_name, pool in self._pools.items()}

    def get_metrics(self) -> dict[str, Any]:
        """Return totals across all pools."""

        totals: dict[str, Any] = {
            "pools": len(self._pools),
            "total_connections": 0,
            "active": 0,
            "idle": 0,
            "waiting": 0,
            "created": 0,
            "destroyed": 0,
            "acquired": 0,
            "released": 0,
            "timeouts": 0,
            "errors": 0,
            "rejections": 0,
        }
        for pool in self._pools.values():
            stats = pool.get_statistics()
            totals["total_connections"] += stats["size"]
            for key in (
                "active",
                "idle",
                "waiting",
                "created",
                "destroyed",
                "acquired",
                "released",
                "timeouts",
                "errors",
                "rejections",
            ):
                totals[key] += stats[key]
        return totals


_pool_manager: ConnectionPoolManager | None = None


def get_pool_manager() -> ConnectionPoolManager:
    """Return the process-wide pool manager configured from global settings."""

    global _pool_manager
    if _pool_manager is None:
        settings = get_settings()
        _pool_manager = ConnectionPoolManager(settings.pool, strict=settings.strict_config)
    return _pool_manager


def reset_pool_manager() -> None:
    """Forget the process-wide manager (used in tests)."""

    global _pool_manager
    _pool_manager = None
