"""Typed lifecycle events published by pools, adapters, streams and the engine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any

from .utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "events"})


class EventType(str, Enum):
    """Names of every event the pipeline can emit."""

    EXECUTION_STARTED = "execution.started"
    EXECUTION_PROGRESS = "execution.progress"
    EXECUTION_ERROR = "execution.error"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_CANCELLED = "execution.cancelled"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_STATE_CHANGED = "execution.state_changed"
    EXECUTION_RETRY = "execution.retry"
    POOL_CONNECT = "pool.connect"
    POOL_DISCONNECT = "pool.disconnect"
    POOL_ACQUIRE = "pool.acquire"
    POOL_RELEASE = "pool.release"
    POOL_ERROR = "pool.error"
    ADAPTER_CONNECTED = "adapter.connected"
    ADAPTER_DISCONNECTED = "adapter.disconnected"
    ADAPTER_BATCH_PROGRESS = "adapter.batch_progress"
    STREAM_BACKPRESSURE = "stream.backpressure"
    STREAM_STAGE_STARTED = "stream.stage_started"
    STREAM_STAGE_COMPLETED = "stream.stage_completed"
    STREAM_STAGE_ERROR = "stream.stage_error"
    STREAM_PIPELINE_COMPLETED = "stream.pipeline_completed"


@dataclass(slots=True, frozen=True)
class Event:
    """A single published event."""

    type: EventType
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable representation of the event."""

        return {
            "type": self.type.value,
            "source": self.source,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], Any]


class EventChannel:
    """Bounded async channel receiving events from an :class:`EventBus`."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._unsubscribe: Callable[[], None] | None = None

    def offer(self, event: Event) -> None:
        """Enqueue an event, counting it as dropped when the channel is full."""

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event:
        """Wait for the next event."""

        return await self._queue.get()

    def drain(self) -> list[Event]:
        """Return every queued event without waiting."""

        events: list[Event] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop receiving events from the bus."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            yield await self._queue.get()


class EventBus:
    """Synchronous fan-out of events to subscribed handlers and channels."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventHandler, frozenset[EventType] | None]] = []
        self._lock = Lock()

    def subscribe(
        self,
        handler: EventHandler,
        types: Iterable[EventType | str] | None = None,
    ) -> Callable[[], None]:
        """Register ``handler`` for the given event types (all when omitted).

        Returns a callable that removes the subscription.
        """

        selected = frozenset(EventType(t) for t in types) if types is not None else None
        entry = (handler, selected)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def channel(
        self,
        types: Iterable[EventType | str] | None = None,
        *,
        maxsize: int = 1000,
    ) -> EventChannel:
        """Return a bounded channel subscribed to the given event types."""

        channel = EventChannel(maxsize=maxsize)
        channel._unsubscribe = self.subscribe(channel.offer, types)
        return channel

    def publish(self, event: Event) -> None:
        """Deliver an event to every matching subscriber."""

        with self._lock:
            subscribers = list(self._subscribers)
        for handler, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                handler(event)
            except Exception:
                logger.warning(
                    "Event handler failed for %s",
                    event.type.value,
                    exc_info=True,
                    extra={"status": "warning"},
                )

    def emit(self, event_type: EventType, source: str, **payload: Any) -> Event:
        """Build and publish an event in one call."""

        event = Event(type=event_type, source=source, payload=payload)
        self.publish(event)
        return event


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Return the process-wide default event bus, creating it lazily."""

    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
