"""Mapping execution engine: runs mappings end-to-end between adapter endpoints."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

from cachetools import LRUCache

from ..adapters import create_adapter
from ..adapters.base import BaseAdapter, Operation
from ..events import EventBus, get_event_bus
from ..exceptions import (
    ConfigurationError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    FlowBridgeError,
    SourceUnavailableError,
    TargetUnavailableError,
    UnsupportedOperationError,
)
from ..models.repository import load_execution_context, persist_execution_context
from ..monitoring.metrics import (
    decrement_active_executions,
    increment_active_executions,
    observe_execution_duration,
    record_execution,
    record_execution_records,
)
from ..pool.manager import ConnectionPoolManager, get_pool_manager
from ..streams import DataStreamOptimizer
from ..utils.config import EndpointDefinition, ExecutionConfig, build_component_config, get_settings
from ..utils.logging import log_execution_outcome, setup_logger
from ..utils.resources import SystemResources, sample_system_resources
from ..validation import ValidationFramework, get_validation_framework
from .context import ExecutionContext, ExecutionStatus
from .dead_letter import DeadLetterQueue
from .errors import unwrap_exception
from .executors import MappingRun, create_executor
from .mapping import MappingDefinition, Transformer, build_mapping, register_transformer
from .strategy import StrategyDecision, calculate_complexity, select_strategy

logger = setup_logger(__name__, context={"component": "engine"})

OBSERVE_KINDS = ("summary", "metrics", "profiling", "context")


class MappingExecutionEngine:
    """
    Runs mapping definitions and tracks the resulting execution contexts.

    Endpoints named by a mapping resolve to adapters registered with
    :meth:`register_adapter_endpoint`, either as ready instances or as an
    adapter type plus configuration created on first use. ``execute``
    raises :class:`ConfigurationError` for invalid mappings or options;
    every other failure is reported through the returned terminal context.
    """

    def __init__(
        self,
        config: ExecutionConfig | Mapping[str, Any] | None = None,
        *,
        endpoints: Mapping[str, BaseAdapter | EndpointDefinition | Mapping[str, Any]] | None = None,
        validation: ValidationFramework | None = None,
        optimizer: DataStreamOptimizer | None = None,
        pool_manager: ConnectionPoolManager | None = None,
        events: EventBus | None = None,
        dead_letters: DeadLetterQueue | None = None,
        resource_sampler: Callable[[], SystemResources] | None = None,
        persist_contexts: bool | None = None,
        history_size: int = 1_000,
        strict: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.strict = settings.strict_config if strict is None else strict
        self.config = self._merge_config(settings.engine, config)
        self.events = events if events is not None else get_event_bus()
        self.validation = validation or get_validation_framework()
        self.optimizer = optimizer or DataStreamOptimizer(settings.stream, events=self.events, strict=self.strict)
        self._pool_manager = pool_manager
        self.dead_letters = dead_letters if dead_letters is not None else DeadLetterQueue()
        self.resource_sampler = resource_sampler or sample_system_resources
        self.persist_contexts = settings.persist_contexts if persist_contexts is None else persist_contexts
        self.include_stacks = not settings.is_production

        self._endpoints: dict[str, BaseAdapter | EndpointDefinition] = {}
        self._adapters: dict[str, BaseAdapter] = {}
        self._owned: set[str] = set()
        self._active: dict[str, ExecutionContext] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._history: LRUCache[str, ExecutionContext] = LRUCache(maxsize=max(1, history_size))
        self._totals: Counter[str] = Counter()
        self._total_duration_ms = 0.0
        self._closed = False

        for name, endpoint in (endpoints or {}).items():
            self.register_adapter_endpoint(name, endpoint)

    @property
    def pool_manager(self) -> ConnectionPoolManager:
        if self._pool_manager is None:
            self._pool_manager = get_pool_manager()
        return self._pool_manager

    # Configuration

    def _merge_config(
        self,
        base: ExecutionConfig,
        *overrides: ExecutionConfig | Mapping[str, Any] | None,
    ) -> ExecutionConfig:
        merged = base.model_dump()
        for override in overrides:
            if override is None:
                continue
            if isinstance(override, ExecutionConfig):
                merged.update(override.model_dump(exclude_unset=True))
                continue
            if not isinstance(override, Mapping):
                raise ConfigurationError(
                    f"Execution options must be a mapping, got {type(override).__name__}"
                )
            # Normalize aliases so later overrides replace earlier values.
            validated = build_component_config(ExecutionConfig, dict(override), strict=self.strict)
            merged.update(validated.model_dump(exclude_unset=True))
        return build_component_config(ExecutionConfig, merged, strict=self.strict)

    def register_adapter_endpoint(
        self,
        name: str,
        endpoint: BaseAdapter | EndpointDefinition | Mapping[str, Any],
    ) -> None:
        """Register an adapter instance, or an adapter type and config, under ``name``."""

        if not isinstance(endpoint, (BaseAdapter, EndpointDefinition)):
            if not isinstance(endpoint, Mapping):
                raise ConfigurationError(f"Endpoint '{name}' must be an adapter or an endpoint definition")
            try:
                endpoint = EndpointDefinition.model_validate(dict(endpoint))
            except ValueError as exc:
                raise ConfigurationError(f"Invalid endpoint '{name}': {exc}") from exc
        self._endpoints[name] = endpoint
        self._adapters.pop(name, None)

    def list_endpoints(self) -> list[str]:
        return sorted(self._endpoints)

    def register_transformer(self, name: str, transformer: Transformer) -> None:
        register_transformer(name, transformer)

    def _resolve_endpoint(self, name: str) -> BaseAdapter:
        if name in self._adapters:
            return self._adapters[name]
        try:
            endpoint = self._endpoints[name]
        except KeyError:
            available = ", ".join(sorted(self._endpoints)) or "none"
            raise ConfigurationError(
                f"Endpoint '{name}' is not registered. Available endpoints: {available}"
            ) from None
        if isinstance(endpoint, BaseAdapter):
            adapter = endpoint
        else:
            config = {"source_id": name, **endpoint.config}
            adapter = create_adapter(endpoint.adapter, config, pool_manager=self.pool_manager, events=self.events)
            self._owned.add(name)
        self._adapters[name] = adapter
        return adapter

    # Execution

    async def execute(
        self,
        mapping: MappingDefinition | Mapping[str, Any],
        config: ExecutionConfig | Mapping[str, Any] | None = None,
        *,
        context_id: str | None = None,
        data: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        **callbacks: Any,
    ) -> ExecutionContext:
        """
        Run ``mapping`` and return its terminal execution context.

        ``callbacks`` accepts ``on_progress``, ``on_error``, ``on_complete``
        and ``on_state_change``.
        """

        definition, exec_config, source, target = self._prepare(mapping, config)
        ctx = ExecutionContext(
            id=context_id,
            mapping_id=definition.id,
            source=definition.source.endpoint,
            target=definition.target.endpoint,
            metadata=metadata,
            config=exec_config,
            data=data,
            events=self.events,
            include_stacks=self.include_stacks,
            **callbacks,
        )
        return await self._run_context(ctx, definition, source, target)

    async def execute_child(
        self,
        parent: ExecutionContext,
        mapping: MappingDefinition | Mapping[str, Any],
        config: ExecutionConfig | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> ExecutionContext:
        """Run ``mapping`` in a child of ``parent`` and merge its metrics back."""

        definition, exec_config, source, target = self._prepare(mapping, parent.config, config)
        child = parent.create_child(
            mapping_id=definition.id,
            source=definition.source.endpoint,
            target=definition.target.endpoint,
            config=exec_config.model_dump(),
            **options,
        )
        await self._run_context(child, definition, source, target)
        parent.merge_child(child)
        return child

    def _prepare(
        self,
        mapping: MappingDefinition | Mapping[str, Any],
        *configs: ExecutionConfig | Mapping[str, Any] | None,
    ) -> tuple[MappingDefinition, ExecutionConfig, BaseAdapter, BaseAdapter]:
        if self._closed:
            raise ConfigurationError("Engine has been shut down")
        definition = build_mapping(mapping)
        exec_config = self._merge_config(self.config, definition.execution or None, *configs)
        source = self._resolve_endpoint(definition.source.endpoint)
        target = self._resolve_endpoint(definition.target.endpoint)
        return definition, exec_config, source, target

    async def _run_context(
        self,
        ctx: ExecutionContext,
        mapping: MappingDefinition,
        source: BaseAdapter,
        target: BaseAdapter,
    ) -> ExecutionContext:
        self._active[ctx.id] = ctx
        self._history[ctx.id] = ctx
        increment_active_executions()
        ctx.start()
        task = asyncio.create_task(self._run(ctx, mapping, source, target))
        self._tasks[ctx.id] = task
        try:
            done, _ = await asyncio.wait({task}, timeout=ctx.config.timeout / 1000)
            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                ctx.fail(ExecutionTimeoutError(f"Execution exceeded timeout of {ctx.config.timeout}ms"))
            else:
                self._settle(ctx, task)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            ctx.cancel("Execution task cancelled")
            raise
        finally:
            self._active.pop(ctx.id, None)
            self._tasks.pop(ctx.id, None)
            decrement_active_executions()
            await self._finalize(ctx)
        return ctx

    def _settle(self, ctx: ExecutionContext, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            ctx.cancel("Execution task cancelled")
            return
        exc = task.exception()
        if exc is None:
            ctx.complete(task.result())
            return
        original = unwrap_exception(exc)
        if isinstance(original, ExecutionCancelledError):
            ctx.cancel(str(original) or "Execution cancelled")
            return
        if isinstance(original, Exception):
            ctx.fail(original)
            return
        raise original

    async def _run(
        self,
        ctx: ExecutionContext,
        mapping: MappingDefinition,
        source: BaseAdapter,
        target: BaseAdapter,
    ) -> dict[str, Any]:
        with ctx.profile("connect"):
            await self._connect(source, SourceUnavailableError, "source", mapping.source.endpoint)
            await self._connect(target, TargetUnavailableError, "target", mapping.target.endpoint)
        source.require_operation(Operation.READ)
        target.require_write_mode(mapping.mode)
        ctx.check_cancelled()

        with ctx.profile("plan"):
            total = await self._estimate_records(source, mapping)
            decision = self._plan(ctx, mapping, total)
        executor = create_executor(
            decision.executor_type,
            batch_size=decision.batch_size,
            parallelism=decision.parallelism,
            optimizer=self.optimizer,
        )
        run = MappingRun(
            context=ctx,
            mapping=mapping,
            source=source,
            target=target,
            validation=self.validation,
            total=total,
            dead_letters=self.dead_letters,
        )
        ctx.log.info(
            "Executing mapping with %s executor (batch size %d, parallelism %d)",
            decision.executor_type,
            decision.batch_size,
            decision.parallelism,
            extra={"status": "running"},
        )
        result = await executor.execute(run)
        ctx.check_cancelled()
        return {**result, "strategy": decision.to_dict()}

    async def _connect(
        self,
        adapter: BaseAdapter,
        error_class: type[FlowBridgeError],
        role: str,
        endpoint: str,
    ) -> None:
        if adapter.is_connected:
            return
        try:
            await adapter.connect()
        except Exception as exc:
            raise error_class(
                f"Could not open {role} endpoint '{endpoint}': {exc}",
                details={"endpoint": endpoint, "adapter_type": adapter.adapter_type},
            ) from exc

    async def _estimate_records(self, source: BaseAdapter, mapping: MappingDefinition) -> int | None:
        if mapping.estimated_records is not None:
            return mapping.estimated_records
        try:
            return await source.count_records(mapping.source.schema_ref, mapping.read_options)
        except UnsupportedOperationError:
            logger.debug("Source '%s' cannot count records", mapping.source.endpoint)
            return None

    def _plan(self, ctx: ExecutionContext, mapping: MappingDefinition, total: int | None) -> StrategyDecision:
        explicit_batch = mapping.batch_size if "batch_size" in mapping.model_fields_set else None
        decision = select_strategy(
            total,
            calculate_complexity(mapping),
            config=ctx.config,
            batch_size=explicit_batch,
            resources=self.resource_sampler(),
        )
        ctx.metadata["executor_type"] = decision.executor_type
        ctx.metadata["strategy"] = decision.to_dict()
        return decision

    async def _finalize(self, ctx: ExecutionContext) -> None:
        status = ctx.status.value
        mapping_id = ctx.mapping_id or "-"
        duration_ms = ctx.state.duration_ms or 0.0
        self._totals[status] += 1
        self._total_duration_ms += duration_ms

        if ctx.config.collect_metrics:
            record_execution(mapping_id, status)
            observe_execution_duration(duration_ms / 1000)
            if ctx.metrics.records_failed:
                record_execution_records(mapping_id, "failed", ctx.metrics.records_failed)

        log_execution_outcome(
            logger,
            ctx.id,
            mapping_id,
            int(duration_ms),
            status,
            records_processed=ctx.metrics.records_processed,
            records_written=ctx.metrics.records_written,
            errors=len(ctx.state.errors),
            retries=ctx.state.retry_count,
        )

        if self.persist_contexts:
            try:
                await asyncio.to_thread(persist_execution_context, ctx.to_dict())
            except Exception:
                logger.error("Failed to persist execution context %s", ctx.id, exc_info=True)

    # Control and observation

    def cancel(self, context_id: str, reason: str = "User cancelled") -> bool:
        """Request cooperative cancellation; True when an active run was cancelled."""

        ctx = self._active.get(context_id)
        if ctx is None:
            return False
        return ctx.cancel(reason)

    def get_context(self, context_id: str) -> ExecutionContext | None:
        return self._active.get(context_id) or self._history.get(context_id)

    def list_active(self) -> list[str]:
        return list(self._active)

    def observe(self, context_id: str, kind: str = "summary") -> dict[str, Any] | None:
        """Return a read-only view (summary, metrics, profiling or context) of a run."""

        if kind not in OBSERVE_KINDS:
            raise ValueError(f"Unknown observation '{kind}'. Expected one of: {', '.join(OBSERVE_KINDS)}")
        ctx = self.get_context(context_id)
        if ctx is None:
            raise KeyError(f"Execution context '{context_id}' is not known to this engine")
        if kind == "summary":
            return ctx.get_summary()
        if kind == "metrics":
            return ctx.get_metrics()
        if kind == "profiling":
            return ctx.get_profiling_report()
        return ctx.to_dict()

    async def load_context(self, context_id: str) -> ExecutionContext | None:
        """Rebuild a context from memory or, when persistence is enabled, the state store."""

        ctx = self.get_context(context_id)
        if ctx is not None or not self.persist_contexts:
            return ctx
        payload = await asyncio.to_thread(load_execution_context, context_id)
        if payload is None:
            return None
        return ExecutionContext.from_dict(payload, events=self.events)

    def get_metrics(self) -> dict[str, Any]:
        total = sum(self._totals.values())
        return {
            "total_executions": total,
            "completed": self._totals[ExecutionStatus.COMPLETED.value],
            "failed": self._totals[ExecutionStatus.FAILED.value],
            "cancelled": self._totals[ExecutionStatus.CANCELLED.value],
            "active_executions": len(self._active),
            "average_execution_time_ms": round(self._total_duration_ms / total, 3) if total else 0.0,
            "dead_letters": self.dead_letters.get_statistics(),
            "streams": self.optimizer.get_metrics(),
            "validation": self.validation.get_metrics(),
        }

    async def shutdown(self, *, grace_period: float = 5.0) -> None:
        """Cancel active runs, wait for them to settle and release adapters and pools."""

        self._closed = True
        for ctx in list(self._active.values()):
            ctx.cancel("Engine shutdown")
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace_period)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for name in sorted(self._owned):
            adapter = self._adapters.get(name)
            if adapter is None:
                continue
            try:
                await adapter.cleanup()
            except Exception:
                logger.error("Failed to clean up adapter for endpoint '%s'", name, exc_info=True)
        self._adapters.clear()
        self._owned.clear()

        await self.optimizer.shutdown()
        await self.pool_manager.shutdown()
        logger.info("Mapping execution engine shutdown complete")

    async def __aenter__(self) -> MappingExecutionEngine:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.shutdown()
