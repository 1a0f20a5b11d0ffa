"""Execution context: state machine, metrics, profiling and persistence of one mapping run."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..events import EventBus, EventType
from ..exceptions import ExecutionCancelledError, InternalError
from ..utils.config import ExecutionConfig, build_component_config
from ..utils.logging import setup_logger
from ..utils.resources import current_rss_bytes, process_cpu_seconds
from .errors import ExecutionError, ExecutionWarning

logger = setup_logger(__name__, context={"component": "engine"})

# Resident memory is sampled once per this many processed records.
MEMORY_SAMPLE_INTERVAL = 100


class ExecutionStatus(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})

_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.INITIALIZED: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class ExecutionState:
    status: ExecutionStatus = ExecutionStatus.INITIALIZED
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float | None = None
    progress: int = 0
    records_processed: int = 0
    retry_count: int = 0
    cancel_reason: str | None = None
    errors: list[ExecutionError] = field(default_factory=list)
    warnings: list[ExecutionWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
            "duration_ms": self.duration_ms,
            "progress": self.progress,
            "records_processed": self.records_processed,
            "retry_count": self.retry_count,
            "cancel_reason": self.cancel_reason,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionState:
        return cls(
            status=ExecutionStatus(data.get("status", ExecutionStatus.INITIALIZED.value)),
            start_time=_parse_datetime(data.get("start_time")),
            end_time=_parse_datetime(data.get("end_time")),
            duration_ms=data.get("duration_ms"),
            progress=data.get("progress", 0),
            records_processed=data.get("records_processed", 0),
            retry_count=data.get("retry_count", 0),
            cancel_reason=data.get("cancel_reason"),
            errors=[ExecutionError.from_dict(item) for item in data.get("errors") or []],
            warnings=[ExecutionWarning.from_dict(item) for item in data.get("warnings") or []],
        )


@dataclass(slots=True)
class ExecutionMetrics:
    records_processed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_written: int = 0
    batches: int = 0
    total_execution_time_ms: float = 0.0
    average_record_time_ms: float = 0.0
    peak_memory_bytes: int = 0
    cpu_time_seconds: float = 0.0
    throughput: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionMetrics:
        known = cls.__dataclass_fields__
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True)
class StageProfile:
    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float | None = None
    max_time_ms: float = 0.0
    memory_delta_bytes: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count else 0.0

    def observe(self, duration_ms: float, memory_delta: int) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.min_time_ms = duration_ms if self.min_time_ms is None else min(self.min_time_ms, duration_ms)
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.memory_delta_bytes += memory_delta

    def merge(self, other: StageProfile) -> None:
        self.count += other.count
        self.total_time_ms += other.total_time_ms
        if other.min_time_ms is not None:
            self.min_time_ms = (
                other.min_time_ms if self.min_time_ms is None else min(self.min_time_ms, other.min_time_ms)
            )
        self.max_time_ms = max(self.max_time_ms, other.max_time_ms)
        self.memory_delta_bytes += other.memory_delta_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_time_ms": round(self.total_time_ms, 3),
            "min_time_ms": round(self.min_time_ms, 3) if self.min_time_ms is not None else None,
            "max_time_ms": round(self.max_time_ms, 3),
            "avg_time_ms": round(self.avg_time_ms, 3),
            "memory_delta_bytes": self.memory_delta_bytes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageProfile:
        return cls(
            count=data.get("count", 0),
            total_time_ms=data.get("total_time_ms", 0.0),
            min_time_ms=data.get("min_time_ms"),
            max_time_ms=data.get("max_time_ms", 0.0),
            memory_delta_bytes=data.get("memory_delta_bytes", 0),
        )


Callback = Callable[[dict[str, Any]], Any]


class ExecutionContext:
    """
    Runtime state of one mapping run.

    Status follows ``initialized -> running -> {completed, failed, cancelled}``
    with ``running -> running`` allowed for retries; terminal states are
    sticky and later transition requests are ignored. Every transition is
    published as ``execution.state_changed`` and reported to the
    ``on_state_change`` callback.
    """

    def __init__(
        self,
        *,
        id: str | None = None,
        parent_id: str | None = None,
        mapping_id: str | None = None,
        source: str = "unknown",
        target: str = "unknown",
        executor_type: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        config: ExecutionConfig | Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
        events: EventBus | None = None,
        include_stacks: bool = True,
        on_progress: Callback | None = None,
        on_error: Callback | None = None,
        on_complete: Callback | None = None,
        on_state_change: Callback | None = None,
    ) -> None:
        self.id = id or str(uuid.uuid4())
        self.parent_id = parent_id
        self.created_at = _utcnow()
        self.updated_at = self.created_at
        self.metadata: dict[str, Any] = {
            "source": source,
            "target": target,
            "mapping_id": mapping_id,
            "executor_type": executor_type,
            **dict(metadata or {}),
        }
        if isinstance(config, Mapping):
            config = dict(config)
        self.config: ExecutionConfig = build_component_config(ExecutionConfig, config)
        self.state = ExecutionState()
        self.metrics = ExecutionMetrics()
        self.profiling: dict[str, StageProfile] | None = {} if self.config.enable_profiling else None
        self.profiling_summary: dict[str, Any] = {}
        self.data: dict[str, Any] = dict(data or {})
        self.events = events
        self.include_stacks = include_stacks
        self.callbacks: dict[str, Callback | None] = {
            "on_progress": on_progress,
            "on_error": on_error,
            "on_complete": on_complete,
            "on_state_change": on_state_change,
        }
        self._failure: BaseException | None = None
        self._profile_started: tuple[float, int] | None = None
        self._cpu_started: float | None = None
        self._unsampled_records = 0
        self.log = logger.bind(execution_id=self.id, mapping_id=self.mapping_id or "-")

    # Identity

    @property
    def mapping_id(self) -> str | None:
        return self.metadata.get("mapping_id")

    @property
    def status(self) -> ExecutionStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.state.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.state.status is ExecutionStatus.CANCELLED

    # Lifecycle

    def _transition(self, new_status: ExecutionStatus, data: Any = None) -> bool:
        previous = self.state.status
        if new_status not in _TRANSITIONS[previous]:
            self.log.debug("Ignoring transition %s -> %s", previous.value, new_status.value)
            return False

        now = _utcnow()
        self.state.status = new_status
        self.updated_at = now
        if new_status.is_terminal:
            self.state.end_time = now
            if self.state.start_time is not None:
                self.state.duration_ms = round((now - self.state.start_time).total_seconds() * 1000, 3)
            else:
                self.state.duration_ms = 0.0

        payload = {
            "context_id": self.id,
            "previous_state": previous.value,
            "new_state": new_status.value,
            "data": data,
            "timestamp": now.isoformat(),
        }
        self._emit(EventType.EXECUTION_STATE_CHANGED, **payload)
        self._invoke("on_state_change", payload)
        return True

    def start(self) -> None:
        if not self._transition(ExecutionStatus.RUNNING):
            return
        self.state.start_time = self.updated_at
        self.state.end_time = None
        self.state.duration_ms = None
        self._cpu_started = process_cpu_seconds()
        if self.config.enable_profiling:
            self._profile_started = (time.perf_counter(), current_rss_bytes())
        self._emit(EventType.EXECUTION_STARTED, mapping_id=self.mapping_id, parent_id=self.parent_id)
        self.log.info("Execution context started", extra={"status": "running"})

    def mark_retry(self, attempt: int, error: BaseException) -> None:
        """Record a retry (``running -> running``)."""

        self.state.retry_count += 1
        self._transition(ExecutionStatus.RUNNING, {"attempt": attempt, "error": str(error)})
        self._emit(EventType.EXECUTION_RETRY, attempt=attempt, error=str(error), retry_count=self.state.retry_count)

    def complete(self, result: Any = None) -> bool:
        if not self._transition(ExecutionStatus.COMPLETED, result):
            return False
        self.state.progress = 100
        self._finish()
        self._emit(EventType.EXECUTION_COMPLETED, metrics=self.get_metrics())
        self._invoke(
            "on_complete",
            {
                "context_id": self.id,
                "result": result,
                "metrics": self.get_metrics(),
                "duration_ms": self.state.duration_ms,
            },
        )
        return True

    def fail(self, error: BaseException, *, record: Any = None) -> bool:
        if self.is_terminal:
            return False
        self.add_error(error, record=record, failed_records=0)
        if not self._transition(ExecutionStatus.FAILED, str(error)):
            return False
        self._failure = error
        self._finish()
        self._emit(EventType.EXECUTION_FAILED, error=str(error), kind=self.state.errors[-1].kind)
        return True

    def cancel(self, reason: str = "User cancelled") -> bool:
        if not self._transition(ExecutionStatus.CANCELLED, reason):
            return False
        self.state.cancel_reason = reason
        self._finish()
        self._emit(EventType.EXECUTION_CANCELLED, reason=reason)
        self.log.info("Execution context cancelled: %s", reason, extra={"status": "cancelled"})
        return True

    def check_cancelled(self) -> None:
        """Raise :class:`ExecutionCancelledError` once the run has been cancelled."""

        if self.is_cancelled:
            raise ExecutionCancelledError(self.state.cancel_reason or "Execution cancelled")

    def _finish(self) -> None:
        if self.config.collect_metrics:
            self.sample_memory()
        self._stop_profiling()
        self._calculate_final_metrics()

    # Progress, errors and metrics

    def update_progress(self, current: int, total: int | None, message: str | None = None) -> None:
        self.state.records_processed = current
        if total:
            self.state.progress = max(0, min(100, round(current / total * 100)))
        self.updated_at = _utcnow()
        progress = {"current": current, "total": total, "percent": self.state.progress, "message": message}
        self._emit(EventType.EXECUTION_PROGRESS, **progress)
        self._invoke("on_progress", {"context_id": self.id, **progress})

    def add_error(
        self,
        error: BaseException | ExecutionError,
        *,
        record: Any = None,
        failed_records: int = 1,
    ) -> ExecutionError:
        """Record an error against ``failed_records`` records (0 for run-level failures)."""

        entry = (
            error
            if isinstance(error, ExecutionError)
            else ExecutionError.from_exception(error, record=record, include_stack=self.include_stacks)
        )
        self.state.errors.append(entry)
        self.metrics.records_failed += failed_records
        self.updated_at = _utcnow()
        self._emit(EventType.EXECUTION_ERROR, record=record, error=entry.message, kind=entry.kind)
        self._invoke("on_error", entry.to_dict())
        return entry

    def add_warning(self, message: str, details: Mapping[str, Any] | None = None) -> None:
        self.state.warnings.append(ExecutionWarning(message=message, details=dict(details or {})))

    def increment_retry(self) -> bool:
        """Count a retry; True while retries remain within ``retry_attempts``."""

        self.state.retry_count += 1
        return self.state.retry_count <= self.config.retry_attempts

    def get_retry_delay(self) -> float:
        """Return the next backoff delay in milliseconds."""

        exponent = max(self.state.retry_count - 1, 0)
        return min(self.config.retry_delay * (2**exponent), self.config.max_retry_delay)

    def record_processed(self, count: int = 1, *, execution_time_ms: float = 0.0) -> None:
        if not self.config.collect_metrics:
            return
        self.metrics.records_processed += count
        self.metrics.total_execution_time_ms += execution_time_ms
        if self.metrics.records_processed:
            self.metrics.average_record_time_ms = self.metrics.total_execution_time_ms / self.metrics.records_processed
        self._unsampled_records += count
        if self._unsampled_records >= MEMORY_SAMPLE_INTERVAL or not self.metrics.peak_memory_bytes:
            self.sample_memory()

    def sample_memory(self) -> None:
        self._unsampled_records = 0
        rss = current_rss_bytes()
        if rss > self.metrics.peak_memory_bytes:
            self.metrics.peak_memory_bytes = rss

    # Profiling

    @contextmanager
    def profile(self, stage: str) -> Iterator[None]:
        """Time a stage and record its resident-set delta when profiling is enabled."""

        if self.profiling is None:
            yield
            return
        started = time.perf_counter()
        rss_before = current_rss_bytes()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            delta = current_rss_bytes() - rss_before
            self.profiling.setdefault(stage, StageProfile()).observe(duration_ms, delta)

    def _stop_profiling(self) -> None:
        if self._profile_started is None:
            return
        started, rss_before = self._profile_started
        self.profiling_summary = {
            "total_duration_ms": round((time.perf_counter() - started) * 1000, 3),
            "memory_delta_bytes": current_rss_bytes() - rss_before,
        }
        self._profile_started = None

    def _calculate_final_metrics(self) -> None:
        duration = self.state.duration_ms or 0.0
        if duration > 0 and self.metrics.records_processed > 0:
            self.metrics.throughput = round(self.metrics.records_processed / duration * 1000, 3)
        if self._cpu_started is not None:
            self.metrics.cpu_time_seconds = round(process_cpu_seconds() - self._cpu_started, 6)

    # Children

    def create_child(self, **options: Any) -> ExecutionContext:
        """Return a context inheriting metadata, config and data."""

        metadata = {**self.metadata, **dict(options.pop("metadata", None) or {})}
        for key in ("source", "target", "mapping_id", "executor_type"):
            if options.get(key) is not None:
                metadata[key] = options.pop(key)
            else:
                options.pop(key, None)
        config = {**self.config.model_dump(), **dict(options.pop("config", None) or {})}
        data = {**self.data, **dict(options.pop("data", None) or {})}
        options.setdefault("events", self.events)
        options.setdefault("include_stacks", self.include_stacks)
        return ExecutionContext(
            parent_id=self.id,
            source=metadata.pop("source"),
            target=metadata.pop("target"),
            mapping_id=metadata.pop("mapping_id"),
            executor_type=metadata.pop("executor_type"),
            metadata=metadata,
            config=config,
            data=data,
            **options,
        )

    def merge_child(self, child: ExecutionContext) -> None:
        """Fold a child's metrics, errors, warnings and profiling into this context."""

        self.metrics.records_processed += child.metrics.records_processed
        self.metrics.records_failed += child.metrics.records_failed
        self.state.retry_count += child.state.retry_count
        self.metrics.records_skipped += child.metrics.records_skipped
        self.metrics.records_written += child.metrics.records_written
        self.metrics.batches += child.metrics.batches
        self.metrics.total_execution_time_ms += child.metrics.total_execution_time_ms
        if self.metrics.records_processed:
            self.metrics.average_record_time_ms = self.metrics.total_execution_time_ms / self.metrics.records_processed
        self.metrics.peak_memory_bytes = max(self.metrics.peak_memory_bytes, child.metrics.peak_memory_bytes)

        self.state.errors.extend(child.state.errors)
        self.state.warnings.extend(child.state.warnings)

        if self.profiling is not None and child.profiling:
            for stage, profile in child.profiling.items():
                if stage in self.profiling:
                    self.profiling[stage].merge(profile)
                else:
                    self.profiling[stage] = replace(profile)
        self.updated_at = _utcnow()

    # Reporting

    def get_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "status": self.state.status.value,
            "progress": self.state.progress,
            "start_time": _isoformat(self.state.start_time),
            "end_time": _isoformat(self.state.end_time),
            "duration_ms": self.state.duration_ms,
            "records_processed": self.state.records_processed,
            "retry_count": self.state.retry_count,
            "errors": len(self.state.errors),
            "warnings": len(self.state.warnings),
            "metadata": dict(self.metadata),
        }

    def get_metrics(self) -> dict[str, Any]:
        processed = self.metrics.records_processed
        failed = self.metrics.records_failed
        return {
            **self.metrics.to_dict(),
            "error_rate": round(failed / processed * 100, 2) if processed else 0.0,
            "success_rate": round((processed - failed) / processed * 100, 2) if processed else 0.0,
        }

    def get_profiling_report(self) -> dict[str, Any] | None:
        if self.profiling is None:
            return None
        stages = {name: profile.to_dict() for name, profile in self.profiling.items()}
        return {
            **self.profiling_summary,
            "stages": stages,
            "summary": {
                "total_stages": len(stages),
                "total_stage_executions": sum(profile.count for profile in self.profiling.values()),
                "total_stage_time_ms": round(sum(p.total_time_ms for p in self.profiling.values()), 3),
            },
        }

    def raise_for_status(self) -> None:
        """Re-raise the terminal error of a failed or cancelled run."""

        if self.state.status is ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(self.state.cancel_reason or "Execution cancelled")
        if self.state.status is not ExecutionStatus.FAILED:
            return
        if self._failure is not None:
            raise self._failure
        last = self.state.errors[-1] if self.state.errors else None
        raise InternalError(last.message if last else "Execution failed", code=last.code if last else None)

    @property
    def failure(self) -> BaseException | None:
        return self._failure

    # Persistence

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
            "config": self.config.model_dump(),
            "state": self.state.to_dict(),
            "metrics": self.metrics.to_dict(),
            "profiling": (
                {name: profile.to_dict() for name, profile in self.profiling.items()}
                if self.profiling is not None
                else None
            ),
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, events: EventBus | None = None) -> ExecutionContext:
        metadata = dict(payload.get("metadata") or {})
        context = cls(
            id=payload["id"],
            parent_id=payload.get("parent_id"),
            source=metadata.pop("source", "unknown"),
            target=metadata.pop("target", "unknown"),
            mapping_id=metadata.pop("mapping_id", None),
            executor_type=metadata.pop("executor_type", None),
            metadata=metadata,
            config=payload.get("config"),
            data=payload.get("data"),
            events=events,
        )
        context.created_at = _parse_datetime(payload.get("created_at")) or context.created_at
        context.updated_at = _parse_datetime(payload.get("updated_at")) or context.updated_at
        context.state = ExecutionState.from_dict(payload.get("state") or {})
        context.metrics = ExecutionMetrics.from_dict(payload.get("metrics") or {})
        profiling = payload.get("profiling")
        context.profiling = (
            {name: StageProfile.from_dict(item) for name, item in profiling.items()} if profiling is not None else None
        )
        return context

    # Observers

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        if self.events is not None:
            payload.setdefault("context_id", self.id)
            self.events.emit(event_type, self.id, **payload)

    def _invoke(self, name: str, payload: dict[str, Any]) -> None:
        callback = self.callbacks.get(name)
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            self.log.warning("Execution callback %s failed", name, exc_info=True, extra={"status": "warning"})

    def __repr__(self) -> str:
        return f"ExecutionContext(id={self.id!r}, status={self.state.status.value!r})"
