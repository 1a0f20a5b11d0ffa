"""Prometheus metrics definitions for flowbridge."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

EXECUTIONS = Counter(
    "flowbridge_executions_total",
    "Total mapping executions by mapping and terminal status.",
    labelnames=("mapping", "status"),
)

EXECUTION_DURATION = Histogram(
    "flowbridge_execution_duration_seconds",
    "Distribution of mapping execution durations in seconds.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)

EXECUTION_RECORDS = Counter(
    "flowbridge_execution_records_total",
    "Records handled by mapping executions grouped by outcome.",
    labelnames=("mapping", "outcome"),
)

EXECUTION_RETRIES = Counter(
    "flowbridge_execution_retries_total",
    "Retries performed by mapping executions.",
    labelnames=("mapping",),
)

ACTIVE_EXECUTIONS = Gauge(
    "flowbridge_active_executions",
    "Number of mapping executions currently running.",
)

# Connection pool metrics
POOL_CONNECTIONS = Gauge(
    "flowbridge_pool_connections",
    "Current connections per pool grouped by state.",
    labelnames=("pool", "state"),
)

POOL_EVENTS = Counter(
    "flowbridge_pool_events_total",
    "Connection pool lifecycle events.",
    labelnames=("pool", "event"),
)

POOL_ACQUIRE_WAIT = Histogram(
    "flowbridge_pool_acquire_wait_seconds",
    "Time spent waiting to acquire a pooled connection.",
    labelnames=("pool",),
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30),
)

# Stream metrics
STREAM_RECORDS = Counter(
    "flowbridge_stream_records_total",
    "Elements processed by stream stages grouped by stream kind and outcome.",
    labelnames=("kind", "outcome"),
)

STREAM_BACKPRESSURE = Counter(
    "flowbridge_stream_backpressure_total",
    "Backpressure events raised by stream stages.",
    labelnames=("kind",),
)

# Validation metrics
VALIDATION_RESULTS = Counter(
    "flowbridge_validation_results_total",
    "Validation outcomes grouped by validator.",
    labelnames=("validator", "outcome"),
)

VALIDATION_CACHE = Counter(
    "flowbridge_validation_cache_total",
    "Validation cache lookups grouped by result.",
    labelnames=("result",),
)

# Adapter metrics
ADAPTER_OPERATION_DURATION = Histogram(
    "flowbridge_adapter_operation_duration_seconds",
    "Distribution of adapter operation durations in seconds.",
    labelnames=("adapter", "operation"),
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

ADAPTER_ERRORS = Counter(
    "flowbridge_adapter_errors_total",
    "Adapter operation failures grouped by taxonomy kind.",
    labelnames=("adapter", "operation", "kind"),
)


def record_execution(mapping: str, status: str) -> None:
    """Increment the executions counter for a terminal status."""

    EXECUTIONS.labels(mapping=mapping, status=status).inc()


def observe_execution_duration(duration_seconds: float) -> None:
    """Record a mapping execution duration in seconds."""

    EXECUTION_DURATION.observe(max(duration_seconds, 0.0))


def record_execution_records(mapping: str, outcome: str, count: int = 1) -> None:
    """Count records written, failed or skipped by a run."""

    if count > 0:
        EXECUTION_RECORDS.labels(mapping=mapping, outcome=outcome).inc(count)


def record_execution_retry(mapping: str) -> None:
    """Increment the retry counter for a mapping."""

    EXECUTION_RETRIES.labels(mapping=mapping).inc()


def increment_active_executions() -> None:
    """Increment the running executions gauge."""
    ACTIVE_EXECUTIONS.inc()


def decrement_active_executions() -> None:
    """Decrement the running executions gauge."""
    ACTIVE_EXECUTIONS.dec()


def set_pool_connections(pool: str, *, idle: int, active: int, waiting: int) -> None:
    """
    Publish the current connection gauges for a pool.

    Args:
        pool: Pool name
        idle: Idle connections
        active: Connections handed out to callers
        waiting: Queued acquire requests
    """
    POOL_CONNECTIONS.labels(pool=pool, state="idle").set(idle)
    POOL_CONNECTIONS.labels(pool=pool, state="active").set(active)
    POOL_CONNECTIONS.labels(pool=pool, state="waiting").set(waiting)


def record_pool_event(pool: str, event: str) -> None:
    """Increment the pool lifecycle counter (created, destroyed, timeout, error, rejected)."""

    POOL_EVENTS.labels(pool=pool, event=event).inc()


def observe_pool_acquire_wait(pool: str, duration_seconds: float) -> None:
    """Record how long an acquire waited for a connection."""

    POOL_ACQUIRE_WAIT.labels(pool=pool).observe(max(duration_seconds, 0.0))


def record_stream_records(kind: str, outcome: str, count: int = 1) -> None:
    """Count elements processed by a stream stage."""

    if count > 0:
        STREAM_RECORDS.labels(kind=kind, outcome=outcome).inc(count)


def record_stream_backpressure(kind: str) -> None:
    """Increment the backpressure counter for a stream kind."""

    STREAM_BACKPRESSURE.labels(kind=kind).inc()


def record_validation_result(validator: str, valid: bool) -> None:
    """Count a validation outcome for the named validator."""

    VALIDATION_RESULTS.labels(validator=validator, outcome="valid" if valid else "invalid").inc()


def record_validation_cache(hit: bool) -> None:
    """Count a validation cache lookup."""

    VALIDATION_CACHE.labels(result="hit" if hit else "miss").inc()


def observe_adapter_operation(adapter: str, operation: str, duration_seconds: float) -> None:
    """
    Record the duration of an adapter operation.

    Args:
        adapter: Adapter type
        operation: Contract operation name (read, write, query, discover, ...)
        duration_seconds: Duration in seconds
    """
    ADAPTER_OPERATION_DURATION.labels(adapter=adapter, operation=operation).observe(
        max(duration_seconds, 0.0)
    )


def record_adapter_error(adapter: str, operation: str, kind: str) -> None:
    """Count an adapter failure by taxonomy kind."""

    ADAPTER_ERRORS.labels(adapter=adapter, operation=operation, kind=kind).inc()
