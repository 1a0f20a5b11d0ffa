"""Tests for Prometheus metrics helpers."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from flowbridge.monitoring.metrics import (
    decrement_active_executions,
    increment_active_executions,
    observe_adapter_operation,
    observe_execution_duration,
    observe_pool_acquire_wait,
    record_adapter_error,
    record_execution,
    record_execution_records,
    record_execution_retry,
    record_pool_event,
    record_stream_backpressure,
    record_stream_records,
    record_validation_cache,
    record_validation_result,
    set_pool_connections,
)


def _get_metric_value(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Helper to retrieve current metric value from registry."""
    labels = labels or {}
    value = REGISTRY.get_sample_value(metric_name, labels)
    return float(value) if value is not None else 0.0


class TestExecutionMetrics:
    """Tests for mapping execution metrics."""

    def test_record_execution_increments_counter(self) -> None:
        """Recording a terminal status should increment the counter."""
        labels = {"mapping": "metrics-test", "status": "completed"}
        before = _get_metric_value("flowbridge_executions_total", labels)
        record_execution("metrics-test", "completed")
        after = _get_metric_value("flowbridge_executions_total", labels)
        assert after == pytest.approx(before + 1)

    def test_observe_execution_duration_handles_negative(self) -> None:
        """Negative durations are clamped to zero."""
        before_count = _get_metric_value("flowbridge_execution_duration_seconds_count")
        before_sum = _get_metric_value("flowbridge_execution_duration_seconds_sum")
        observe_execution_duration(-1.0)
        assert _get_metric_value("flowbridge_execution_duration_seconds_count") == pytest.approx(before_count + 1)
        assert _get_metric_value("flowbridge_execution_duration_seconds_sum") == pytest.approx(before_sum)

    def test_record_execution_records_skips_zero(self) -> None:
        """Zero counts leave the counter untouched."""
        labels = {"mapping": "metrics-test", "outcome": "written"}
        before = _get_metric_value("flowbridge_execution_records_total", labels)
        record_execution_records("metrics-test", "written", 0)
        record_execution_records("metrics-test", "written", 5)
        assert _get_metric_value("flowbridge_execution_records_total", labels) == pytest.approx(before + 5)

    def test_retries_and_active_gauge(self) -> None:
        """Retries count up; the active gauge returns to its starting value."""
        before_retries = _get_metric_value("flowbridge_execution_retries_total", {"mapping": "metrics-test"})
        before_active = _get_metric_value("flowbridge_active_executions")

        record_execution_retry("metrics-test")
        increment_active_executions()
        assert _get_metric_value("flowbridge_active_executions") == pytest.approx(before_active + 1)
        decrement_active_executions()

        assert _get_metric_value("flowbridge_active_executions") == pytest.approx(before_active)
        assert _get_metric_value(
            "flowbridge_execution_retries_total", {"mapping": "metrics-test"}
        ) == pytest.approx(before_retries + 1)


class TestPoolMetrics:
    """Tests for connection pool metrics."""

    def test_set_pool_connections(self) -> None:
        """Gauges reflect the latest pool statistics."""
        set_pool_connections("metrics-pool", idle=2, active=1, waiting=0)

        assert _get_metric_value("flowbridge_pool_connections", {"pool": "metrics-pool", "state": "idle"}) == 2
        assert _get_metric_value("flowbridge_pool_connections", {"pool": "metrics-pool", "state": "active"}) == 1
        assert _get_metric_value("flowbridge_pool_connections", {"pool": "metrics-pool", "state": "waiting"}) == 0

    def test_pool_events_and_wait(self) -> None:
        """Lifecycle events and acquire waits are recorded per pool."""
        labels = {"pool": "metrics-pool", "event": "timeout"}
        before = _get_metric_value("flowbridge_pool_events_total", labels)
        before_wait = _get_metric_value("flowbridge_pool_acquire_wait_seconds_count", {"pool": "metrics-pool"})

        record_pool_event("metrics-pool", "timeout")
        observe_pool_acquire_wait("metrics-pool", 0.02)

        assert _get_metric_value("flowbridge_pool_events_total", labels) == pytest.approx(before + 1)
        assert _get_metric_value(
            "flowbridge_pool_acquire_wait_seconds_count", {"pool": "metrics-pool"}
        ) == pytest.approx(before_wait + 1)


class TestComponentMetrics:
    """Tests for stream, validation and adapter metrics."""

    def test_stream_metrics(self) -> None:
        """Stream records and backpressure are counted per kind."""
        labels = {"kind": "metrics", "outcome": "success"}
        before = _get_metric_value("flowbridge_stream_records_total", labels)
        before_bp = _get_metric_value("flowbridge_stream_backpressure_total", {"kind": "metrics"})

        record_stream_records("metrics", "success", 3)
        record_stream_backpressure("metrics")

        assert _get_metric_value("flowbridge_stream_records_total", labels) == pytest.approx(before + 3)
        assert _get_metric_value(
            "flowbridge_stream_backpressure_total", {"kind": "metrics"}
        ) == pytest.approx(before_bp + 1)

    def test_validation_metrics(self) -> None:
        """Validation outcomes and cache lookups are labelled."""
        invalid = {"validator": "metrics-schema", "outcome": "invalid"}
        before = _get_metric_value("flowbridge_validation_results_total", invalid)
        before_hits = _get_metric_value("flowbridge_validation_cache_total", {"result": "hit"})

        record_validation_result("metrics-schema", False)
        record_validation_cache(True)

        assert _get_metric_value("flowbridge_validation_results_total", invalid) == pytest.approx(before + 1)
        assert _get_metric_value("flowbridge_validation_cache_total", {"result": "hit"}) == pytest.approx(
            before_hits + 1
        )

    def test_adapter_metrics(self) -> None:
        """Adapter durations and errors are labelled by adapter and operation."""
        labels = {"adapter": "metrics-adapter", "operation": "read"}
        before = _get_metric_value("flowbridge_adapter_operation_duration_seconds_count", labels)
        error_labels = {**labels, "kind": "transient"}
        before_errors = _get_metric_value("flowbridge_adapter_errors_total", error_labels)

        observe_adapter_operation("metrics-adapter", "read", 0.01)
        record_adapter_error("metrics-adapter", "read", "transient")

        assert _get_metric_value(
            "flowbridge_adapter_operation_duration_seconds_count", labels
        ) == pytest.approx(before + 1)
        assert _get_metric_value("flowbridge_adapter_errors_total", error_labels) == pytest.approx(before_errors + 1)
