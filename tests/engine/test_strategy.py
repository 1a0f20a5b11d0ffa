"""Tests for execution strategy selection."""

import pytest

from flowbridge.engine import build_mapping, calculate_complexity, optimal_batch_size, select_strategy
from flowbridge.utils.config import ExecutionConfig
from flowbridge.utils.resources import SystemResources

IDLE = SystemResources(available_memory=0.9, cpu_usage=0.1, cpu_count=8)


def _mapping(**extra):
    return build_mapping(
        {
            "id": "m",
            "source": {"endpoint": "a", "schema": "t"},
            "target": {"endpoint": "b", "schema": "t"},
            **extra,
        }
    )


class TestSizeThresholds:
    """Test suite for executor choice by record count."""

    @pytest.mark.parametrize(
        ("count", "expected"),
        [
            (0, "sequential"),
            (9_999, "sequential"),
            (10_000, "batch"),
            (100_000, "batch"),
            (100_001, "stream"),
            (None, "batch"),
        ],
    )
    def test_executor_by_count(self, count, expected):
        """Thresholds at 10k and 100k records."""
        decision = select_strategy(count, 0.1, config=ExecutionConfig(), resources=IDLE)
        assert decision.executor_type == expected

    def test_complex_mapping_goes_parallel(self):
        """Complexity above 0.7 selects the parallel executor."""
        decision = select_strategy(5_000, 0.8, config=ExecutionConfig(), resources=IDLE)

        assert decision.executor_type == "parallel"
        assert decision.parallelism == 4

    def test_parallelism_bounded_by_chunks(self):
        """Small inputs get fewer workers."""
        decision = select_strategy(1_500, 0.9, config=ExecutionConfig(), resources=IDLE)
        assert decision.parallelism == 2

    def test_batch_size_table(self):
        """Batch sizes scale with record count."""
        assert optimal_batch_size(50) == 50
        assert optimal_batch_size(500) == 100
        assert optimal_batch_size(5_000) == 500
        assert optimal_batch_size(50_000) == 1_000
        assert optimal_batch_size(500_000) == 2_000


class TestOverrides:
    """Test suite for explicit configuration and host load."""

    def test_explicit_executor_wins(self):
        """A configured executor overrides the size heuristics."""
        decision = select_strategy(
            500_000, 0.1, config=ExecutionConfig(executor_type="sequential"), resources=IDLE
        )
        assert decision.executor_type == "sequential"

    def test_explicit_batch_size_is_honored(self):
        """A mapping batch size is used as given."""
        decision = select_strategy(50_000, 0.1, config=ExecutionConfig(), batch_size=250, resources=IDLE)
        assert decision.batch_size == 250

    def test_low_memory_halves_batch_and_streams(self):
        """Memory pressure halves batches and switches to streaming."""
        low_memory = SystemResources(available_memory=0.2, cpu_usage=0.1, cpu_count=8)

        decision = select_strategy(50_000, 0.1, config=ExecutionConfig(), resources=low_memory)

        assert decision.executor_type == "stream"
        assert decision.batch_size == 500

    def test_low_memory_keeps_explicit_executor(self):
        """Memory pressure does not replace an explicitly requested executor."""
        low_memory = SystemResources(available_memory=0.2, cpu_usage=0.1, cpu_count=8)

        decision = select_strategy(
            500, 0.1, config=ExecutionConfig(executor_type="batch"), batch_size=100, resources=low_memory
        )

        assert decision.executor_type == "batch"
        assert decision.batch_size == 50

    def test_high_cpu_halves_parallelism(self):
        """CPU pressure halves the worker count."""
        busy = SystemResources(available_memory=0.9, cpu_usage=0.95, cpu_count=8)

        decision = select_strategy(50_000, 0.9, config=ExecutionConfig(), resources=busy)

        assert decision.executor_type == "parallel"
        assert decision.parallelism == 2
        assert any("cpu usage" in reason for reason in decision.reasons)


class TestComplexity:
    """Test suite for complexity scoring."""

    def test_plain_mapping_is_simple(self):
        """A mapping without rules or transforms scores 0.1."""
        assert calculate_complexity(_mapping()) == 0.1

    def test_rules_and_transforms_raise_score(self):
        """Rules, transforms, validation, aggregation and quality rules add up."""
        mapping = _mapping(
            rules=[{"name": f"r{i}", "field": "x", "validate": "required"} for i in range(20)],
            fields={f"f{i}": {"path": "x", "transform": "upper"} for i in range(5)},
            validation_rules=[{"name": "v", "field": "x", "validate": "positive"}] * 6,
            aggregation={"group_by": ["x"]},
            quality_rules=[{"name": "q", "field": "x", "validate": "non_negative"}] * 5,
        )

        score = calculate_complexity(mapping)

        assert score == pytest.approx(1.0)
