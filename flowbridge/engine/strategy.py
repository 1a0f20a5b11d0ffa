"""Execution strategy selection from data size, mapping complexity and host load."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from ..utils.config import ExecutionConfig
from ..utils.resources import SystemResources, sample_system_resources
from .mapping import MappingDefinition

SEQUENTIAL_LIMIT = 10_000
BATCH_LIMIT = 100_000
COMPLEXITY_THRESHOLD = 0.7
LOW_MEMORY_RATIO = 0.3
HIGH_CPU_RATIO = 0.8
MAX_PARALLELISM = 4


def calculate_complexity(mapping: MappingDefinition) -> float:
    """Score a mapping in [0, 1] from its rules, transformations and checks."""

    complexity = 0.0
    factors = 0

    if mapping.rules:
        complexity += min(len(mapping.rules) / 50, 0.3)
        factors += 1
    if mapping.transformation_count:
        complexity += min(mapping.transformation_count / 20, 0.2)
        factors += 1
    if mapping.validation_rules:
        complexity += min(len(mapping.validation_rules) / 30, 0.2)
        factors += 1
    if mapping.aggregation:
        complexity += 0.15
        factors += 1
    if mapping.quality_rules:
        complexity += min(len(mapping.quality_rules) / 25, 0.15)
        factors += 1

    if factors == 0:
        return 0.1
    return min(complexity, 1.0)


def optimal_batch_size(record_count: int) -> int:
    if record_count < 100:
        return max(record_count, 1)
    if record_count < 1_000:
        return 100
    if record_count < 10_000:
        return 500
    if record_count < 100_000:
        return 1_000
    return 2_000


@dataclass(slots=True)
class StrategyDecision:
    """The executor chosen for a run and the reasons behind the choice."""

    executor_type: str
    batch_size: int
    parallelism: int = 1
    record_count: int | None = None
    complexity: float = 0.1
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "executor_type": self.executor_type,
            "batch_size": self.batch_size,
            "parallelism": self.parallelism,
            "record_count": self.record_count,
            "complexity": round(self.complexity, 4),
            "reasons": list(self.reasons),
        }


def select_strategy(
    record_count: int | None,
    complexity: float,
    *,
    config: ExecutionConfig,
    batch_size: int | None = None,
    resources: SystemResources | None = None,
) -> StrategyDecision:
    """
    Choose an executor for ``record_count`` records.

    An explicit ``batch_size`` is honored as given; otherwise the size table
    picks one. An explicit ``executor_type`` in ``config`` wins over the
    size heuristics but still has its batch and parallelism adjusted for
    the current host load. An unknown record count falls back to batching.
    """

    resources = resources or sample_system_resources()
    reasons: list[str] = []

    if record_count is None:
        executor_type = "batch"
        reasons.append("record count unknown")
    elif record_count < SEQUENTIAL_LIMIT:
        executor_type = "sequential"
        reasons.append(f"{record_count} records below {SEQUENTIAL_LIMIT}")
    elif record_count <= BATCH_LIMIT:
        executor_type = "batch"
        reasons.append(f"{record_count} records within batch range")
    else:
        executor_type = "stream"
        reasons.append(f"{record_count} records above {BATCH_LIMIT}")

    parallelism = 1
    if complexity > COMPLEXITY_THRESHOLD:
        executor_type = "parallel"
        chunks = math.ceil((record_count or 0) / 1_000)
        parallelism = max(1, min(MAX_PARALLELISM, chunks, config.max_concurrency))
        reasons.append(f"complexity {complexity:.2f} above {COMPLEXITY_THRESHOLD}")

    if config.executor_type != "auto":
        executor_type = config.executor_type
        reasons.append(f"executor '{executor_type}' requested")
        if executor_type == "parallel":
            parallelism = max(parallelism, config.max_concurrency)

    if batch_size is not None:
        size = batch_size
    elif record_count is None:
        size = 1_000
    else:
        size = optimal_batch_size(record_count)

    if resources.available_memory < LOW_MEMORY_RATIO:
        size = max(1, size // 2)
        reasons.append(f"free memory {resources.available_memory:.0%} below {LOW_MEMORY_RATIO:.0%}")
        if config.executor_type == "auto" and executor_type in ("sequential", "batch"):
            executor_type = "stream"
    if resources.cpu_usage > HIGH_CPU_RATIO and parallelism > 1:
        parallelism = max(1, parallelism // 2)
        reasons.append(f"cpu usage {resources.cpu_usage:.0%} above {HIGH_CPU_RATIO:.0%}")

    return StrategyDecision(
        executor_type=executor_type,
        batch_size=size,
        parallelism=parallelism,
        record_count=record_count,
        complexity=complexity,
        reasons=reasons,
    )
