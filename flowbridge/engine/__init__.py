"""Mapping execution engine: contexts, strategies, executors and the engine facade."""

from .context import ExecutionContext, ExecutionMetrics, ExecutionState, ExecutionStatus, StageProfile
from .dead_letter import DeadLetter, DeadLetterQueue
from .engine import MappingExecutionEngine
from .errors import ExecutionError, ExecutionWarning, classify_exception, is_retryable, is_terminal
from .executors import (
    BaseExecutor,
    BatchExecutor,
    MappingRun,
    ParallelExecutor,
    SequentialExecutor,
    StreamExecutor,
    create_executor,
)
from .mapping import (
    EndpointReference,
    FieldMapping,
    MappingDefinition,
    build_mapping,
    get_transformer,
    list_transformers,
    register_transformer,
)
from .strategy import StrategyDecision, calculate_complexity, optimal_batch_size, select_strategy

__all__ = [
    "BaseExecutor",
    "BatchExecutor",
    "DeadLetter",
    "DeadLetterQueue",
    "EndpointReference",
    "ExecutionContext",
    "ExecutionError",
    "ExecutionMetrics",
    "ExecutionState",
    "ExecutionStatus",
    "ExecutionWarning",
    "FieldMapping",
    "MappingDefinition",
    "MappingExecutionEngine",
    "MappingRun",
    "ParallelExecutor",
    "SequentialExecutor",
    "StageProfile",
    "StrategyDecision",
    "StreamExecutor",
    "build_mapping",
    "calculate_complexity",
    "classify_exception",
    "create_executor",
    "get_transformer",
    "is_retryable",
    "is_terminal",
    "list_transformers",
    "optimal_batch_size",
    "register_transformer",
    "select_strategy",
]
