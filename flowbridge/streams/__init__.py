"""Streaming primitives with backpressure, bounded concurrency and batching."""

from .channel import AdaptiveBatchSizer, BoundedChannel, ChannelClosed, StreamMetrics, iterate_source
from .optimizer import (
    BaseStream,
    BatchStream,
    DataStreamOptimizer,
    ParallelStream,
    Pipeline,
    StreamProcessingResult,
    TransformStream,
)

__all__ = [
    "AdaptiveBatchSizer",
    "BaseStream",
    "BatchStream",
    "BoundedChannel",
    "ChannelClosed",
    "DataStreamOptimizer",
    "ParallelStream",
    "Pipeline",
    "StreamMetrics",
    "StreamProcessingResult",
    "TransformStream",
    "iterate_source",
]
