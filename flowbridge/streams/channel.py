"""Bounded channels, stream metrics and adaptive batch sizing."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by :meth:`BoundedChannel.receive` once the channel is closed and empty."""


@dataclass(slots=True)
class StreamMetrics:
    """Per-stream counters."""

    processed: int = 0
    errors: int = 0
    total_processing_ms: float = 0.0
    buffer_high_water: int = 0
    backpressure_events: int = 0
    recent_times: deque[float] = field(default_factory=lambda: deque(maxlen=100))

    @property
    def average_processing_ms(self) -> float:
        if not self.recent_times:
            return 0.0
        return sum(self.recent_times) / len(self.recent_times)

    def record(self, duration_ms: float) -> None:
        self.processed += 1
        self.total_processing_ms += duration_ms
        self.recent_times.append(duration_ms)

    def observe_buffer(self, size: int) -> None:
        if size > self.buffer_high_water:
            self.buffer_high_water = size

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "average_processing_ms": round(self.average_processing_ms, 3),
            "buffer_high_water": self.buffer_high_water,
            "backpressure_events": self.backpressure_events,
        }


class BoundedChannel(Generic[T]):
    """
    FIFO channel with an explicit capacity and a backpressure band.

    ``send`` blocks while the channel is full. Once more than ``threshold``
    items are buffered the channel reports backpressure through
    ``on_backpressure`` and, when ``pause_on_backpressure`` is set, holds
    every sender until the buffer drains to ``low_water_mark``.
    """

    def __init__(
        self,
        capacity: int,
        *,
        threshold: int | None = None,
        low_water_mark: int | None = None,
        on_backpressure: Callable[[int], None] | None = None,
        pause_on_backpressure: bool = True,
        metrics: StreamMetrics | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.threshold = min(threshold if threshold is not None else capacity, capacity)
        self.low_water_mark = low_water_mark if low_water_mark is not None else self.threshold // 2
        self.on_backpressure = on_backpressure
        self.pause_on_backpressure = pause_on_backpressure
        self.metrics = metrics or StreamMetrics()
        self._items: deque[T] = deque()
        self._condition = asyncio.Condition()
        self._closed = False
        self._error: BaseException | None = None
        self._backpressured = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backpressured(self) -> bool:
        return self._backpressured

    async def send(self, item: T) -> None:
        async with self._condition:
            if self._backpressured and self.pause_on_backpressure:
                await self._condition.wait_for(lambda: not self._backpressured or self._closed)
            await self._condition.wait_for(lambda: len(self._items) < self.capacity or self._closed)
            if self._closed:
                raise ChannelClosed("channel is closed")

            self._items.append(item)
            size = len(self._items)
            self.metrics.observe_buffer(size)
            if (size > self.threshold or size >= self.capacity) and not self._backpressured:
                self._backpressured = True
                self.metrics.backpressure_events += 1
                if self.on_backpressure is not None:
                    self.on_backpressure(size)
            self._condition.notify_all()

    async def receive(self) -> T:
        async with self._condition:
            await self._condition.wait_for(lambda: bool(self._items) or self._closed)
            if not self._items:
                if self._error is not None:
                    raise self._error
                raise ChannelClosed("channel is closed")

            item = self._items.popleft()
            if self._backpressured and len(self._items) <= self.low_water_mark:
                self._backpressured = False
            self._condition.notify_all()
            return item

    async def close(self, error: BaseException | None = None) -> None:
        """Stop accepting items; receivers drain what is buffered, then see ``error`` or end."""

        async with self._condition:
            self._closed = True
            if error is not None and self._error is None:
                self._error = error
            self._condition.notify_all()

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.receive()
            except ChannelClosed:
                return
            yield item


async def iterate_source(data: Any) -> AsyncIterator[Any]:
    """Yield from an async iterable, a sync iterable or a single value."""

    if isinstance(data, AsyncIterable):
        async for item in data:
            yield item
    elif isinstance(data, Iterable) and not isinstance(data, (str, bytes, dict)):
        for item in data:
            yield item
    else:
        yield data


class AdaptiveBatchSizer:
    """
    Batch size controller.

    Starts at ``initial``; grows by 1.5x (up to ``maximum``) when the
    throughput of the last batch beats the previous one and halves (down to
    ``minimum``) on backpressure or error.
    """

    def __init__(self, initial: int, *, maximum: int, minimum: int = 1) -> None:
        self.minimum = max(1, minimum)
        self.maximum = max(self.minimum, maximum)
        self.current = min(max(initial, self.minimum), self.maximum)
        self._last_throughput: float | None = None
        self.adjustments = 0

    def observe(self, records: int, duration_seconds: float) -> int:
        """Record a completed batch and return the next batch size."""

        if records <= 0:
            return self.current
        throughput = records / max(duration_seconds, 1e-6)
        if self._last_throughput is not None and throughput > self._last_throughput:
            self._resize(int(self.current * 1.5))
        self._last_throughput = throughput
        return self.current

    def shrink(self) -> int:
        self._resize(self.current // 2)
        self._last_throughput = None
        return self.current

    def _resize(self, size: int) -> None:
        size = min(max(size, self.minimum), self.maximum)
        if size != self.current:
            self.current = size
            self.adjustments += 1
