"""Transform, parallel and batch streams, pipelines and the stream optimizer facade."""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..events import EventBus, EventType, get_event_bus
from ..exceptions import StreamError
from ..monitoring.metrics import record_stream_backpressure, record_stream_records
from ..utils.config import StreamOptions, build_component_config, get_settings
from ..utils.logging import setup_logger
from .channel import AdaptiveBatchSizer, BoundedChannel, ChannelClosed, StreamMetrics, iterate_source

logger = setup_logger(__name__, context={"component": "stream"})

RecordFunction = Callable[[Any], Any]
ErrorHandler = Callable[[BaseException, Any], Any]
BackpressureHandler = Callable[["BaseStream", int], None]
StreamT = TypeVar("StreamT", bound="BaseStream")


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class BaseStream(ABC):
    """
    A stage consuming an async source and yielding outputs.

    Input is pumped into a bounded buffer by a background task; once the
    buffer crosses ``backpressure_threshold`` the stream reports backpressure
    and stops reading upstream until it drains below the low-water mark.
    """

    kind = "stream"

    def __init__(
        self,
        *,
        name: str | None = None,
        buffer_size: int = 1000,
        backpressure_threshold: int | None = None,
        low_water_mark: int | None = None,
        enable_backpressure_control: bool = True,
        on_backpressure: BackpressureHandler | None = None,
        on_error: ErrorHandler | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.stream_id = name or f"{self.kind}_{uuid.uuid4().hex[:12]}"
        self.buffer_size = max(1, buffer_size)
        self.backpressure_threshold = backpressure_threshold
        self.low_water_mark = low_water_mark
        self.enable_backpressure_control = enable_backpressure_control
        self.on_backpressure = on_backpressure
        self.on_error = on_error
        self.events = events
        self.metrics = StreamMetrics()
        self._destroyed = False
        self._channel: BoundedChannel[Any] | None = None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Stop accepting input; in-flight work completes."""

        self._destroyed = True

    def buffered(self) -> int:
        return len(self._channel) if self._channel is not None else 0

    def process(self, source: Any) -> AsyncIterator[Any]:
        """Return the async iterator of outputs for ``source``."""

        return self._process(self._read(source))

    @abstractmethod
    def _process(self, source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        """Turn buffered input into outputs."""

    async def _read(self, source: Any) -> AsyncIterator[Any]:
        channel: BoundedChannel[Any] = BoundedChannel(
            self.buffer_size,
            threshold=self.backpressure_threshold,
            low_water_mark=self.low_water_mark,
            on_backpressure=self._backpressure,
            pause_on_backpressure=self.enable_backpressure_control,
            metrics=self.metrics,
        )
        self._channel = channel
        pump = asyncio.create_task(self._pump(source, channel))
        try:
            async for item in channel:
                yield item
        finally:
            if not pump.done():
                pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            self._channel = None

    async def _pump(self, source: Any, channel: BoundedChannel[Any]) -> None:
        try:
            async for item in iterate_source(source):
                if self._destroyed:
                    break
                await channel.send(item)
        except ChannelClosed:
            return
        except Exception as exc:
            await channel.close(exc)
            return
        await channel.close()

    def _backpressure(self, buffered: int) -> None:
        record_stream_backpressure(self.kind)
        if self.events is not None:
            self.events.emit(
                EventType.STREAM_BACKPRESSURE, self.stream_id, stream_id=self.stream_id, buffer=buffered
            )
        if self.on_backpressure is not None:
            self.on_backpressure(self, buffered)

    async def _handle_failure(self, exc: Exception, item: Any) -> None:
        """Count a failed element; re-raise as :class:`StreamError` without an error handler."""

        self.metrics.errors += 1
        record_stream_records(self.kind, "error")
        if self.on_error is None:
            raise StreamError(self.stream_id, f"{self.kind} stream failed: {exc}", item=item) from exc
        await _call(self.on_error, exc, item)

    def get_metrics(self) -> dict[str, Any]:
        return {"stream_id": self.stream_id, "kind": self.kind, "buffered": self.buffered(), **self.metrics.to_dict()}


class TransformStream(BaseStream):
    """One record in, zero or one out (``None`` drops the record); preserves order."""

    kind = "transform"

    def __init__(self, transform: RecordFunction, **options: Any) -> None:
        super().__init__(**options)
        self.transform = transform

    async def _process(self, source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        async for item in source:
            started = time.perf_counter()
            try:
                result = await _call(self.transform, item)
            except Exception as exc:
                await self._handle_failure(exc, item)
                continue
            self.metrics.record((time.perf_counter() - started) * 1000)
            record_stream_records(self.kind, "processed")
            if result is not None:
                yield result


class ParallelStream(BaseStream):
    """Up to ``max_concurrency`` records in flight; outputs follow completion order."""

    kind = "parallel"

    def __init__(self, transform: RecordFunction, *, max_concurrency: int = 10, **options: Any) -> None:
        super().__init__(**options)
        self.transform = transform
        self.max_concurrency = max(1, max_concurrency)
        self._in_flight: set[asyncio.Task[Any]] = set()

    async def _run(self, item: Any) -> tuple[float, Any]:
        started = time.perf_counter()
        result = await _call(self.transform, item)
        return (time.perf_counter() - started) * 1000, result

    async def _collect(self, done: Iterable[asyncio.Task[Any]], items: dict[asyncio.Task[Any], Any]) -> list[Any]:
        outputs = []
        for task in done:
            item = items.pop(task)
            exc = task.exception()
            if exc is not None:
                await self._handle_failure(exc, item)  # type: ignore[arg-type]
                continue
            duration_ms, result = task.result()
            self.metrics.record(duration_ms)
            record_stream_records(self.kind, "processed")
            if result is not None:
                outputs.append(result)
        return outputs

    async def _process(self, source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        items: dict[asyncio.Task[Any], Any] = {}
        try:
            async for item in source:
                if len(self._in_flight) >= self.max_concurrency:
                    done, self._in_flight = await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                    for output in await self._collect(done, items):
                        yield output
                task = asyncio.create_task(self._run(item))
                items[task] = item
                self._in_flight.add(task)

            while self._in_flight:
                done, self._in_flight = await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                for output in await self._collect(done, items):
                    yield output
        finally:
            for task in self._in_flight:
                task.cancel()
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            self._in_flight = set()

    def get_metrics(self) -> dict[str, Any]:
        return {**super().get_metrics(), "active_tasks": len(self._in_flight), "concurrency": self.max_concurrency}


class BatchStream(BaseStream):
    """
    Accumulates records until ``batch_size`` or ``flush_timeout`` (ms) and
    hands each batch to ``handler``. List results are emitted element by
    element, ``None`` emits nothing and any other value is emitted as is.
    """

    kind = "batch"

    def __init__(
        self,
        handler: Callable[[list[Any]], Any],
        *,
        batch_size: int = 100,
        flush_timeout: int = 1000,
        sizer: AdaptiveBatchSizer | None = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.handler = handler
        self.batch_size = max(1, batch_size)
        self.flush_timeout = flush_timeout
        self.sizer = sizer
        self.processed_batches = 0

    @property
    def current_batch_size(self) -> int:
        return self.sizer.current if self.sizer is not None else self.batch_size

    def _backpressure(self, buffered: int) -> None:
        if self.sizer is not None:
            self.sizer.shrink()
        super()._backpressure(buffered)

    async def _flush(self, batch: list[Any]) -> list[Any]:
        started = time.perf_counter()
        try:
            result = await _call(self.handler, batch)
        except Exception as exc:
            if self.sizer is not None:
                self.sizer.shrink()
            await self._handle_failure(exc, batch)
            return []

        elapsed = time.perf_counter() - started
        self.processed_batches += 1
        self.metrics.record(elapsed * 1000)
        record_stream_records(self.kind, "processed", len(batch))
        if self.sizer is not None:
            self.sizer.observe(len(batch), elapsed)
        if result is None:
            return []
        if isinstance(result, (list, tuple)):
            return list(result)
        return [result]

    async def _process(self, source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        batch: list[Any] = []
        deadline: float | None = None
        pending: asyncio.Task[Any] | None = None
        loop = asyncio.get_running_loop()
        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(anext(source))
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait({pending}, timeout=timeout)
                if not done:
                    flushed, batch, deadline = batch, [], None
                    for output in await self._flush(flushed):
                        yield output
                    continue

                task, pending = pending, None
                try:
                    item = task.result()
                except StopAsyncIteration:
                    break
                if not batch:
                    deadline = loop.time() + self.flush_timeout / 1000
                batch.append(item)
                if len(batch) >= self.current_batch_size:
                    flushed, batch, deadline = batch, [], None
                    for output in await self._flush(flushed):
                        yield output

            if batch:
                for output in await self._flush(batch):
                    yield output
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)

    def get_metrics(self) -> dict[str, Any]:
        return {
            **super().get_metrics(),
            "processed_batches": self.processed_batches,
            "configured_batch_size": self.batch_size,
            "current_batch_size": self.current_batch_size,
        }


@dataclass(slots=True)
class StageMetrics:
    processed_count: int = 0
    total_time_ms: float = 0.0

    @property
    def average_time_ms(self) -> float:
        return self.total_time_ms / self.processed_count if self.processed_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed_count": self.processed_count,
            "total_time_ms": round(self.total_time_ms, 3),
            "average_time_ms": round(self.average_time_ms, 3),
        }


class Pipeline:
    """
    Ordered sequence of stages.

    ``stream`` chains :class:`BaseStream` stages over an async source;
    ``process`` runs a single value through plain callables. Both publish
    stage and pipeline events and keep per-stage timing.
    """

    def __init__(
        self,
        stages: Sequence[BaseStream | RecordFunction],
        *,
        name: str | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.name = name or f"pipeline_{uuid.uuid4().hex[:12]}"
        self.stages = list(stages)
        self.events = events
        self.total_processed = 0
        self.last_latency_ms = 0.0
        self.stage_metrics: dict[int, StageMetrics] = {}
        self._destroyed = False

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        if self.events is not None:
            self.events.emit(event_type, self.name, **payload)

    def _stage_metrics(self, index: int) -> StageMetrics:
        return self.stage_metrics.setdefault(index, StageMetrics())

    async def process(self, data: Any) -> Any:
        """Run ``data`` through every callable stage in order."""

        started = time.perf_counter()
        result = data
        for index, stage in enumerate(self.stages):
            if isinstance(stage, BaseStream):
                raise TypeError("process() accepts callable stages only; use stream() for stream stages")
            self._emit(EventType.STREAM_STAGE_STARTED, stage=index)
            stage_started = time.perf_counter()
            try:
                result = await _call(stage, result)
            except Exception as exc:
                self._emit(EventType.STREAM_STAGE_ERROR, stage=index, error=str(exc))
                raise
            metrics = self._stage_metrics(index)
            metrics.processed_count += 1
            metrics.total_time_ms += (time.perf_counter() - stage_started) * 1000
            self._emit(EventType.STREAM_STAGE_COMPLETED, stage=index)

        self.total_processed += 1
        self.last_latency_ms = (time.perf_counter() - started) * 1000
        self._emit(
            EventType.STREAM_PIPELINE_COMPLETED,
            processing_time_ms=round(self.last_latency_ms, 3),
            stages_processed=len(self.stages),
        )
        return result

    async def stream(self, source: Any) -> AsyncIterator[Any]:
        """Chain every stage over ``source`` and yield the final outputs."""

        stages = [stage if isinstance(stage, BaseStream) else TransformStream(stage) for stage in self.stages]
        self.stages = list(stages)
        started = time.perf_counter()
        current: Any = source
        for index, stage in enumerate(stages):
            self._emit(EventType.STREAM_STAGE_STARTED, stage=index, stream_id=stage.stream_id)
            current = stage.process(current)

        produced = 0
        try:
            async for output in current:
                produced += 1
                yield output
        except Exception as exc:
            failed = getattr(exc, "stream_id", None)
            self._emit(EventType.STREAM_STAGE_ERROR, stream_id=failed, error=str(exc))
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        for index, stage in enumerate(stages):
            metrics = self._stage_metrics(index)
            metrics.processed_count += stage.metrics.processed
            metrics.total_time_ms += stage.metrics.total_processing_ms
            self._emit(EventType.STREAM_STAGE_COMPLETED, stage=index, stream_id=stage.stream_id)
        self.total_processed += produced
        self.last_latency_ms = elapsed_ms
        self._emit(
            EventType.STREAM_PIPELINE_COMPLETED,
            processing_time_ms=round(elapsed_ms, 3),
            stages_processed=len(stages),
            outputs=produced,
        )

    def destroy(self) -> None:
        """Stop every stage from accepting further input."""

        self._destroyed = True
        for stage in self.stages:
            if isinstance(stage, BaseStream):
                stage.destroy()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def get_metrics(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "total_processed": self.total_processed,
            "pipeline_latency_ms": round(self.last_latency_ms, 3),
            "stage_metrics": {index: metrics.to_dict() for index, metrics in self.stage_metrics.items()},
        }


@dataclass(slots=True)
class StreamProcessingResult:
    results: list[Any] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def throughput(self) -> float:
        seconds = self.processing_time_ms / 1000
        return len(self.results) / seconds if seconds > 0 else 0.0


class DataStreamOptimizer:
    """Factory and bookkeeper for streams sharing one set of :class:`StreamOptions`."""

    def __init__(
        self,
        options: StreamOptions | Mapping[str, Any] | None = None,
        *,
        events: EventBus | None = None,
        strict: bool | None = None,
    ) -> None:
        if strict is None:
            strict = get_settings().strict_config
        if isinstance(options, Mapping):
            options = dict(options)
        self.options: StreamOptions = build_component_config(StreamOptions, options, strict=strict)
        self.events = events if events is not None else get_event_bus()
        self.active_streams: set[BaseStream] = set()
        self._history: deque[tuple[float, float]] = deque(maxlen=100)
        self._metrics = {"total_processed": 0, "total_errors": 0, "backpressure_events": 0}

    def _stream_options(self, overrides: Mapping[str, Any]) -> dict[str, Any]:
        options: dict[str, Any] = {
            "buffer_size": self.options.high_water_mark,
            "backpressure_threshold": self.options.backpressure_threshold,
            "enable_backpressure_control": self.options.enable_backpressure_control,
            "on_backpressure": self.handle_backpressure,
            "events": self.events,
        }
        options.update(overrides)
        return options

    def _track(self, stream: StreamT) -> StreamT:
        self.active_streams.add(stream)
        return stream

    def create_transform_stream(self, transform: RecordFunction, **overrides: Any) -> TransformStream:
        return self._track(TransformStream(transform, **self._stream_options(overrides)))

    def create_parallel_stream(self, transform: RecordFunction, **overrides: Any) -> ParallelStream:
        overrides.setdefault("max_concurrency", self.options.max_concurrency)
        return self._track(ParallelStream(transform, **self._stream_options(overrides)))

    def create_batch_stream(self, handler: Callable[[list[Any]], Any], **overrides: Any) -> BatchStream:
        overrides.setdefault("batch_size", self.options.chunk_size)
        overrides.setdefault("flush_timeout", self.options.flush_timeout)
        if self.options.enable_adaptive_buffering and "sizer" not in overrides:
            overrides["sizer"] = self.create_batch_sizer(overrides["batch_size"])
        return self._track(BatchStream(handler, **self._stream_options(overrides)))

    def create_batch_sizer(self, initial: int | None = None) -> AdaptiveBatchSizer:
        initial = initial or self.options.chunk_size
        return AdaptiveBatchSizer(initial, maximum=max(initial, self.options.high_water_mark))

    def create_pipeline(self, stages: Sequence[BaseStream | RecordFunction], *, name: str | None = None) -> Pipeline:
        return Pipeline(stages, name=name, events=self.events)

    def release(self, stream: BaseStream) -> None:
        self.active_streams.discard(stream)

    async def process_with_streaming(
        self, data: Any, transform: Callable[[Any], Awaitable[Any] | Any]
    ) -> StreamProcessingResult:
        """Transform ``data`` through a transform stream, collecting failures instead of raising."""

        outcome = StreamProcessingResult()

        def _collect_error(exc: BaseException, item: Any) -> None:
            outcome.errors.append(exc)

        stream = self.create_transform_stream(transform, on_error=_collect_error)
        started = time.perf_counter()
        try:
            async for result in stream.process(data):
                outcome.results.append(result)
        finally:
            self.release(stream)
        outcome.processing_time_ms = (time.perf_counter() - started) * 1000
        self.update_metrics(len(outcome.results), outcome.processing_time_ms, len(outcome.errors))
        return outcome

    def handle_backpressure(self, stream: BaseStream, buffered: int) -> None:
        self._metrics["backpressure_events"] += 1
        logger.debug("Backpressure detected in stream %s, buffer size: %d", stream.stream_id, buffered)

    def update_metrics(self, processed: int, processing_time_ms: float, errors: int = 0) -> None:
        self._metrics["total_processed"] += processed
        self._metrics["total_errors"] += errors
        if processed and processing_time_ms > 0:
            self._history.append((processed / (processing_time_ms / 1000), processing_time_ms / processed))

    def get_metrics(self) -> dict[str, Any]:
        recent = list(self._history)[-10:]
        processed = self._metrics["total_processed"]
        errors = self._metrics["total_errors"]
        attempted = processed + errors
        return {
            **self._metrics,
            "processing_rate": sum(item[0] for item in recent) / len(recent) if recent else 0.0,
            "average_latency_ms": sum(item[1] for item in recent) / len(recent) if recent else 0.0,
            "active_streams": len(self.active_streams),
            "success_rate": processed / attempted * 100 if attempted else 0.0,
            "streams": [stream.get_metrics() for stream in self.active_streams],
        }

    def reset_metrics(self) -> None:
        self._history.clear()
        self._metrics = {"total_processed": 0, "total_errors": 0, "backpressure_events": 0}

    async def shutdown(self) -> None:
        for stream in list(self.active_streams):
            stream.destroy()
        self.active_streams.clear()
        logger.info("Data stream optimizer shutdown complete")
