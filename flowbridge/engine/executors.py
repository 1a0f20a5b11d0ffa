"""Executors driving a mapping run: sequential, batch, stream and parallel."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, ClassVar

from ..adapters.base import BaseAdapter
from ..exceptions import ConfigurationError, ValidationError
from ..monitoring.metrics import record_execution_records, record_execution_retry
from ..streams import AdaptiveBatchSizer, DataStreamOptimizer
from ..utils.retry import RetryPolicy, execute_with_retry
from ..validation import ValidationFramework, ValidationResult
from .context import ExecutionContext
from .dead_letter import DeadLetter, DeadLetterQueue
from .errors import ExecutionError, is_retryable, is_terminal
from .mapping import MappingDefinition


class MappingRun:
    """
    Per-run record pipeline shared by every executor.

    ``process`` takes one source record through preconditions, input
    validation, transformation, output validation and postconditions and
    returns the target record, or ``None`` when the record is dropped.
    ``write`` submits one batch to the target with retries. Both apply the
    run's error policy: record-level failures are recorded on the context
    and skipped where the policy allows it and raised otherwise.
    """

    def __init__(
        self,
        *,
        context: ExecutionContext,
        mapping: MappingDefinition,
        source: BaseAdapter,
        target: BaseAdapter,
        validation: ValidationFramework,
        total: int | None = None,
        dead_letters: DeadLetterQueue | None = None,
    ) -> None:
        self.context = context
        self.mapping = mapping
        self.source = source
        self.target = target
        self.validation = validation
        self.total = total
        self.dead_letters = dead_letters
        self.config = context.config
        self.log = context.log
        self.consumed = 0
        self.settled = 0
        self.written = 0
        self.batches = 0

        self._input_rules = [*mapping.rules, *mapping.validation_rules, *mapping.quality_rules]
        self._validate_input = self.config.validate_input and (
            mapping.input_schema is not None or bool(self._input_rules)
        )
        self._validate_output = self.config.validate_output and mapping.output_schema is not None
        self.retry_policy = RetryPolicy.from_retry_attempts(
            self.config.retry_attempts,
            initial_delay=self.config.retry_delay,
            max_delay=self.config.max_retry_delay,
        )

    @property
    def mapping_id(self) -> str:
        return self.mapping.id

    # Reading

    async def pages(self, batch_size: int) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Yield source pages; cancellation is observed before each page.

        When source and target share a pool the source pages with short reads
        so a run never holds more than one of its connections.
        """

        self.context.check_cancelled()
        batches = self.source.iter_batches(
            self.mapping.source.schema_ref,
            self.mapping.read_options,
            batch_size=batch_size,
            hold_connection=not self.source.shares_connections_with(self.target),
        )
        async with aclosing(batches) as pages:
            async for page in pages:
                self.context.check_cancelled()
                yield page

    async def records(self, batch_size: int) -> AsyncIterator[dict[str, Any]]:
        async for page in self.pages(batch_size):
            for record in page:
                yield record

    # Processing

    async def process(self, record: dict[str, Any]) -> dict[str, Any] | None:
        self.context.check_cancelled()
        self.consumed += 1
        started = time.perf_counter()
        try:
            output = self._process(record)
        except Exception as exc:
            self._handle_record_failure(exc, record)
            output = None
        self.context.record_processed(1, execution_time_ms=(time.perf_counter() - started) * 1000)
        if output is None:
            self.settled += 1
        return output

    def _process(self, record: dict[str, Any]) -> dict[str, Any] | None:
        ctx = self.context
        if not self.mapping.accepts(record, ctx.data):
            ctx.metrics.records_skipped += 1
            record_execution_records(self.mapping_id, "skipped")
            return None

        if self._validate_input:
            with ctx.profile("validate_input"):
                self._check(
                    self.validation.validate(
                        record,
                        schema=self.mapping.input_schema,
                        rules=self._input_rules or None,
                        context=ctx.data,
                    ),
                    "input",
                )

        with ctx.profile("transform"):
            output = self.mapping.transform_record(record)

        if self._validate_output:
            with ctx.profile("validate_output"):
                self._check(
                    self.validation.validate(output, schema=self.mapping.output_schema, context=ctx.data),
                    "output",
                )

        if not self.mapping.satisfies_postconditions(output, ctx.data):
            raise ValidationError("Record does not satisfy the mapping postconditions", details={"stage": "output"})
        return output

    def _check(self, result: ValidationResult, stage: str) -> None:
        if self.config.strict_mode:
            result = result.promote_warnings()
        else:
            for warning in result.warnings:
                self.context.add_warning(
                    f"{warning.field}: {warning.message}", {"stage": stage, **warning.details}
                )
        if not result.valid:
            messages = "; ".join(result.error_messages())
            raise ValidationError(
                f"{stage.capitalize()} validation failed: {messages}",
                result=result,
                details={"stage": stage, "errors": result.error_messages()},
            )

    def _handle_record_failure(self, exc: Exception, record: dict[str, Any]) -> None:
        """Record a failed record, or re-raise when the failure must end the run."""

        policy = self.config.error_policy
        if is_terminal(exc) or policy == "stop":
            raise exc
        if isinstance(exc, ValidationError):
            if self.config.strict_mode:
                raise exc
        elif policy != "skip":
            raise exc
        self._skip([record], exc, stage="process")

    # Writing

    async def write(self, rows: list[dict[str, Any]]) -> int:
        """Write one batch, retrying transient failures; returns rows written."""

        if not rows:
            self.report_progress()
            return 0
        self.context.check_cancelled()

        def _on_retry(attempt: int, error: BaseException) -> None:
            self.context.mark_retry(attempt, error)
            record_execution_retry(self.mapping_id)

        async def _write() -> Any:
            with self.context.profile("write"):
                return await self.target.write_data(
                    self.mapping.target.schema_ref,
                    rows,
                    self.mapping.write_options(len(rows)),
                )

        try:
            result = await execute_with_retry(
                _write,
                policy=self.retry_policy,
                is_retryable=is_retryable,
                on_retry=_on_retry,
                log=self.log,
            )
        except Exception as exc:
            if is_terminal(exc) or self.config.error_policy != "skip":
                raise
            self._skip(rows, exc, stage="write", attempts=self.retry_policy.max_attempts)
            self.settled += len(rows)
            self.report_progress()
            return 0

        written = result.written
        self.written += written
        self.batches += 1
        self.context.metrics.records_written += written
        self.context.metrics.batches += 1
        record_execution_records(self.mapping_id, "written", written)
        self.settled += len(rows)
        self.report_progress()
        return written

    def report_progress(self) -> None:
        self.context.update_progress(self.settled, self.total)

    def _skip(self, records: list[dict[str, Any]], exc: BaseException, *, stage: str, attempts: int = 1) -> None:
        ctx = self.context
        record = records[0] if len(records) == 1 else records
        entry = ctx.add_error(exc, record=record, failed_records=len(records))
        ctx.metrics.records_skipped += len(records)
        record_execution_records(self.mapping_id, "skipped", len(records))
        self.log.warning(
            "Skipping %d record(s) after %s failure: %s",
            len(records),
            stage,
            entry.message,
            extra={"status": "skipped"},
        )
        if self.dead_letters is None:
            return
        for item in records:
            self.dead_letters.add(
                DeadLetter(
                    record=item,
                    error=ExecutionError(
                        message=entry.message,
                        kind=entry.kind,
                        code=entry.code,
                        record=item,
                        details=dict(entry.details),
                    ),
                    context_id=ctx.id,
                    mapping_id=self.mapping_id,
                    stage=stage,
                    attempts=attempts,
                )
            )

    def summary(self) -> dict[str, Any]:
        return {
            "records_consumed": self.consumed,
            "records_written": self.written,
            "batches": self.batches,
        }


class BaseExecutor(ABC):
    """Drives a :class:`MappingRun` from source pages to target batches."""

    executor_type: ClassVar[str] = "base"

    def __init__(
        self,
        *,
        batch_size: int = 1_000,
        parallelism: int = 1,
        optimizer: DataStreamOptimizer | None = None,
    ) -> None:
        if batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.parallelism = max(1, parallelism)
        self.optimizer = optimizer

    @abstractmethod
    async def execute(self, run: MappingRun) -> dict[str, Any]:
        """Run the mapping and return a summary of what was moved."""

    def _summary(self, run: MappingRun, **extra: Any) -> dict[str, Any]:
        return {"executor_type": self.executor_type, "batch_size": self.batch_size, **run.summary(), **extra}


class SequentialExecutor(BaseExecutor):
    """One record at a time, writing every ``batch_size`` target records."""

    executor_type = "sequential"

    async def execute(self, run: MappingRun) -> dict[str, Any]:
        buffer: list[dict[str, Any]] = []
        async for record in run.records(self.batch_size):
            output = await run.process(record)
            if output is not None:
                buffer.append(output)
            if len(buffer) >= self.batch_size:
                await run.write(buffer)
                buffer = []
        await run.write(buffer)
        return self._summary(run)


class BatchExecutor(BaseExecutor):
    """
    Page at a time. Writes are chunked by an adaptive sizer capped at
    ``batch_size``, halving after a skipped batch and growing back while
    throughput improves.
    """

    executor_type = "batch"

    async def execute(self, run: MappingRun) -> dict[str, Any]:
        sizer = AdaptiveBatchSizer(self.batch_size, maximum=self.batch_size)
        async for page in run.pages(self.batch_size):
            outputs = []
            for record in page:
                output = await run.process(record)
                if output is not None:
                    outputs.append(output)
            if not outputs:
                run.report_progress()
                continue
            start = 0
            while start < len(outputs):
                chunk = outputs[start : start + sizer.current]
                start += len(chunk)
                started = time.perf_counter()
                completed = run.batches
                await run.write(chunk)
                if run.batches == completed:
                    sizer.shrink()
                else:
                    sizer.observe(len(chunk), time.perf_counter() - started)
        return self._summary(run, batch_adjustments=sizer.adjustments, final_batch_size=sizer.current)


class StreamExecutor(BaseExecutor):
    """Transform and batch streams chained over the source with backpressure."""

    executor_type = "stream"

    def _first_stage(self, optimizer: DataStreamOptimizer, run: MappingRun) -> Any:
        return optimizer.create_transform_stream(run.process)

    async def execute(self, run: MappingRun) -> dict[str, Any]:
        optimizer = self.optimizer or DataStreamOptimizer(events=run.context.events)
        first = self._first_stage(optimizer, run)
        batch = optimizer.create_batch_stream(
            run.write,
            batch_size=self.batch_size,
            sizer=AdaptiveBatchSizer(self.batch_size, maximum=self.batch_size),
        )
        pipeline = optimizer.create_pipeline([first, batch], name=f"{run.mapping_id}:{run.context.id}")
        try:
            async for _ in pipeline.stream(run.records(self.batch_size)):
                pass
        finally:
            optimizer.release(first)
            optimizer.release(batch)
        return self._summary(run, pipeline=pipeline.get_metrics(), final_batch_size=batch.current_batch_size)


class ParallelExecutor(StreamExecutor):
    """Records processed ``parallelism`` at a time; target order is not preserved."""

    executor_type = "parallel"

    def _first_stage(self, optimizer: DataStreamOptimizer, run: MappingRun) -> Any:
        return optimizer.create_parallel_stream(run.process, max_concurrency=self.parallelism)

    def _summary(self, run: MappingRun, **extra: Any) -> dict[str, Any]:
        return super()._summary(run, parallelism=self.parallelism, **extra)


EXECUTORS: dict[str, type[BaseExecutor]] = {
    SequentialExecutor.executor_type: SequentialExecutor,
    BatchExecutor.executor_type: BatchExecutor,
    StreamExecutor.executor_type: StreamExecutor,
    ParallelExecutor.executor_type: ParallelExecutor,
}


def create_executor(executor_type: str, **options: Any) -> BaseExecutor:
    """Instantiate the executor registered under ``executor_type``."""

    try:
        executor_class = EXECUTORS[executor_type]
    except KeyError:
        available = ", ".join(sorted(EXECUTORS))
        raise ConfigurationError(
            f"Unknown executor type '{executor_type}'. Available executors: {available}"
        ) from None
    return executor_class(**options)
