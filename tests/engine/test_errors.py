"""Tests for error classification, execution error records and the dead letter queue."""

import asyncio

import pytest

from flowbridge.engine import DeadLetter, DeadLetterQueue, ExecutionError, classify_exception, is_retryable, is_terminal
from flowbridge.exceptions import (
    ConfigurationError,
    ConstraintViolationError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    PoolTimeoutError,
    StreamError,
    TransientError,
    ValidationError,
)


class TestClassification:
    """Test suite for exception classification."""

    @pytest.mark.parametrize(
        ("exc", "kind", "retryable"),
        [
            (TransientError("reset"), "transient", True),
            (PoolTimeoutError("main", 100), "transient", True),
            (ConstraintViolationError("duplicate"), "constraint_violated", False),
            (ValidationError("bad"), "validation_failed", False),
            (asyncio.TimeoutError(), "transient", True),
            (ConnectionResetError("peer"), "transient", True),
            (PermissionError("denied"), "permission_denied", False),
            (RuntimeError("ECONNREFUSED 127.0.0.1:5432"), "transient", True),
            (RuntimeError("required field missing"), "validation_failed", False),
            (RuntimeError("kaboom"), "internal", False),
        ],
    )
    def test_classify(self, exc, kind, retryable):
        """Known errors map to kinds; unknown ones fall back on message patterns."""
        assert classify_exception(exc) == (kind, retryable)
        assert is_retryable(exc) is retryable

    def test_stream_errors_are_unwrapped(self):
        """Wrapped stage failures classify as their cause."""
        cause = TransientError("connection lost")
        wrapped = StreamError("s1", "stage failed")
        wrapped.__cause__ = cause

        assert classify_exception(wrapped) == ("transient", True)

    def test_terminal_errors(self):
        """Configuration, cancellation and timeout errors are terminal."""
        assert is_terminal(ConfigurationError("bad"))
        assert is_terminal(ExecutionCancelledError("stop"))
        assert is_terminal(ExecutionTimeoutError("late"))
        assert not is_terminal(TransientError("reset"))


class TestExecutionError:
    """Test suite for structured error records."""

    def test_from_exception_captures_details(self):
        """Kind, code, record and details are captured."""
        try:
            raise ConstraintViolationError("duplicate key", code="23505", details={"table": "users"})
        except ConstraintViolationError as exc:
            error = ExecutionError.from_exception(exc, record={"id": 1})

        assert error.kind == "constraint_violated"
        assert error.code == "23505"
        assert error.record == {"id": 1}
        assert error.details["table"] == "users"
        assert error.details["retryable"] is False
        assert "Traceback" in error.stack

    def test_stack_can_be_omitted(self):
        """include_stack=False leaves the stack empty."""
        try:
            raise TransientError("reset")
        except TransientError as exc:
            error = ExecutionError.from_exception(exc, include_stack=False)

        assert error.stack is None
        assert "stack" not in error.to_dict()

    def test_round_trip(self):
        """to_dict/from_dict preserve every field."""
        error = ExecutionError(message="bad", kind="query_invalid", code="42601", record={"id": 2})

        restored = ExecutionError.from_dict(error.to_dict())

        assert restored == error


class TestDeadLetterQueue:
    """Test suite for the dead letter queue."""

    @staticmethod
    def _letter(record, *, context_id="c1", stage="write", kind="transient"):
        return DeadLetter(
            record=record,
            error=ExecutionError(message="failed", kind=kind),
            context_id=context_id,
            mapping_id="m1",
            stage=stage,
        )

    def test_capacity_evicts_oldest(self):
        """A full queue drops its oldest entry."""
        queue = DeadLetterQueue(max_size=2)
        for index in range(3):
            queue.add(self._letter({"id": index}))

        assert len(queue) == 2
        assert [entry.record["id"] for entry in queue.entries()] == [1, 2]
        assert queue.dropped == 1
        assert queue.get_statistics()["total_added"] == 3

    def test_filters_and_limit(self):
        """Entries filter by context, stage and kind."""
        queue = DeadLetterQueue()
        queue.add(self._letter({"id": 1}, context_id="a", stage="process", kind="validation_failed"))
        queue.add(self._letter({"id": 2}, context_id="b"))
        queue.add(self._letter({"id": 3}, context_id="b"))

        assert [e.record["id"] for e in queue.entries(context_id="b")] == [2, 3]
        assert [e.record["id"] for e in queue.entries(stage="process")] == [1]
        assert [e.record["id"] for e in queue.entries(kind="transient", limit=1)] == [3]
        assert queue.get_statistics()["by_kind"] == {"validation_failed": 1, "transient": 2}

    def test_drain_by_context(self):
        """Draining one context keeps the others."""
        queue = DeadLetterQueue()
        queue.add(self._letter({"id": 1}, context_id="a"))
        queue.add(self._letter({"id": 2}, context_id="b"))

        drained = queue.drain(context_id="a")

        assert [entry.record["id"] for entry in drained] == [1]
        assert [entry.record["id"] for entry in queue.entries()] == [2]

    def test_invalid_size(self):
        """The queue must hold at least one entry."""
        with pytest.raises(ValueError):
            DeadLetterQueue(max_size=0)
