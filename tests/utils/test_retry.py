"""Tests for retry utilities edge cases."""

import logging
from unittest.mock import AsyncMock, Mock

import pytest

from flowbridge.engine import is_retryable
from flowbridge.exceptions import QueryError, TransientError
from flowbridge.utils.retry import RetryPolicy, execute_with_retry

FAST = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0)


class TestRetryPolicy:
    """Test suite for RetryPolicy model."""

    def test_retry_policy_defaults(self):
        """Test RetryPolicy with default values."""
        policy = RetryPolicy()

        assert policy.max_attempts == 4
        assert policy.initial_delay == 1_000
        assert policy.max_delay == 30_000
        assert policy.multiplier == 2.0

    def test_retry_policy_validation(self):
        """Test RetryPolicy rejects invalid values."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

        with pytest.raises(ValueError):
            RetryPolicy(multiplier=0.5)

        with pytest.raises(ValueError):
            RetryPolicy(unknown=1)

    def test_compute_delay_doubles_and_caps(self):
        """Delays grow exponentially and stop at max_delay."""
        policy = RetryPolicy(initial_delay=100, max_delay=350)

        assert [policy.compute_delay(n) for n in range(1, 5)] == [100.0, 200.0, 350.0, 350.0]
        assert policy.compute_delay(0) == 100.0

    def test_from_retry_attempts(self):
        """Retry counts translate to total attempts."""
        policy = RetryPolicy.from_retry_attempts(3, initial_delay=500, max_delay=100)

        assert policy.max_attempts == 4
        assert policy.max_delay == 500


class TestExecuteWithRetry:
    """Test suite for execute_with_retry function."""

    @pytest.mark.asyncio
    async def test_execute_with_retry_success_first_attempt(self):
        """Test successful execution on first attempt."""
        operation = AsyncMock(return_value="success")

        result = await execute_with_retry(operation, policy=FAST, is_retryable=is_retryable)

        assert result == "success"
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_execute_with_retry_transient_then_success(self):
        """Transient failures are retried and reported through on_retry."""
        operation = AsyncMock(side_effect=[TransientError("reset"), TransientError("reset"), "ok"])
        on_retry = Mock()

        result = await execute_with_retry(
            operation, policy=FAST, is_retryable=is_retryable, on_retry=on_retry
        )

        assert result == "ok"
        assert operation.call_count == 3
        assert [call.args[0] for call in on_retry.call_args_list] == [1, 2]
        assert isinstance(on_retry.call_args_list[0].args[1], TransientError)

    @pytest.mark.asyncio
    async def test_execute_with_retry_exhausts_attempts(self):
        """The last error is re-raised once attempts run out."""
        operation = AsyncMock(side_effect=TransientError("still down"))

        with pytest.raises(TransientError, match="still down"):
            await execute_with_retry(operation, policy=FAST, is_retryable=is_retryable)

        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_execute_with_retry_non_retryable_error(self):
        """Permanent errors are raised immediately."""
        operation = AsyncMock(side_effect=QueryError("syntax error"))

        with pytest.raises(QueryError):
            await execute_with_retry(operation, policy=FAST, is_retryable=is_retryable)

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_execute_with_retry_single_attempt(self):
        """A single-attempt policy calls the operation once without retrying."""
        operation = AsyncMock(side_effect=TransientError("reset"))

        with pytest.raises(TransientError):
            await execute_with_retry(
                operation, policy=RetryPolicy(max_attempts=1), is_retryable=is_retryable
            )

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_execute_with_retry_logs_before_sleep(self, caplog):
        """Retries are logged through the given logger adapter."""
        operation = AsyncMock(side_effect=[TransientError("reset"), "ok"])
        adapter = logging.LoggerAdapter(logging.getLogger("flowbridge.test.retry"), {})

        with caplog.at_level(logging.WARNING, logger="flowbridge.test.retry"):
            await execute_with_retry(
                operation, policy=FAST, is_retryable=is_retryable, log=adapter
            )

        assert any("Retrying" in record.getMessage() for record in caplog.records)
