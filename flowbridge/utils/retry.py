"""Async retry utilities with exponential backoff."""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, cast

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Exponential backoff policy; delays are expressed in milliseconds."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=4, ge=1)
    initial_delay: int = Field(default=1_000, ge=0)
    max_delay: int = Field(default=30_000, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: int = Field(default=0, ge=0)

    @classmethod
    def from_retry_attempts(
        cls,
        retry_attempts: int,
        *,
        initial_delay: int,
        max_delay: int,
    ) -> RetryPolicy:
        """Build a policy allowing ``retry_attempts`` retries after the first try."""

        return cls(
            max_attempts=retry_attempts + 1,
            initial_delay=initial_delay,
            max_delay=max(max_delay, initial_delay),
        )

    def compute_delay(self, attempt: int) -> float:
        """Return the delay in ms before retry number ``attempt`` (1-based)."""

        attempt = max(attempt, 1)
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return float(min(delay, self.max_delay))


def _wait_strategy(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        delay_ms = policy.compute_delay(retry_state.attempt_number)
        if policy.jitter > 0:
            delay_ms += random.uniform(0, policy.jitter)
        return max(delay_ms, 0.0) / 1000.0

    return _wait


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    on_retry: Callable[[int, BaseException], Any] | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> T:
    """Run ``operation`` retrying failures accepted by ``is_retryable``.

    ``on_retry`` is invoked with the attempt number that failed and its error
    before the backoff sleep. The last error is re-raised once attempts run out.
    """

    if policy.max_attempts <= 1:
        return await operation()

    logger_to_use = log or logger
    if isinstance(logger_to_use, logging.LoggerAdapter):
        sleep_logger = cast(logging.Logger, logger_to_use.logger)
    else:
        sleep_logger = logger_to_use

    log_before_sleep = before_sleep_log(sleep_logger, logging.WARNING)

    def _before_sleep(retry_state: RetryCallState) -> None:
        log_before_sleep(retry_state)
        if on_retry is not None and retry_state.outcome is not None:
            error = retry_state.outcome.exception()
            if error is not None:
                on_retry(retry_state.attempt_number, error)

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait_strategy(policy),
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await operation()

    raise RuntimeError("Retry loop exited without producing a result")  # pragma: no cover
