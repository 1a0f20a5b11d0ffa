"""Error classification and structured error records for mapping runs."""

from __future__ import annotations

import asyncio
import re
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..exceptions import (
    ConfigurationError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    FlowBridgeError,
    PermissionDeniedError,
    StreamError,
    TransientError,
    ValidationError,
)

_TRANSIENT_PATTERNS = re.compile(
    r"ECONNREFUSED|ECONNRESET|ETIMEDOUT|EPIPE|connection (?:reset|refused|lost|closed)"
    r"|timed? ?out|timeout|too many connections|rate.?limit|throttl|temporarily unavailable",
    re.IGNORECASE,
)
_VALIDATION_PATTERNS = re.compile(r"validation|invalid.*schema|required.*field|type.*mismatch", re.IGNORECASE)


def unwrap_exception(exc: BaseException) -> BaseException:
    """Return the original error behind :class:`StreamError` wrappers."""

    while isinstance(exc, StreamError) and exc.__cause__ is not None:
        exc = exc.__cause__
    return exc


def classify_exception(exc: BaseException) -> tuple[str, bool]:
    """Return a tuple of (kind, retryable) for a given exception."""

    exc = unwrap_exception(exc)
    if isinstance(exc, FlowBridgeError):
        return exc.kind, exc.retryable
    if isinstance(exc, asyncio.CancelledError):
        return ExecutionCancelledError.kind, False
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return TransientError.kind, True
    if isinstance(exc, PermissionError):
        return PermissionDeniedError.kind, False
    if isinstance(exc, OSError):
        return TransientError.kind, True

    message = str(exc)
    if _TRANSIENT_PATTERNS.search(message):
        return TransientError.kind, True
    if _VALIDATION_PATTERNS.search(message):
        return ValidationError.kind, False
    return "internal", False


def is_retryable(exc: BaseException) -> bool:
    """Return True when the exception is transient and may be retried."""

    return classify_exception(exc)[1]


def is_terminal(exc: BaseException) -> bool:
    """Return True for errors that end a run regardless of the error policy."""

    exc = unwrap_exception(exc)
    return isinstance(exc, (ConfigurationError, ExecutionCancelledError, ExecutionTimeoutError))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ExecutionError:
    """Structured entry describing a failure recorded on an execution context."""

    message: str
    kind: str = "internal"
    code: str | None = None
    record: Any = None
    details: dict[str, Any] = field(default_factory=dict)
    stack: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        record: Any = None,
        include_stack: bool = True,
        details: dict[str, Any] | None = None,
    ) -> ExecutionError:
        """Construct an :class:`ExecutionError` describing the supplied exception."""

        original = unwrap_exception(exc)
        kind, retryable = classify_exception(original)
        payload: dict[str, Any] = {"error_type": original.__class__.__name__, "retryable": retryable}
        if isinstance(original, FlowBridgeError) and original.details:
            payload.update(original.details)
        if details:
            payload.update(details)

        stack = None
        if include_stack and original.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(original), original, original.__traceback__))

        code = getattr(original, "code", None)
        return cls(
            message=str(original) or original.__class__.__name__,
            kind=kind,
            code=code if isinstance(code, str) else None,
            record=record,
            details=payload,
            stack=stack,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable dictionary representation of the error."""

        payload: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "record": self.record,
            "details": self.details,
        }
        if self.stack is not None:
            payload["stack"] = self.stack
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionError:
        timestamp = data.get("timestamp")
        return cls(
            message=data.get("message", ""),
            kind=data.get("kind", "internal"),
            code=data.get("code"),
            record=data.get("record"),
            details=dict(data.get("details") or {}),
            stack=data.get("stack"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else _utcnow(),
        )


@dataclass(slots=True)
class ExecutionWarning:
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "message": self.message, "details": self.details}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionWarning:
        timestamp = data.get("timestamp")
        return cls(
            message=data.get("message", ""),
            details=dict(data.get("details") or {}),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else _utcnow(),
        )
