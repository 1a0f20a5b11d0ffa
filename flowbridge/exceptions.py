"""Custom exceptions for flowbridge.

Every exception carries the taxonomy ``kind`` used by the execution engine to
decide between record-level and run-level handling, plus a ``retryable`` flag.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:  # pragma: no cover - type checking only
    from flowbridge.validation.result import ValidationResult


class FlowBridgeError(Exception):
    """Base exception for all flowbridge errors."""

    kind: str = "internal"
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        self.code = code
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        """Return a serializable representation of the error."""

        payload: dict[str, Any] = {
            "kind": self.kind,
            "message": str(self),
            "error_type": self.__class__.__name__,
            "retryable": self.retryable,
        }
        if self.code is not None:
            payload["code"] = self.code
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(FlowBridgeError):
    """Raised when configuration is invalid or missing."""

    kind = "config_invalid"


class AdapterNotFoundError(ConfigurationError):
    """Raised when requested adapter is not registered."""

    pass


class PoolNotFoundError(ConfigurationError):
    """Raised when a named connection pool does not exist."""

    pass


class ValidationError(FlowBridgeError):
    """Raised when data validation fails."""

    kind = "validation_failed"

    def __init__(
        self,
        message: str = "",
        *,
        result: ValidationResult | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.result = result


class QueryError(FlowBridgeError):
    """Raised when a query or filter cannot be built or is rejected by the server."""

    kind = "query_invalid"


class ConstraintViolationError(FlowBridgeError):
    """Raised when a write violates a constraint of the target system."""

    kind = "constraint_violated"


class PermissionDeniedError(FlowBridgeError):
    """Raised when the target system refuses an operation for lack of privileges."""

    kind = "permission_denied"


class TransientError(FlowBridgeError):
    """Raised for recoverable failures such as connection loss, timeouts or throttling."""

    kind = "transient"
    retryable = True


class ConnectionFailedError(TransientError):
    """Raised when a connection to an external system cannot be established."""

    pass


class PoolTimeoutError(TransientError):
    """Raised when no pooled connection becomes available within the acquire timeout."""

    def __init__(self, pool_name: str, timeout_ms: int) -> None:
        super().__init__(
            f"Connection acquire timeout after {timeout_ms}ms for pool '{pool_name}'",
            details={"pool": pool_name, "timeout_ms": timeout_ms},
        )
        self.pool_name = pool_name
        self.timeout_ms = timeout_ms


class DisconnectFailedError(FlowBridgeError):
    """Raised when releasing adapter resources fails."""

    kind = "disconnect_failed"


class PoolClosedError(FlowBridgeError):
    """Raised when acquiring from a pool that is draining or destroyed."""

    kind = "pool_closed"


class UnsupportedOperationError(FlowBridgeError):
    """Raised when an adapter lacks the capability an operation requires."""

    kind = "unsupported"

    def __init__(self, adapter_type: str, operation: str, reason: str | None = None) -> None:
        message = f"Adapter '{adapter_type}' does not support '{operation}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"adapter_type": adapter_type, "operation": operation})
        self.adapter_type = adapter_type
        self.operation = operation


class SourceUnavailableError(FlowBridgeError):
    """Raised when the source adapter of a mapping cannot be opened."""

    kind = "source_unavailable"


class TargetUnavailableError(FlowBridgeError):
    """Raised when the target adapter of a mapping cannot be opened."""

    kind = "target_unavailable"


class ExecutionCancelledError(FlowBridgeError):
    """Raised at a pipeline boundary once cancellation has been requested."""

    kind = "cancelled"


class ExecutionTimeoutError(FlowBridgeError):
    """Raised when a run exceeds its wall-clock timeout."""

    kind = "timeout"


class StreamError(FlowBridgeError):
    """Raised when a stream stage fails to process an element."""

    kind = "stream_failed"

    def __init__(self, stream_id: str, message: str, *, item: Any = None) -> None:
        super().__init__(message, details={"stream_id": stream_id})
        self.stream_id = stream_id
        self.item = item


class InternalError(FlowBridgeError):
    """Raised for programmer errors surfaced from inside the engine."""

    kind = "internal"
