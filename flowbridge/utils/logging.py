"""Structured logging for flowbridge.

Every record carries the execution it belongs to, the mapping, the emitting
component, a status and a duration. Handlers are attached to the
``flowbridge`` package logger only when the host application has not
configured logging itself.
"""

from __future__ import annotations

import logging
import sys
from threading import Lock
from typing import Any, Final

from .config import get_settings

PACKAGE_LOGGER: Final[str] = "flowbridge"

CONTEXT_FIELDS: Final[tuple[str, ...]] = (
    "execution_id",
    "mapping_id",
    "component",
    "status",
    "duration_ms",
)

DEFAULT_CONTEXT: Final[dict[str, str]] = dict.fromkeys(CONTEXT_FIELDS, "-")

LOG_FORMAT: Final[str] = " | ".join(
    ["%(asctime)s", "%(levelname)s", "%(name)s"]
    + [f"{field}=%({field})s" for field in CONTEXT_FIELDS]
    + ["%(message)s"]
)

# Terminal statuses that are not errors.
_OUTCOME_LEVELS: Final[dict[str, int]] = {
    "completed": logging.INFO,
    "cancelled": logging.WARNING,
}

_configured = False
_configure_lock: Final = Lock()


class ContextualFormatter(logging.Formatter):
    """Formatter rendering records from loggers that never set the context fields."""

    def __init__(self, fmt: str = LOG_FORMAT, defaults: dict[str, str] | None = None) -> None:
        super().__init__(fmt)
        self._defaults = DEFAULT_CONTEXT if defaults is None else defaults

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for field, placeholder in self._defaults.items():
            record.__dict__.setdefault(field, placeholder)
        return super().format(record)


def _configure_package_logger() -> None:
    global _configured
    with _configure_lock:
        if _configured:
            return
        level = logging.getLevelName(get_settings().log_level)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(level if isinstance(level, int) else logging.INFO)
        if not package_logger.handlers and not logging.getLogger().handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(ContextualFormatter())
            package_logger.addHandler(handler)
        _configured = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Adapter merging bound context under each call's ``extra``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> StructuredLoggerAdapter:
        """Copy of this adapter with ``context`` added to its bound fields."""

        return StructuredLoggerAdapter(self.logger, {**(self.extra or {}), **context})


def setup_logger(
    name: str,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> StructuredLoggerAdapter:
    """Return the named logger wrapped so every record carries the context fields.

    Args:
        name: Logger name, normally the calling module's ``__name__``.
        level: Level for this logger only; the package level applies otherwise.
        context: Fields bound to every record, e.g. ``{"component": "pool"}``.
    """

    _configure_package_logger()
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return StructuredLoggerAdapter(logger, {**DEFAULT_CONTEXT, **(context or {})})


def log_execution_outcome(
    logger: logging.Logger | logging.LoggerAdapter,
    execution_id: str,
    mapping_id: str,
    duration_ms: int,
    status: str,
    **counters: Any,
) -> None:
    """Log one line for a finished run.

    Completed runs log at INFO, cancelled ones at WARNING and every other
    terminal status at ERROR. ``counters`` are appended to the message in
    name order.
    """

    message = f"Execution {status}"
    if counters:
        message += ": " + ", ".join(f"{name}={counters[name]}" for name in sorted(counters))
    logger.log(
        _OUTCOME_LEVELS.get(status, logging.ERROR),
        message,
        extra={
            "execution_id": execution_id,
            "mapping_id": mapping_id,
            "component": "engine",
            "status": status,
            "duration_ms": duration_ms,
        },
    )
