"""Persistence models for the optional execution state store."""

from .base import Base, get_engine, reset_engine, session_scope
from .execution_record import ExecutionRecord
from .repository import ExecutionRecordRepository, load_execution_context, persist_execution_context

__all__ = [
    "Base",
    "ExecutionRecord",
    "ExecutionRecordRepository",
    "get_engine",
    "load_execution_context",
    "persist_execution_context",
    "reset_engine",
    "session_scope",
]
