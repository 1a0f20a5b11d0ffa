"""Repository helpers for persisted execution contexts."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .base import session_scope
from .execution_record import ExecutionRecord


class ExecutionRecordRepository:
    """Data access helpers for :class:`ExecutionRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def upsert(self, payload: Mapping[str, Any]) -> ExecutionRecord:
        """Insert or refresh the row for a serialized context (``ExecutionContext.to_dict``)."""

        state = payload.get("state") or {}
        metrics = payload.get("metrics") or {}
        metadata = payload.get("metadata") or {}
        record = self._session.get(ExecutionRecord, payload["id"])
        if record is None:
            record = ExecutionRecord(id=payload["id"])
            self._session.add(record)
        record.parent_id = payload.get("parent_id")
        record.mapping_id = metadata.get("mapping_id")
        record.status = state.get("status", "initialized")
        record.records_processed = int(metrics.get("records_processed") or 0)
        record.error_count = len(state.get("errors") or [])
        record.duration_ms = state.get("duration_ms")
        record.payload = dict(payload)
        self._session.flush()
        return record

    def get(self, context_id: str) -> ExecutionRecord | None:
        return self._session.get(ExecutionRecord, context_id)

    def list_records(
        self,
        *,
        mapping_id: str | None = None,
        status: str | None = None,
        parent_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionRecord]:
        """Return the most recently updated records matching the filters."""

        statement = select(ExecutionRecord)
        if mapping_id is not None:
            statement = statement.where(ExecutionRecord.mapping_id == mapping_id)
        if status is not None:
            statement = statement.where(ExecutionRecord.status == status)
        if parent_id is not None:
            statement = statement.where(ExecutionRecord.parent_id == parent_id)
        statement = statement.order_by(ExecutionRecord.updated_at.desc()).limit(limit)
        return list(self._session.scalars(statement))

    def delete(self, context_id: str) -> bool:
        record = self.get(context_id)
        if record is None:
            return False
        self._session.delete(record)
        self._session.flush()
        return True


def persist_execution_context(payload: Mapping[str, Any]) -> None:
    """Store a serialized execution context using a managed database session."""

    with session_scope() as session:
        ExecutionRecordRepository(session).upsert(payload)


def load_execution_context(context_id: str) -> dict[str, Any] | None:
    """Return the serialized context stored under ``context_id``."""

    with session_scope() as session:
        record = ExecutionRecordRepository(session).get(context_id)
        return dict(record.payload) if record is not None else None
