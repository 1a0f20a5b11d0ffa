"""Tests for the execution context state store."""

from __future__ import annotations

from flowbridge.engine import ExecutionContext
from flowbridge.exceptions import TransientError
from flowbridge.models import (
    ExecutionRecordRepository,
    load_execution_context,
    persist_execution_context,
    session_scope,
)


def _finished_context(mapping_id: str = "orders") -> ExecutionContext:
    ctx = ExecutionContext(mapping_id=mapping_id, source="crm", target="warehouse")
    ctx.start()
    ctx.record_processed(12)
    ctx.add_error(TransientError("connection reset"), record={"id": 4})
    ctx.complete({"written": 11})
    return ctx


def test_persist_and_load_round_trip() -> None:
    """A persisted context can be rebuilt from its stored payload."""

    ctx = _finished_context()

    persist_execution_context(ctx.to_dict())
    payload = load_execution_context(ctx.id)

    assert payload is not None
    restored = ExecutionContext.from_dict(payload)
    assert restored.id == ctx.id
    assert restored.status.value == "completed"
    assert restored.metrics.records_processed == 12
    assert restored.state.errors[0].record == {"id": 4}


def test_load_missing_context_returns_none() -> None:
    """Unknown ids load as None."""

    assert load_execution_context("does-not-exist") is None


def test_upsert_refreshes_summary_columns() -> None:
    """Persisting twice updates the same row."""

    ctx = ExecutionContext(mapping_id="orders")
    persist_execution_context(ctx.to_dict())
    ctx.start()
    ctx.record_processed(3)
    persist_execution_context(ctx.to_dict())

    with session_scope() as session:
        record = ExecutionRecordRepository(session).get(ctx.id)
        assert record is not None
        assert record.status == "running"
        assert record.records_processed == 3
        assert record.mapping_id == "orders"
        assert record.error_count == 0


def test_list_records_filters() -> None:
    """Records filter by mapping, status and parent."""

    parent = _finished_context("orders")
    child = parent.create_child(mapping_id="orders")
    other = ExecutionContext(mapping_id="customers")
    for ctx in (parent, child, other):
        persist_execution_context(ctx.to_dict())

    with session_scope() as session:
        repository = ExecutionRecordRepository(session)
        assert {r.id for r in repository.list_records(mapping_id="orders")} == {parent.id, child.id}
        assert [r.id for r in repository.list_records(status="completed")] == [parent.id]
        assert [r.id for r in repository.list_records(parent_id=parent.id)] == [child.id]
        assert len(repository.list_records(limit=1)) == 1


def test_delete_record() -> None:
    """Deleting removes the row and reports whether it existed."""

    ctx = ExecutionContext()
    persist_execution_context(ctx.to_dict())

    with session_scope() as session:
        repository = ExecutionRecordRepository(session)
        assert repository.delete(ctx.id) is True
        assert repository.delete(ctx.id) is False

    assert load_execution_context(ctx.id) is None
