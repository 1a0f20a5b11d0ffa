"""Tests for adapter registry behavior and the base adapter contract."""

import pytest

from flowbridge.adapters import create_adapter, get_adapter, list_adapters, register_adapter
from flowbridge.adapters.base import AdapterCapabilities, Operation, WriteMode
from flowbridge.adapters.postgresql import PostgreSQLAdapter
from flowbridge.events import EventBus, EventType
from flowbridge.exceptions import AdapterNotFoundError, QueryError, UnsupportedOperationError
from tests.fakes import InMemoryAdapter


class ReadOnlyAdapter(InMemoryAdapter):
    adapter_type = "readonly"
    capabilities = AdapterCapabilities()
    supported_operations = frozenset({Operation.READ})


def test_get_adapter_returns_registered_class() -> None:
    """Ensure a registered adapter can be retrieved successfully."""
    assert get_adapter("postgresql") is PostgreSQLAdapter
    assert get_adapter("Postgres") is PostgreSQLAdapter


def test_get_adapter_missing_adapter_raises_custom_error() -> None:
    """An unknown adapter name should raise AdapterNotFoundError."""
    with pytest.raises(AdapterNotFoundError) as exc:
        get_adapter("nonexistent")

    message = str(exc.value)
    assert "nonexistent" in message
    assert "Available adapters" in message


def test_register_and_create_adapter() -> None:
    """Registered adapters are instantiated with config and dependencies."""
    bus = EventBus()
    register_adapter("memory", InMemoryAdapter)

    adapter = create_adapter("memory", {"tables": {"users": [{"id": 1}]}}, events=bus)

    assert "memory" in list_adapters()
    assert isinstance(adapter, InMemoryAdapter)
    assert adapter.events is bus
    assert adapter.rows("users") == [{"id": 1}]


class TestBaseContract:
    """Test suite for checks performed before any adapter side effect."""

    @pytest.mark.asyncio
    async def test_unsupported_write_mode(self):
        """Writes are refused before touching the target."""
        adapter = ReadOnlyAdapter()

        with pytest.raises(UnsupportedOperationError, match="'write'"):
            await adapter.write_data("users", [{"id": 1}])

        assert adapter.write_attempts == 0

    @pytest.mark.asyncio
    async def test_discovery_requires_capability(self):
        """Schema discovery needs the capability flag."""
        with pytest.raises(UnsupportedOperationError, match="schema_discovery"):
            await ReadOnlyAdapter().discover_schemas()

    def test_capability_queries(self):
        """Capabilities and operations can be inspected."""
        adapter = InMemoryAdapter()

        assert adapter.has_capability("transactions")
        assert not adapter.has_capability("cdc")
        assert adapter.supports_operation("upsert")
        assert not adapter.supports_operation("truncate")
        assert not adapter.supports_operation("explode")
        assert "read" in adapter.get_supported_operations()

    @pytest.mark.asyncio
    async def test_invalid_options_raise_query_error(self):
        """Malformed options are reported as query errors."""
        adapter = InMemoryAdapter(tables={"users": []})

        with pytest.raises(QueryError, match="Invalid ReadOptions"):
            await adapter.read_data("users", {"limit": -1})
        with pytest.raises(QueryError, match="Invalid WriteOptions"):
            await adapter.write_data("users", [{"id": 1}], {"mode": "merge"})

    @pytest.mark.asyncio
    async def test_iter_batches_pages_with_offsets(self):
        """The default streaming read pages with limit and offset."""
        adapter = InMemoryAdapter(tables={"users": [{"id": n} for n in range(5)]})

        pages = [page async for page in adapter.iter_batches("users", {"limit": 4}, batch_size=3)]

        assert [[row["id"] for row in page] for page in pages] == [[0, 1, 2], [3]]

    @pytest.mark.asyncio
    async def test_count_records(self):
        """Counting uses the total count of a zero-row read."""
        adapter = InMemoryAdapter(tables={"users": [{"id": 1}, {"id": 2}]})

        assert await adapter.count_records("users", {"filters": {"id": {"$gt": 1}}}) == 1

    @pytest.mark.asyncio
    async def test_write_publishes_batch_progress(self):
        """process_batch publishes progress per batch."""
        bus = EventBus()
        progress = []
        bus.subscribe(progress.append, [EventType.ADAPTER_BATCH_PROGRESS])
        adapter = InMemoryAdapter(events=bus)

        result = await adapter.write_data(
            "users", [{"id": n} for n in range(5)], {"mode": WriteMode.INSERT, "batch_size": 2}
        )

        assert result.written == 5
        assert [event.payload["percent"] for event in progress] == [40, 80, 100]
        metrics = adapter.get_metrics()
        assert metrics["records_written"] == 5
        assert metrics["operations"]["write"]["count"] == 1

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        """Entering connects and leaving cleans up."""
        async with InMemoryAdapter() as adapter:
            assert adapter.is_connected

        assert not adapter.is_connected
