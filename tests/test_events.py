"""Tests for the event bus and event channels."""

import asyncio
import logging

import pytest

from flowbridge.events import Event, EventBus, EventType, get_event_bus


class TestEventBus:
    """Test suite for synchronous event fan-out."""

    def test_emit_reaches_all_subscribers(self):
        """Handlers without a type filter receive every event."""
        bus = EventBus()
        received = []
        bus.subscribe(received.append)

        event = bus.emit(EventType.POOL_CONNECT, "pool:main", size=1)

        assert received == [event]
        assert event.payload == {"size": 1}
        assert event.to_dict()["type"] == "pool.connect"

    def test_type_filter(self):
        """Filtered handlers only see matching events; strings are accepted."""
        bus = EventBus()
        errors = []
        bus.subscribe(errors.append, ["pool.error", EventType.EXECUTION_ERROR])

        bus.emit(EventType.POOL_ACQUIRE, "pool:main")
        bus.emit(EventType.POOL_ERROR, "pool:main", error="boom")

        assert [event.type for event in errors] == [EventType.POOL_ERROR]

    def test_unsubscribe(self):
        """The returned callable removes the subscription and is idempotent."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        bus.emit(EventType.POOL_RELEASE, "pool:main")

        assert received == []

    def test_handler_failures_are_contained(self, caplog):
        """A raising handler is logged and later handlers still run."""
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("handler exploded")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        with caplog.at_level(logging.WARNING):
            bus.emit(EventType.EXECUTION_STARTED, "ctx-1")

        assert len(received) == 1
        assert "Event handler failed for execution.started" in caplog.text

    def test_unknown_type_name_rejected(self):
        """Subscribing to an unknown event name raises ValueError."""
        with pytest.raises(ValueError):
            EventBus().subscribe(lambda event: None, ["pool.exploded"])

    def test_default_bus_is_shared(self):
        """get_event_bus returns one process-wide bus."""
        assert get_event_bus() is get_event_bus()


class TestEventChannel:
    """Test suite for bounded async channels."""

    def test_channel_drops_when_full(self):
        """Events beyond maxsize are counted as dropped."""
        bus = EventBus()
        channel = bus.channel([EventType.STREAM_BACKPRESSURE], maxsize=2)

        for _ in range(3):
            bus.emit(EventType.STREAM_BACKPRESSURE, "stream:1")
        bus.emit(EventType.POOL_CONNECT, "pool:main")

        assert len(channel.drain()) == 2
        assert channel.dropped == 1

    @pytest.mark.asyncio
    async def test_channel_async_iteration(self):
        """Channels can be consumed with async for."""
        bus = EventBus()
        channel = bus.channel()
        bus.emit(EventType.EXECUTION_STARTED, "ctx-1")
        bus.emit(EventType.EXECUTION_COMPLETED, "ctx-1")

        received: list[Event] = []
        async for event in channel:
            received.append(event)
            if len(received) == 2:
                break

        assert [event.type for event in received] == [
            EventType.EXECUTION_STARTED,
            EventType.EXECUTION_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self):
        """A closed channel no longer receives events."""
        bus = EventBus()
        channel = bus.channel()

        channel.close()
        bus.emit(EventType.EXECUTION_STARTED, "ctx-1")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(channel.get(), timeout=0.01)
