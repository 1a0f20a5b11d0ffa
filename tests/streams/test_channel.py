"""Tests for bounded channels, source iteration and adaptive batch sizing."""

import asyncio

import pytest

from flowbridge.streams import AdaptiveBatchSizer, BoundedChannel, ChannelClosed, iterate_source


class TestBoundedChannel:
    """Test suite for the bounded FIFO channel."""

    @pytest.mark.asyncio
    async def test_items_arrive_in_order(self):
        """Receivers drain buffered items in send order before the channel ends."""
        channel = BoundedChannel(10)
        for item in (1, 2, 3):
            await channel.send(item)
        await channel.close()

        assert [item async for item in channel] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_backpressure_band(self):
        """Backpressure starts above the threshold and clears at the low-water mark."""
        signalled = []
        channel = BoundedChannel(4, threshold=2, on_backpressure=signalled.append, pause_on_backpressure=False)

        for item in range(3):
            await channel.send(item)

        assert channel.backpressured is True
        assert signalled == [3]
        assert channel.metrics.backpressure_events == 1

        await channel.receive()
        assert channel.backpressured is True
        await channel.receive()
        assert channel.backpressured is False

    @pytest.mark.asyncio
    async def test_send_blocks_when_full(self):
        """A sender waits for room once capacity is reached."""
        channel = BoundedChannel(1, pause_on_backpressure=False)
        await channel.send("a")

        pending = asyncio.create_task(channel.send("b"))
        await asyncio.sleep(0.01)
        assert not pending.done()

        assert await channel.receive() == "a"
        await asyncio.wait_for(pending, timeout=1)
        assert len(channel) == 1
        assert channel.metrics.buffer_high_water == 1

    @pytest.mark.asyncio
    async def test_close_with_error(self):
        """Buffered items are delivered before the close error surfaces."""
        channel = BoundedChannel(5)
        await channel.send(1)
        await channel.close(RuntimeError("source failed"))

        assert await channel.receive() == 1
        with pytest.raises(RuntimeError, match="source failed"):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        """Closed channels reject new items."""
        channel = BoundedChannel(2)
        await channel.close()

        with pytest.raises(ChannelClosed):
            await channel.send(1)

    def test_capacity_must_be_positive(self):
        """A zero-capacity channel is rejected."""
        with pytest.raises(ValueError):
            BoundedChannel(0)


class TestIterateSource:
    """Test suite for source normalization."""

    @pytest.mark.asyncio
    async def test_sync_and_async_sources(self):
        """Lists, async generators and single values are all iterable."""

        async def generate():
            yield "x"
            yield "y"

        assert [item async for item in iterate_source([1, 2])] == [1, 2]
        assert [item async for item in iterate_source(generate())] == ["x", "y"]
        assert [item async for item in iterate_source({"id": 1})] == [{"id": 1}]
        assert [item async for item in iterate_source("text")] == ["text"]


class TestAdaptiveBatchSizer:
    """Test suite for adaptive batch sizing."""

    def test_grows_when_throughput_improves(self):
        """Faster batches grow the size by half, capped at the maximum."""
        sizer = AdaptiveBatchSizer(100, maximum=200)

        assert sizer.observe(100, 1.0) == 100
        assert sizer.observe(100, 0.5) == 150
        assert sizer.observe(150, 0.1) == 200
        assert sizer.adjustments == 2

    def test_slower_batches_keep_size(self):
        """A slower batch leaves the size unchanged."""
        sizer = AdaptiveBatchSizer(100, maximum=200)
        sizer.observe(100, 0.5)

        assert sizer.observe(100, 1.0) == 100

    def test_shrink_halves_down_to_minimum(self):
        """Shrinking halves the size without going under the minimum."""
        sizer = AdaptiveBatchSizer(8, maximum=8, minimum=3)

        assert sizer.shrink() == 4
        assert sizer.shrink() == 3
        assert sizer.shrink() == 3

    def test_initial_is_clamped(self):
        """The initial size respects the bounds."""
        assert AdaptiveBatchSizer(500, maximum=100).current == 100
        assert AdaptiveBatchSizer(0, maximum=100).current == 1
