"""Unit tests for the per-session event queue."""

import asyncio

import pytest

from coderunner.core.queues import EventQueue


class TestEventQueue:
    """Test ordering and drop-oldest behaviour."""

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        """Test events come out in the order they were put."""
        queue = EventQueue(maxsize=10)
        for i in range(3):
            queue.put(i)
        assert queue.drain() == [0, 1, 2]
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        """Test a full queue loses its oldest event, never blocks."""
        queue = EventQueue(maxsize=2)
        queue.put("a")
        queue.put("b")
        queue.put("c")
        assert queue.dropped == 1
        assert queue.drain() == ["b", "c"]

    @pytest.mark.asyncio
    async def test_get_timeout_returns_none(self):
        """Test get() with a timeout returns None when nothing arrives."""
        queue = EventQueue()
        assert await queue.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_get_waits_for_put(self):
        """Test a waiting consumer receives the next event."""
        queue = EventQueue()
        waiter = asyncio.create_task(queue.get(timeout=1.0))
        await asyncio.sleep(0)
        queue.put("event")
        assert await waiter == "event"
        assert queue.qsize() == 0
