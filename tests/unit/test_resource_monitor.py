"""
Unit tests for the FFmpeg slot semaphore.
"""

import asyncio

import pytest

from embedtv.ffmpeg.resource_monitor import ResourceMonitor


@pytest.mark.unit
class TestResourceMonitor:
    """Tests for ResourceMonitor."""

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            ResourceMonitor(0)

    @pytest.mark.asyncio
    async def test_acquire_within_limit(self):
        monitor = ResourceMonitor(2)

        await monitor.acquire()
        await monitor.acquire()

        assert monitor.active_count == 2
        assert monitor.queue_size == 0

    @pytest.mark.asyncio
    async def test_waiters_served_in_fifo_order(self):
        monitor = ResourceMonitor(1)
        await monitor.acquire()
        order: list[str] = []

        async def worker(name: str) -> None:
            await monitor.acquire()
            order.append(name)

        first = asyncio.create_task(worker("first"))
        await asyncio.sleep(0)
        second = asyncio.create_task(worker("second"))
        await asyncio.sleep(0)
        assert monitor.queue_size == 2

        monitor.release()
        await first
        assert order == ["first"]
        assert monitor.active_count == 1

        monitor.release()
        await second
        assert order == ["first", "second"]
        assert monitor.active_count == 1

    @pytest.mark.asyncio
    async def test_late_arrival_does_not_overtake(self):
        monitor = ResourceMonitor(1)
        await monitor.acquire()

        queued = asyncio.create_task(monitor.acquire())
        await asyncio.sleep(0)

        monitor.release()
        late = asyncio.create_task(monitor.acquire())
        await asyncio.sleep(0)

        assert queued.done()
        assert not late.done()

        monitor.release()
        await asyncio.wait_for(late, timeout=1.0)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        monitor = ResourceMonitor(1)
        await monitor.acquire()

        waiter = asyncio.create_task(monitor.acquire())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert monitor.queue_size == 0
        monitor.release()
        assert monitor.active_count == 0

    def test_release_without_acquire_is_ignored(self):
        monitor = ResourceMonitor(1)

        monitor.release()

        assert monitor.active_count == 0

    @pytest.mark.asyncio
    async def test_stats(self):
        monitor = ResourceMonitor(3)
        await monitor.acquire()

        assert monitor.get_stats() == {"max_concurrent": 3, "active_count": 1, "queue_size": 0}
