"""
Global FFmpeg slot accounting.

A counting semaphore with an explicit FIFO wait queue: a released slot is
handed straight to the longest-waiting caller, so late arrivals can never
overtake queued ones.
"""

import asyncio
import logging
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Bounds how many FFmpeg processes may run system-wide."""

    def __init__(self, max_concurrent: int = 20):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._active_count = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def active_count(self) -> int:
        return self._active_count

    @property
    def queue_size(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> None:
        """Acquire one slot, waiting in FIFO order if none is free."""
        if self._active_count < self.max_concurrent and not self.queue_size:
            self._active_count += 1
            logger.debug(
                f"FFmpeg slot acquired ({self._active_count}/{self.max_concurrent})"
            )
            return

        logger.debug(
            f"FFmpeg process limit reached ({self._active_count}/{self.max_concurrent}), "
            f"queuing behind {self.queue_size} waiter(s)"
        )

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Release one slot, handing it to the next waiter if any."""
        if self._active_count <= 0:
            logger.warning("FFmpeg slot released with no active slots")
            return

        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Ownership moves to the waiter; active count is unchanged
                fut.set_result(None)
                logger.debug(
                    f"FFmpeg slot handed to next waiter ({len(self._waiters)} still queued)"
                )
                return

        self._active_count -= 1
        logger.debug(
            f"FFmpeg slot released ({self._active_count}/{self.max_concurrent})"
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_concurrent": self.max_concurrent,
            "active_count": self._active_count,
            "queue_size": self.queue_size,
        }
