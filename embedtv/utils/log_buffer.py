"""
In-memory log buffer with live fan-out.

Keeps the most recent log records and lets subscribers (the SSE log
stream) receive a replay of that history followed by live entries.
"""

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional


class LogBuffer(logging.Handler):
    """
    Logging handler backed by a bounded ring buffer.

    Features:
    - Newest-first snapshot for the control API
    - Late subscribers get history (oldest first) then live entries
    - Slow subscribers lose their oldest queued entries instead of blocking logging
    """

    def __init__(self, limit: int = 500, subscriber_queue_size: int = 1000):
        super().__init__()
        self.limit = limit
        self.subscriber_queue_size = max(subscriber_queue_size, limit)
        self._entries: deque[dict[str, Any]] = deque(maxlen=limit)
        self._subscribers: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
            }
        except Exception:
            self.handleError(record)
            return

        with self._entries_lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers.items())

        for queue, loop in subscribers:
            self._deliver(queue, loop, entry)

    def entries(self) -> list[dict[str, Any]]:
        """Get buffered entries, newest first."""
        with self._entries_lock:
            return list(reversed(self._entries))

    def subscribe(self) -> asyncio.Queue:
        """
        Subscribe to log entries.

        Must be called from within a running event loop. The returned queue
        is pre-filled with the buffered history, oldest first.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriber_queue_size)

        with self._entries_lock:
            for entry in self._entries:
                queue.put_nowait(entry)
            self._subscribers[queue] = loop

        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        """Stop delivering entries to a subscriber queue."""
        with self._entries_lock:
            self._subscribers.pop(queue, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def _deliver(
        self,
        queue: asyncio.Queue,
        loop: asyncio.AbstractEventLoop,
        entry: dict[str, Any],
    ) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            _put_dropping_oldest(queue, entry)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(_put_dropping_oldest, queue, entry)


def _put_dropping_oldest(queue: asyncio.Queue, entry: dict[str, Any]) -> None:
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    queue.put_nowait(entry)


# Global buffer instance
_log_buffer: Optional[LogBuffer] = None


def get_log_buffer() -> LogBuffer:
    """Get the global log buffer."""
    global _log_buffer
    if _log_buffer is None:
        _log_buffer = LogBuffer()
    return _log_buffer


def init_log_buffer(limit: int) -> LogBuffer:
    """Replace the global log buffer with one of the given size."""
    global _log_buffer
    _log_buffer = LogBuffer(limit=limit)
    return _log_buffer
