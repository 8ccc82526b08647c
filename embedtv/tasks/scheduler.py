"""
Periodic channel rebuilds.

Every interval: scrape events, reconcile the registry (which evicts jobs
of removed channels), hydrate streams, record the time.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from embedtv.channels.models import Event, ReconcileResult
from embedtv.channels.registry import ChannelRegistry

if TYPE_CHECKING:
    from embedtv.config import EmbedTVConfig

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional["RebuildScheduler"] = None

EventSource = Callable[[], Awaitable[list[Event]]]


class RebuildScheduler:
    """
    Runs rebuilds on an interval and on demand.

    Concurrent triggers share the rebuild that is already running.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        event_source: EventSource,
        interval_minutes: int = 60,
    ):
        self.registry = registry
        self.event_source = event_source
        self.interval_minutes = interval_minutes

        self.last_rebuild: Optional[datetime] = None
        self.last_result: Optional[ReconcileResult] = None
        self.last_error: Optional[str] = None
        self.run_count = 0

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, cfg: "EmbedTVConfig", registry: ChannelRegistry) -> "RebuildScheduler":
        from embedtv.channels.scraper import scrape_front_page

        async def scrape() -> list[Event]:
            return await scrape_front_page(
                cfg.channels.front_page_url,
                timeout=cfg.proxy.timeout,
                expand_embeds=cfg.channels.expand_embeds,
            )

        return cls(registry, scrape, interval_minutes=cfg.channels.rebuild_interval_minutes)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def rebuild_in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    async def start(self, run_immediately: bool = True) -> None:
        """Start the interval loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop(run_immediately))
        logger.info(f"Rebuild scheduler started (every {self.interval_minutes} min)")

    async def stop(self) -> None:
        """Stop the loop and cancel any rebuild in flight."""
        if not self._running:
            return
        self._running = False

        for task in (self._loop_task, self._current):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._current = None
        logger.info("Rebuild scheduler stopped")

    def reschedule(self, interval_minutes: int) -> None:
        """Restart the interval countdown with a new period."""
        self.interval_minutes = interval_minutes
        if not self._running:
            return
        if self._loop_task is not None:
            self._loop_task.cancel()
        self._loop_task = asyncio.create_task(self._loop(run_immediately=False))
        logger.info(f"Rebuild rescheduled every {interval_minutes} min")

    async def trigger(self) -> Optional[ReconcileResult]:
        """Run a rebuild now, or join the one already running."""
        if self._current is None or self._current.done():
            self._current = asyncio.create_task(self._rebuild())
        return await asyncio.shield(self._current)

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            await self.trigger()
        while self._running:
            await asyncio.sleep(self.interval_minutes * 60)
            await self.trigger()

    async def _rebuild(self) -> Optional[ReconcileResult]:
        logger.info("Rebuilding channels")
        try:
            events = await self.event_source()
        except Exception as e:
            self.last_error = f"scrape: {e}"
            logger.error(f"Rebuild failed while scraping events: {e}")
            return None

        try:
            result = await self.registry.reconcile(events)
        except Exception as e:
            self.last_error = f"reconcile: {e}"
            logger.error(f"Rebuild failed while reconciling channels: {e}")
            return None

        try:
            await self.registry.hydrate()
        except Exception as e:
            self.last_error = f"hydrate: {e}"
            logger.error(f"Rebuild failed while hydrating streams: {e}")
            return None

        self.last_rebuild = datetime.now(timezone.utc)
        self.last_result = result
        self.last_error = None
        self.run_count += 1
        logger.info(f"Rebuild complete: {result.total} channel(s)")
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_minutes": self.interval_minutes,
            "rebuild_in_progress": self.rebuild_in_progress,
            "last_rebuild": self.last_rebuild.isoformat() if self.last_rebuild else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_error": self.last_error,
            "run_count": self.run_count,
        }


def get_rebuild_scheduler() -> Optional[RebuildScheduler]:
    return _scheduler


def init_rebuild_scheduler(scheduler: Optional[RebuildScheduler]) -> Optional[RebuildScheduler]:
    global _scheduler
    _scheduler = scheduler
    return scheduler
