"""
Per-process FFmpeg health monitoring.

Periodically inspects one running process and moves it between healthy
and degraded based on output staleness, error rate and memory use.
"""

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING, Optional

from embedtv.ffmpeg.state import ProcessState

if TYPE_CHECKING:
    from embedtv.ffmpeg.process import ProcessWrapper

logger = logging.getLogger(__name__)

CRITICAL_ERROR_RE = re.compile(r"error|failed|invalid", re.IGNORECASE)

# A process is erroring when more than ERROR_WINDOW_MIN of its recent
# stderr lines exist and more than CRITICAL_ERROR_MIN of them look fatal
ERROR_WINDOW_MIN = 5
CRITICAL_ERROR_MIN = 3


class ProcessHealthMonitor:
    """
    Health checker attached to a single ProcessWrapper.

    Checks:
    - Time since last output beyond the stale threshold => degraded
    - Too many error-like stderr lines => degraded
    - Resident memory above the limit => degraded (when psutil is available)
    - Otherwise the process is healthy (a degraded one recovers)
    """

    def __init__(
        self,
        wrapper: "ProcessWrapper",
        check_interval: float = 10.0,
        stale_threshold: float = 60.0,
        memory_limit_mb: Optional[int] = None,
    ):
        self.wrapper = wrapper
        self.check_interval = check_interval
        self.stale_threshold = stale_threshold
        self.memory_limit_mb = memory_limit_mb
        self._task: Optional[asyncio.Task] = None
        self.checks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic check loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._check_loop())
        logger.debug(
            f"Health monitor started for {self.wrapper.channel_id} "
            f"(interval={self.check_interval}s, stale={self.stale_threshold}s)"
        )

    def stop(self) -> None:
        """Stop the check loop."""
        if self._task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._task is not current:
            self._task.cancel()
        self._task = None
        logger.debug(f"Health monitor stopped for {self.wrapper.channel_id}")

    async def _check_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.check_interval)
                self.check()
                if self.wrapper.state.is_terminal:
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check error for {self.wrapper.channel_id}: {e}")

    def check(self, now: Optional[float] = None) -> ProcessState:
        """
        Run one health check and apply the resulting state.

        Args:
            now: Monotonic timestamp to evaluate against (defaults to now)

        Returns:
            The wrapper's state after the check
        """
        self.checks += 1
        wrapper = self.wrapper
        state = wrapper.state

        if state.is_terminal:
            logger.debug(f"Health check: {wrapper.channel_id} already {state.value}")
            return state

        if state == ProcessState.INITIALIZING:
            return state

        now = time.monotonic() if now is None else now
        reference = wrapper.last_output_at or wrapper.started_at or now
        since_output = now - reference

        if since_output > self.stale_threshold:
            logger.warning(
                f"FFmpeg for {wrapper.channel_id} appears stale "
                f"({since_output:.1f}s since output, threshold {self.stale_threshold}s)"
            )
            wrapper.set_state(ProcessState.DEGRADED)
            return wrapper.state

        recent_errors = wrapper.recent_errors
        if len(recent_errors) > ERROR_WINDOW_MIN:
            critical = [line for line in recent_errors if CRITICAL_ERROR_RE.search(line)]
            if len(critical) > CRITICAL_ERROR_MIN:
                logger.warning(
                    f"FFmpeg for {wrapper.channel_id} has {len(critical)} critical errors"
                )
                wrapper.set_state(ProcessState.DEGRADED)
                return wrapper.state

        memory_mb = wrapper.memory_mb()
        if self.memory_limit_mb and memory_mb is not None and memory_mb > self.memory_limit_mb:
            logger.warning(
                f"FFmpeg for {wrapper.channel_id} uses {memory_mb:.0f} MB "
                f"(limit {self.memory_limit_mb} MB)"
            )
            wrapper.set_state(ProcessState.DEGRADED)
            return wrapper.state

        if state == ProcessState.DEGRADED:
            logger.info(f"FFmpeg for {wrapper.channel_id} recovered")
        if state != ProcessState.HEALTHY:
            wrapper.set_state(ProcessState.HEALTHY)

        return wrapper.state
