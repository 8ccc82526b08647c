"""
FFmpeg Process Orchestrator

Spawns and stops FFmpeg processes per channel, bounded by a global
ResourceMonitor, and aggregates their metrics.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from embedtv.ffmpeg.args import build_hls_args, build_pipe_args
from embedtv.ffmpeg.process import ProcessWrapper
from embedtv.ffmpeg.resource_monitor import ResourceMonitor
from embedtv.streaming.errors import DependencyUnavailable

if TYPE_CHECKING:
    from embedtv.config import EmbedTVConfig

logger = logging.getLogger(__name__)


@dataclass
class SpawnOptions:
    """Options for a single spawn."""

    headers: dict[str, str] = field(default_factory=dict)
    stream_type: str = "hls"
    # Full argument list (without the binary); overrides the HLS copy defaults
    args: Optional[list[str]] = None
    manifest_timeout: Optional[float] = None
    # Pipe mode only
    fps: int = 30
    audio_input: Optional[str] = None


class ProcessOrchestrator:
    """
    Owns every FFmpeg process in the service.

    At most one process runs per channel id; spawning for a channel that
    already has one stops the old process first.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        max_concurrent: int = 20,
        memory_limit_mb: Optional[int] = 512,
        health_check_interval: float = 10.0,
        stale_threshold: float = 60.0,
        manifest_timeout: float = 30.0,
        manifest_poll: float = 0.5,
        kill_timeout: float = 5.0,
        buffer_lines: int = 50,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.resource_monitor = ResourceMonitor(max_concurrent)
        self.memory_limit_mb = memory_limit_mb
        self.health_check_interval = health_check_interval
        self.stale_threshold = stale_threshold
        self.manifest_timeout = manifest_timeout
        self.manifest_poll = manifest_poll
        self.kill_timeout = kill_timeout
        self.buffer_lines = buffer_lines

        self._processes: dict[str, ProcessWrapper] = {}

    @classmethod
    def from_config(cls, cfg: "EmbedTVConfig") -> "ProcessOrchestrator":
        ff = cfg.ffmpeg
        return cls(
            ffmpeg_path=ff.path,
            max_concurrent=ff.max_concurrent,
            memory_limit_mb=ff.memory_limit_mb,
            health_check_interval=ff.health_check_interval_ms / 1000,
            stale_threshold=ff.stale_threshold_ms / 1000,
            manifest_timeout=ff.manifest_timeout_ms / 1000,
            manifest_poll=ff.manifest_poll_ms / 1000,
            kill_timeout=ff.kill_timeout_ms / 1000,
            buffer_lines=ff.buffer_lines,
        )

    @property
    def active_count(self) -> int:
        return self.resource_monitor.active_count

    def get_process(self, channel_id: str) -> Optional[ProcessWrapper]:
        return self._processes.get(channel_id)

    def _make_wrapper(
        self, channel_id: str, args: list[str], output_path: str, stdin_pipe: bool
    ) -> ProcessWrapper:
        return ProcessWrapper(
            channel_id,
            [self.ffmpeg_path, *args],
            output_path,
            stdin_pipe=stdin_pipe,
            buffer_lines=self.buffer_lines,
            health_check_interval=self.health_check_interval,
            stale_threshold=self.stale_threshold,
            memory_limit_mb=self.memory_limit_mb,
        )

    async def _launch(self, wrapper: ProcessWrapper) -> None:
        """Acquire a slot and start the wrapper; the slot is freed once on exit."""
        await self.resource_monitor.acquire()

        released = False

        def release_slot(_: Optional[ProcessWrapper] = None) -> None:
            nonlocal released
            if not released:
                released = True
                self.resource_monitor.release()

        def forget(w: ProcessWrapper) -> None:
            release_slot()
            if self._processes.get(w.channel_id) is w:
                del self._processes[w.channel_id]

        try:
            await wrapper.start()
        except (OSError, ValueError) as e:
            release_slot()
            raise DependencyUnavailable(
                f"Failed to launch FFmpeg: {e}",
                channel_id=wrapper.channel_id,
                original_error=e,
            ) from e
        except BaseException:
            release_slot()
            raise

        self._processes[wrapper.channel_id] = wrapper
        wrapper.add_exit_callback(forget)

    async def spawn(
        self,
        channel_id: str,
        stream_url: str,
        output_path: str,
        options: Optional[SpawnOptions] = None,
    ) -> ProcessWrapper:
        """
        Spawn FFmpeg writing HLS to output_path and wait for the manifest.

        Raises:
            ManifestNotReady: The process exited or timed out before writing output
            DependencyUnavailable: The binary could not be executed
        """
        options = options or SpawnOptions()

        if channel_id in self._processes:
            logger.info(f"Replacing existing FFmpeg process for {channel_id}")
            await self.kill(channel_id)

        args = options.args or build_hls_args(
            stream_url,
            output_path,
            headers=options.headers,
            stream_type=options.stream_type,
        )
        wrapper = self._make_wrapper(channel_id, args, output_path, stdin_pipe=False)
        await self._launch(wrapper)

        timeout = options.manifest_timeout or self.manifest_timeout
        try:
            await wrapper.wait_for_manifest(timeout=timeout, poll_interval=self.manifest_poll)
        except BaseException:
            await wrapper.kill(timeout=self.kill_timeout)
            raise

        logger.info(f"FFmpeg ready for {channel_id} (pid {wrapper.pid})")
        return wrapper

    async def spawn_for_pipe(
        self,
        channel_id: str,
        manifest_path: str,
        options: Optional[SpawnOptions] = None,
    ) -> ProcessWrapper:
        """
        Spawn FFmpeg reading frames from stdin.

        Returns as soon as the process is running; the manifest only appears
        once frames have been written.
        """
        options = options or SpawnOptions()

        if channel_id in self._processes:
            await self.kill(channel_id)

        args = options.args or build_pipe_args(
            manifest_path,
            fps=options.fps,
            audio_input=options.audio_input,
        )
        wrapper = self._make_wrapper(channel_id, args, manifest_path, stdin_pipe=True)
        await self._launch(wrapper)
        return wrapper

    async def kill(
        self,
        channel_id: str,
        sig: int = signal.SIGTERM,
        timeout: Optional[float] = None,
    ) -> bool:
        """Stop the process for a channel. Returns False if none was running."""
        wrapper = self._processes.get(channel_id)
        if wrapper is None:
            return False

        await wrapper.kill(sig=sig, timeout=timeout or self.kill_timeout)
        if self._processes.get(channel_id) is wrapper:
            del self._processes[channel_id]
        return True

    async def kill_all(self) -> int:
        """Stop all processes concurrently."""
        channel_ids = list(self._processes.keys())
        if not channel_ids:
            return 0

        logger.info(f"Stopping {len(channel_ids)} FFmpeg process(es)")
        results = await asyncio.gather(
            *(self.kill(channel_id) for channel_id in channel_ids),
            return_exceptions=True,
        )
        for channel_id, result in zip(channel_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping FFmpeg for {channel_id}: {result}")
        return sum(1 for r in results if r is True)

    def get_metrics(self) -> dict[str, Any]:
        stats = self.resource_monitor.get_stats()
        return {
            "active_count": stats["active_count"],
            "max_concurrent": stats["max_concurrent"],
            "queue_size": stats["queue_size"],
            "processes": {
                channel_id: wrapper.get_metrics()
                for channel_id, wrapper in self._processes.items()
            },
        }


async def check_ffmpeg_available(ffmpeg_path: str = "ffmpeg", timeout: float = 5.0) -> str:
    """
    Verify the FFmpeg binary runs.

    Returns:
        The first line of `ffmpeg -version`

    Raises:
        DependencyUnavailable: If FFmpeg is missing, fails, or hangs
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise DependencyUnavailable(f"FFmpeg not found at {ffmpeg_path}: {e}", original_error=e) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise DependencyUnavailable(
            f"FFmpeg did not respond within {timeout:.0f}s", original_error=e
        ) from e

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise DependencyUnavailable(f"FFmpeg exited with code {process.returncode}: {detail}")

    version = stdout.decode("utf-8", errors="replace").splitlines()
    return version[0] if version else "ffmpeg"


# Global orchestrator instance
_orchestrator: Optional[ProcessOrchestrator] = None


def get_process_orchestrator() -> ProcessOrchestrator:
    """Get or create the global process orchestrator."""
    global _orchestrator

    if _orchestrator is None:
        from embedtv.config import get_config

        _orchestrator = ProcessOrchestrator.from_config(get_config())

    return _orchestrator


def init_process_orchestrator(orchestrator: ProcessOrchestrator) -> ProcessOrchestrator:
    """Install a specific orchestrator as the global instance."""
    global _orchestrator
    _orchestrator = orchestrator
    return orchestrator


async def shutdown_process_orchestrator() -> None:
    """Stop all processes and drop the global orchestrator."""
    global _orchestrator

    if _orchestrator is not None:
        await _orchestrator.kill_all()
        _orchestrator = None
