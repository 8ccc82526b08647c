"""
Per-channel stream jobs.

A job is one running producer of local HLS output for a channel: a direct
FFmpeg transmux, a restream worker subprocess, or a browser capture
session. Each manager keeps at most one live job per channel id and
serialises creation per channel, so concurrent requests share one job.
"""

import asyncio
import logging
import shutil
import signal
import sys
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional

from embedtv.ffmpeg.args import build_transmux_args
from embedtv.ffmpeg.orchestrator import ProcessOrchestrator, SpawnOptions, check_ffmpeg_available
from embedtv.ffmpeg.resource_monitor import ResourceMonitor
from embedtv.streaming.errors import DependencyUnavailable, ManifestNotReady

if TYPE_CHECKING:
    from embedtv.config import CaptureConfig, EmbedTVConfig, RestreamConfig, TransmuxConfig
    from embedtv.streaming.capture import CapturePipeline
    from embedtv.streaming.detection import DetectedStream

logger = logging.getLogger(__name__)


class StreamMode(str, Enum):
    """How a channel's stream is delivered to clients."""

    DIRECT_PROXY = "direct-proxy"
    TRANSMUX = "transmux"
    RESTREAM = "restream"
    CAPTURE = "capture"


class JobState(str, Enum):
    """Job lifecycle states."""

    LIVE = "live"
    STALE = "stale"
    EVICTING = "evicting"


MIME_TYPES = {
    "hls": "application/vnd.apple.mpegurl",
    "dash": "application/dash+xml",
    "progressive": "video/mp4",
}


@dataclass
class Job:
    """One running stream producer bound to a channel id."""

    channel_id: str
    kind: str
    source: str
    work_dir: str
    manifest_path: str
    handle: Any = None  # ProcessWrapper, subprocess or CaptureSession
    state: JobState = JobState.LIVE
    created_at: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_accessed = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "kind": self.kind,
            "source": self.source,
            "work_dir": self.work_dir,
            "manifest_path": self.manifest_path,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
        }


class BaseJobManager:
    """
    Create-if-absent, reuse-if-healthy, evict-if-stale.

    Subclasses implement _create_job, _is_stale and _stop_job.
    """

    kind = "job"

    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _channel_lock(self, channel_id: str) -> AsyncIterator[None]:
        """Per-channel lock, forgotten once no caller holds or waits on it."""
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_id] = lock
        self._lock_users[channel_id] = self._lock_users.get(channel_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[channel_id] -= 1
            if not self._lock_users[channel_id]:
                del self._lock_users[channel_id]
                del self._locks[channel_id]

    async def _create_job(
        self, channel_id: str, source: str, headers: Optional[dict[str, str]]
    ) -> Job:
        raise NotImplementedError

    def _is_stale(self, job: Job) -> bool:
        raise NotImplementedError

    async def _stop_job(self, job: Job) -> None:
        raise NotImplementedError

    def refresh_state(self, job: Job) -> JobState:
        """Apply the staleness check and return the job's state."""
        if job.state == JobState.LIVE and self._is_stale(job):
            job.state = JobState.STALE
        return job.state

    async def ensure_job(
        self,
        channel_id: str,
        source: str,
        headers: Optional[dict[str, str]] = None,
    ) -> Job:
        """
        Return the live job for a channel, creating it if needed.

        A job whose source changed or that has gone stale is evicted and
        recreated.
        """
        async with self._channel_lock(channel_id):
            job = self.jobs.get(channel_id)
            if job is not None:
                state = self.refresh_state(job)
                if state == JobState.LIVE and job.source == source:
                    job.touch()
                    return job
                reason = "source changed" if job.source != source else state.value
                logger.info(f"Recreating {self.kind} job for {channel_id} ({reason})")
                await self._evict(job)

            job = await self._create_job(channel_id, source, headers)
            self.jobs[channel_id] = job
            logger.info(f"Started {self.kind} job for {channel_id} in {job.work_dir}")
            return job

    async def _evict(self, job: Job) -> None:
        job.state = JobState.EVICTING
        try:
            await self._stop_job(job)
        except Exception as e:
            logger.warning(f"Error stopping {self.kind} job for {job.channel_id}: {e}")
        finally:
            if self.jobs.get(job.channel_id) is job:
                del self.jobs[job.channel_id]
            _remove_tree(job.work_dir)

    async def cleanup_job(self, channel_id: str) -> bool:
        """Stop a channel's job and remove its work directory."""
        async with self._channel_lock(channel_id):
            job = self.jobs.get(channel_id)
            if job is None:
                return False
            await self._evict(job)
            logger.info(f"Cleaned up {self.kind} job for {channel_id}")
            return True

    async def cleanup_all(self) -> None:
        channel_ids = list(self.jobs.keys())
        await asyncio.gather(*(self.cleanup_job(cid) for cid in channel_ids))

    def get_job(self, channel_id: str) -> Optional[Job]:
        job = self.jobs.get(channel_id)
        if job is not None:
            job.touch()
        return job

    def get_metrics(self) -> dict[str, Any]:
        jobs = {}
        for channel_id, job in self.jobs.items():
            self.refresh_state(job)
            jobs[channel_id] = job.to_dict()
        return {"active_jobs": len(self.jobs), "jobs": jobs}


def _remove_tree(path: str) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove job directory {path}: {e}")


class TransmuxJobManager(BaseJobManager):
    """Remuxes an already-resolved upstream URL into local HLS with FFmpeg."""

    kind = "transmux"

    def __init__(
        self,
        orchestrator: ProcessOrchestrator,
        transmux_config: "TransmuxConfig",
        temp_root: Optional[str] = None,
    ):
        super().__init__()
        self.orchestrator = orchestrator
        self.config = transmux_config
        self.temp_root = temp_root

    async def _create_job(
        self, channel_id: str, source: str, headers: Optional[dict[str, str]]
    ) -> Job:
        work_dir = tempfile.mkdtemp(prefix="transmux-", dir=self.temp_root)
        manifest_path = str(Path(work_dir) / "index.m3u8")
        args = build_transmux_args(
            source,
            manifest_path,
            headers=headers,
            hls_time=self.config.hls_time,
            hls_list_size=self.config.hls_list_size,
        )

        logger.info(f"Starting transmux job for {channel_id}: {source}")
        try:
            wrapper = await self.orchestrator.spawn(
                channel_id,
                source,
                manifest_path,
                SpawnOptions(
                    headers=headers or {},
                    args=args,
                    manifest_timeout=self.config.readiness_timeout_ms / 1000,
                ),
            )
        except BaseException:
            _remove_tree(work_dir)
            raise

        return Job(channel_id, self.kind, source, work_dir, manifest_path, handle=wrapper)

    def _is_stale(self, job: Job) -> bool:
        return job.handle.state.is_terminal

    async def _stop_job(self, job: Job) -> None:
        if self.orchestrator.get_process(job.channel_id) is job.handle:
            await self.orchestrator.kill(job.channel_id)
        else:
            await job.handle.kill(timeout=self.orchestrator.kill_timeout)


class RestreamJobManager(BaseJobManager):
    """
    Runs the restream worker as a child process per channel.

    The worker owns the browser and its own FFmpeg; this side only waits
    for the manifest and relays the worker's output into the log.
    """

    kind = "restream"

    def __init__(
        self,
        restream_config: "RestreamConfig",
        temp_root: Optional[str] = None,
        python: str = sys.executable,
        kill_timeout: float = 5.0,
        poll_interval: float = 0.5,
        resource_monitor: Optional[ResourceMonitor] = None,
    ):
        super().__init__()
        self.config = restream_config
        self.temp_root = temp_root
        self.python = python
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval
        self.resource_monitor = resource_monitor
        self._drains: dict[str, list[asyncio.Task]] = {}
        self._watchers: set[asyncio.Task] = set()

    def worker_command(self, embed_url: str, channel_id: str, work_dir: str) -> list[str]:
        return [
            self.python,
            "-m",
            "embedtv.streaming.restream_worker",
            embed_url,
            channel_id,
            work_dir,
        ]

    async def _create_job(
        self, channel_id: str, source: str, headers: Optional[dict[str, str]]
    ) -> Job:
        work_dir = tempfile.mkdtemp(prefix="restream-", dir=self.temp_root)
        manifest_path = str(Path(work_dir) / f"{channel_id}.m3u8")

        # The worker runs its own FFmpeg, so it holds a transcoder slot until it exits
        if self.resource_monitor is not None:
            try:
                await self.resource_monitor.acquire()
            except BaseException:
                _remove_tree(work_dir)
                raise

        logger.info(f"Starting restream job for {channel_id}: {source}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.worker_command(source, channel_id, work_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._release_slot()
            _remove_tree(work_dir)
            raise DependencyUnavailable(
                f"Failed to start restream worker: {e}",
                channel_id=channel_id,
                original_error=e,
            ) from e
        except BaseException:
            self._release_slot()
            _remove_tree(work_dir)
            raise

        if self.resource_monitor is not None:
            watcher = asyncio.create_task(self._release_on_exit(process))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)

        self._drains[channel_id] = [
            asyncio.create_task(self._drain(process.stdout, channel_id, logging.INFO)),
            asyncio.create_task(self._drain(process.stderr, channel_id, logging.WARNING)),
        ]

        job = Job(channel_id, self.kind, source, work_dir, manifest_path, handle=process)
        try:
            await self._wait_for_manifest(job)
        except BaseException:
            await self._stop_job(job)
            _remove_tree(work_dir)
            raise
        return job

    def _release_slot(self) -> None:
        if self.resource_monitor is not None:
            self.resource_monitor.release()

    async def _release_on_exit(self, process: Any) -> None:
        try:
            await process.wait()
        finally:
            self._release_slot()

    async def _drain(
        self, stream: Optional[asyncio.StreamReader], channel_id: str, level: int
    ) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.log(level, f"[restream {channel_id}] {text}")

    async def _wait_for_manifest(self, job: Job) -> None:
        loop = asyncio.get_running_loop()
        timeout = self.config.readiness_timeout_ms / 1000
        deadline = loop.time() + timeout
        path = Path(job.manifest_path)

        while True:
            if job.handle.returncode is not None:
                raise ManifestNotReady(
                    f"Restream worker exited with code {job.handle.returncode}",
                    channel_id=job.channel_id,
                )
            try:
                if path.stat().st_size > 0:
                    return
            except FileNotFoundError:
                pass
            if loop.time() >= deadline:
                raise ManifestNotReady(
                    f"Timed out waiting for restream manifest after {timeout:.0f}s",
                    channel_id=job.channel_id,
                )
            await asyncio.sleep(self.poll_interval)

    def _is_stale(self, job: Job) -> bool:
        return job.handle.returncode is not None

    async def _stop_job(self, job: Job) -> None:
        process = job.handle
        if process.returncode is None:
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Force killing restream worker for {job.channel_id}")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        for task in self._drains.pop(job.channel_id, []):
            task.cancel()


class CaptureJobManager(BaseJobManager):
    """Browser screencast capture piped into FFmpeg."""

    kind = "capture"

    def __init__(
        self,
        pipeline: "CapturePipeline",
        readiness_timeout: float = 30.0,
        poll_interval: float = 0.5,
    ):
        super().__init__()
        self.pipeline = pipeline
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self._dependencies_ok = False
        self._dependency_error: Optional[DependencyUnavailable] = None
        self._dependency_lock = asyncio.Lock()

    async def ensure_dependencies(self) -> None:
        """
        Check FFmpeg and Chromium once per process.

        A failed check is remembered and re-raised on every later call.
        """
        if self._dependencies_ok:
            return
        async with self._dependency_lock:
            if self._dependencies_ok:
                return
            if self._dependency_error is not None:
                raise self._dependency_error

            from embedtv.streaming.browser import check_browser_launchable

            try:
                version = await check_ffmpeg_available(self.pipeline.orchestrator.ffmpeg_path)
                logger.info(f"Capture dependencies: {version}")
                await check_browser_launchable()
            except DependencyUnavailable as e:
                logger.error(f"Capture dependencies unavailable: {e}")
                self._dependency_error = e
                raise
            self._dependencies_ok = True

    async def _create_job(
        self, channel_id: str, source: str, headers: Optional[dict[str, str]]
    ) -> Job:
        await self.ensure_dependencies()

        session = await self.pipeline.start(channel_id, source)
        try:
            await session.process.wait_for_manifest(
                timeout=self.readiness_timeout, poll_interval=self.poll_interval
            )
        except BaseException:
            await self.pipeline.stop(channel_id)
            raise

        return Job(
            channel_id,
            self.kind,
            source,
            session.work_dir,
            session.manifest_path,
            handle=session,
        )

    def _is_stale(self, job: Job) -> bool:
        return not job.handle.alive

    async def _stop_job(self, job: Job) -> None:
        await self.pipeline.stop(job.channel_id)


@dataclass
class Resolution:
    """What resolving one channel produced; applied through the registry."""

    stream_url: Optional[str] = None
    source_url: Optional[str] = None
    mime_type: Optional[str] = None
    cookies: dict[str, str] = field(default_factory=dict)
    job: Optional[Job] = None


def parse_cookie_header(value: Optional[str]) -> dict[str, str]:
    """Split a Cookie header into an ordered name -> value map."""
    cookies: dict[str, str] = {}
    if not value:
        return cookies
    for part in value.split(";"):
        name, sep, val = part.strip().partition("=")
        if sep and name:
            cookies[name] = val
    return cookies


DetectFn = Callable[[str], Awaitable[tuple["DetectedStream", dict[str, str]]]]


class StreamService:
    """
    Facade over the job managers.

    Picks the manager for a channel's stream mode and turns a channel into
    a Resolution; it never writes to the channel itself.
    """

    def __init__(
        self,
        orchestrator: ProcessOrchestrator,
        transmux_config: "TransmuxConfig",
        restream_config: "RestreamConfig",
        capture_config: "CaptureConfig",
        user_agent: Optional[str] = None,
        temp_root: Optional[str] = None,
        detect: Optional[DetectFn] = None,
    ):
        from embedtv.streaming.capture import CapturePipeline

        self.orchestrator = orchestrator
        self.transmux = TransmuxJobManager(orchestrator, transmux_config, temp_root)
        self.restream = RestreamJobManager(
            restream_config,
            temp_root,
            kill_timeout=orchestrator.kill_timeout,
            resource_monitor=orchestrator.resource_monitor,
        )
        pipeline_kwargs = {"user_agent": user_agent} if user_agent else {}
        self.capture = CaptureJobManager(
            CapturePipeline(orchestrator, capture_config, temp_root, **pipeline_kwargs),
            readiness_timeout=orchestrator.manifest_timeout,
            poll_interval=orchestrator.manifest_poll,
        )
        self._detect = detect

    @classmethod
    def from_config(
        cls, cfg: "EmbedTVConfig", orchestrator: ProcessOrchestrator
    ) -> "StreamService":
        return cls(
            orchestrator,
            cfg.transmux,
            cfg.restream,
            cfg.capture,
            user_agent=cfg.proxy.user_agent,
        )

    @property
    def managers(self) -> dict[StreamMode, BaseJobManager]:
        return {
            StreamMode.TRANSMUX: self.transmux,
            StreamMode.RESTREAM: self.restream,
            StreamMode.CAPTURE: self.capture,
        }

    def manager_for(self, mode: str) -> Optional[BaseJobManager]:
        return self.managers.get(StreamMode(mode))

    async def detect(self, embed_url: str) -> tuple["DetectedStream", dict[str, str]]:
        """Find the upstream media URL behind an embed page."""
        if self._detect is not None:
            return await self._detect(embed_url)

        from embedtv.streaming.restream_worker import resolve_stream

        return await resolve_stream(embed_url)

    async def resolve(self, channel: Any, headers: Optional[dict[str, str]] = None) -> Resolution:
        """
        Resolve a channel according to its stream mode.

        direct-proxy and transmux detect the upstream URL in the browser
        (transmux only when none is known yet); transmux, restream and
        capture then ensure a job and point stream_url at its manifest.
        """
        mode = StreamMode(channel.stream_mode)

        if mode in (StreamMode.DIRECT_PROXY, StreamMode.TRANSMUX):
            source_url = channel.source_url
            mime_type = channel.stream_mime_type
            cookies: dict[str, str] = {}
            request_headers = dict(headers or {})

            if mode == StreamMode.DIRECT_PROXY or not source_url:
                stream, detected_headers = await self.detect(channel.embed_url)
                source_url = stream.url
                mime_type = MIME_TYPES.get(stream.type.value)
                cookies = parse_cookie_header(detected_headers.get("Cookie"))
                request_headers.update(detected_headers)

            if mode == StreamMode.DIRECT_PROXY:
                return Resolution(
                    stream_url=source_url,
                    source_url=source_url,
                    mime_type=mime_type,
                    cookies=cookies,
                )

            job = await self.transmux.ensure_job(channel.id, source_url, request_headers)
            return Resolution(
                stream_url=job.manifest_path,
                source_url=source_url,
                mime_type=MIME_TYPES["hls"],
                cookies=cookies,
                job=job,
            )

        manager = self.managers[mode]
        job = await manager.ensure_job(channel.id, channel.embed_url)
        return Resolution(stream_url=job.manifest_path, mime_type=MIME_TYPES["hls"], job=job)

    async def ensure_job(self, channel: Any, headers: Optional[dict[str, str]] = None) -> Optional[Job]:
        """Ensure a job for a job-backed channel; None for direct-proxy."""
        if StreamMode(channel.stream_mode) == StreamMode.DIRECT_PROXY:
            return None
        return (await self.resolve(channel, headers)).job

    def get_local_job(self, channel_id: str) -> Optional[Job]:
        for manager in self.managers.values():
            job = manager.get_job(channel_id)
            if job is not None:
                return job
        return None

    async def evict(self, channel_ids: list[str]) -> None:
        """Tear down every job belonging to the given channels."""
        if not channel_ids:
            return
        logger.info(f"Evicting jobs for {len(channel_ids)} channel(s)")
        await asyncio.gather(
            *(
                manager.cleanup_job(channel_id)
                for channel_id in channel_ids
                for manager in self.managers.values()
            )
        )

    async def shutdown(self) -> None:
        await asyncio.gather(*(m.cleanup_all() for m in self.managers.values()))

    def get_metrics(self) -> dict[str, Any]:
        return {mode.value: manager.get_metrics() for mode, manager in self.managers.items()}

