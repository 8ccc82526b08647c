"""
Managed FFmpeg process.

Wraps one asyncio subprocess with an explicit lifecycle state machine,
bounded stdout/stderr tails, progress parsing and graceful termination.
"""

import asyncio
import logging
import re
import signal
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional

from embedtv.ffmpeg.args import parse_progress
from embedtv.ffmpeg.health_monitor import ProcessHealthMonitor
from embedtv.ffmpeg.state import ProcessState
from embedtv.streaming.errors import ManifestNotReady

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"[\r\n]+")
METRICS_TAIL = 10


class ProcessWrapper:
    """
    One FFmpeg process bound to a channel.

    Once the wrapper reaches crashed or killed it never changes state
    again; restarting a channel requires a new wrapper.
    """

    def __init__(
        self,
        channel_id: str,
        command: list[str],
        output_path: str,
        stdin_pipe: bool = False,
        buffer_lines: int = 50,
        health_check_interval: float = 10.0,
        stale_threshold: float = 60.0,
        memory_limit_mb: Optional[int] = None,
    ):
        self.channel_id = channel_id
        self.command = command
        self.output_path = output_path
        self.stdin_pipe = stdin_pipe

        self.process: Optional[asyncio.subprocess.Process] = None
        self.health_monitor = ProcessHealthMonitor(
            self,
            check_interval=health_check_interval,
            stale_threshold=stale_threshold,
            memory_limit_mb=memory_limit_mb,
        )

        self._state = ProcessState.INITIALIZING
        self.started_at: Optional[float] = None  # monotonic
        self.started_wall: Optional[float] = None
        self.last_output_at: Optional[float] = None  # monotonic
        self.exit_code: Optional[int] = None
        self.last_progress: Optional[dict[str, Any]] = None

        self._stdout_lines: deque[str] = deque(maxlen=buffer_lines)
        self._stderr_lines: deque[str] = deque(maxlen=buffer_lines)
        self._reader_tasks: list[asyncio.Task] = []
        self._exit_task: Optional[asyncio.Task] = None
        self._exited = asyncio.Event()
        self._kill_requested = False
        self._exit_callbacks: list[Callable[["ProcessWrapper"], None]] = []

    # ---- state ----

    @property
    def state(self) -> ProcessState:
        return self._state

    def set_state(self, new_state: ProcessState) -> bool:
        """
        Transition to a new state.

        Returns False (and changes nothing) when the wrapper is terminal.
        """
        if self._state.is_terminal:
            if new_state != self._state:
                logger.debug(
                    f"Ignoring {new_state.value} for {self.channel_id}: "
                    f"already {self._state.value}"
                )
            return False
        if new_state != self._state:
            logger.debug(f"FFmpeg {self.channel_id}: {self._state.value} -> {new_state.value}")
        self._state = new_state
        return True

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and not self._exited.is_set()

    @property
    def recent_errors(self) -> list[str]:
        return list(self._stderr_lines)[-METRICS_TAIL:]

    @property
    def recent_output(self) -> list[str]:
        return list(self._stdout_lines)[-METRICS_TAIL:]

    def add_exit_callback(self, callback: Callable[["ProcessWrapper"], None]) -> None:
        """Register a callback run once when the process exits."""
        if self._exited.is_set():
            callback(self)
        else:
            self._exit_callbacks.append(callback)

    # ---- lifecycle ----

    async def start(self) -> None:
        """Launch the process and begin monitoring it."""
        logger.info(f"Spawning FFmpeg for {self.channel_id} -> {self.output_path}")
        logger.debug(f"FFmpeg command: {' '.join(self.command)}")

        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE if self.stdin_pipe else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self.started_at = time.monotonic()
        self.started_wall = time.time()
        self.set_state(ProcessState.RUNNING)

        if self.process.stdout is not None:
            self._reader_tasks.append(
                asyncio.create_task(self._read_stream(self.process.stdout, self._stdout_lines))
            )
        if self.process.stderr is not None:
            self._reader_tasks.append(
                asyncio.create_task(
                    self._read_stream(self.process.stderr, self._stderr_lines, parse=True)
                )
            )
        self._exit_task = asyncio.create_task(self._watch_exit())
        self.health_monitor.start()

    async def _read_stream(
        self,
        stream: asyncio.StreamReader,
        buffer: deque,
        parse: bool = False,
    ) -> None:
        # FFmpeg terminates progress lines with \r, so read chunks rather than lines
        while True:
            try:
                chunk = await stream.read(4096)
            except (asyncio.CancelledError, ConnectionError):
                break
            if not chunk:
                break

            self.last_output_at = time.monotonic()
            for line in _LINE_SPLIT_RE.split(chunk.decode("utf-8", errors="replace")):
                line = line.strip()
                if not line:
                    continue
                buffer.append(line)
                if parse:
                    progress = parse_progress(line)
                    if progress:
                        self.last_progress = progress
                    else:
                        logger.debug(f"FFmpeg [{self.channel_id}]: {line}")

    async def _watch_exit(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()
        self.exit_code = returncode

        # Let readers drain what is left in the pipes
        if self._reader_tasks:
            await asyncio.gather(*self._reader_tasks, return_exceptions=True)

        uptime = time.monotonic() - self.started_at if self.started_at else 0.0
        if self._kill_requested or returncode < 0:
            self.set_state(ProcessState.KILLED)
        else:
            self.set_state(ProcessState.CRASHED)

        logger.info(
            f"FFmpeg for {self.channel_id} exited (code={returncode}, "
            f"state={self.state.value}, uptime={uptime:.1f}s)"
        )

        self.health_monitor.stop()
        self._exited.set()

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Exit callback failed for {self.channel_id}: {e}")

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code."""
        await self._exited.wait()
        return self.exit_code

    async def wait_for_manifest(self, timeout: float = 30.0, poll_interval: float = 0.5) -> None:
        """
        Wait for the output manifest to exist with non-zero size.

        Raises:
            ManifestNotReady: If the process exits or the timeout elapses first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        path = Path(self.output_path)
        started = loop.time()

        while True:
            if self.state.is_terminal or self._exited.is_set():
                raise ManifestNotReady(
                    f"FFmpeg exited before manifest was ready (code={self.exit_code})",
                    channel_id=self.channel_id,
                )

            try:
                if path.stat().st_size > 0:
                    logger.debug(
                        f"Manifest ready for {self.channel_id} "
                        f"after {loop.time() - started:.1f}s"
                    )
                    return
            except FileNotFoundError:
                pass

            if loop.time() >= deadline:
                raise ManifestNotReady(
                    f"Manifest not ready after {timeout:.0f}s for channel {self.channel_id}",
                    channel_id=self.channel_id,
                )

            await asyncio.sleep(poll_interval)

    async def kill(self, sig: int = signal.SIGTERM, timeout: float = 5.0) -> None:
        """Terminate gracefully, escalating to SIGKILL after the timeout."""
        if self.process is None or self._exited.is_set():
            self.health_monitor.stop()
            return

        self._kill_requested = True
        logger.info(f"Stopping FFmpeg for {self.channel_id} (pid {self.process.pid})")

        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Force killing FFmpeg for {self.channel_id} (pid {self.process.pid})")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self._exited.wait()

        self.health_monitor.stop()

    def get_stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin if self.process else None

    def memory_mb(self) -> Optional[float]:
        """Resident memory of the process in MB, if psutil is installed."""
        if not self.is_running:
            return None
        try:
            import psutil
        except ImportError:
            return None
        try:
            return psutil.Process(self.pid).memory_info().rss / (1024 * 1024)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def get_metrics(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            "channel_id": self.channel_id,
            "state": self.state.value,
            "pid": self.pid,
            "started_at": self.started_wall,
            "uptime_seconds": round(now - self.started_at, 1) if self.started_at else None,
            "seconds_since_output": (
                round(now - self.last_output_at, 1) if self.last_output_at else None
            ),
            "exit_code": self.exit_code,
            "progress": self.last_progress,
            "memory_mb": self.memory_mb(),
            "recent_errors": self.recent_errors,
            "recent_output": self.recent_output,
        }

    def __repr__(self) -> str:
        return f"<ProcessWrapper {self.channel_id} pid={self.pid} state={self.state.value}>"
