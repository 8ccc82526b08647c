"""
Browser capture pipeline.

Renders an embed page in headless Chromium, screencasts its frames over
CDP and taps its audio with MediaRecorder, then feeds both into an FFmpeg
process that writes HLS:

    Chromium (screencast JPEG) -> frame queue -> FFmpeg stdin
    Chromium (MediaRecorder)   -> audio queue -> named pipe -> FFmpeg

The frame queue is bounded. When FFmpeg falls behind, the writer blocks
on drain(), the queue fills, frame acknowledgements stop, and Chromium
stops producing frames until the queue has room again.
"""

import asyncio
import base64
import logging
import os
import shutil
import tempfile
import time
from typing import TYPE_CHECKING, Any, Optional

from playwright.async_api import Error as PlaywrightError, async_playwright

from embedtv.config import DEFAULT_USER_AGENT
from embedtv.ffmpeg.orchestrator import SpawnOptions
from embedtv.streaming.browser import (
    CAPTURE_LAUNCH_ARGS,
    harden_page,
    new_stealth_context,
)
from embedtv.streaming.errors import DependencyUnavailable

if TYPE_CHECKING:
    from embedtv.config import CaptureConfig
    from embedtv.ffmpeg.orchestrator import ProcessOrchestrator
    from embedtv.ffmpeg.process import ProcessWrapper

logger = logging.getLogger(__name__)

TRIGGER_PLAYBACK_SCRIPT = """
() => {
  function tryPlay() {
    document.querySelectorAll('video, audio').forEach((media) => {
      media.muted = true;
      const p = media.play();
      if (p && p.catch) p.catch(() => {});
    });
    if (typeof window.jwplayer === 'function') {
      try {
        let player = window.jwplayer();
        if (!player || !player.play) {
          const elem = document.querySelector('.jwplayer, [id^="jwplayer"], [id^="vplayer"]');
          if (elem) player = window.jwplayer(elem);
        }
        if (player && player.setMute && player.play) {
          player.setMute(true);
          player.play();
        }
      } catch (e) {}
    }
    if (typeof window.videojs !== 'undefined') {
      try {
        Object.values(window.videojs.players || {}).forEach((p) => {
          if (p && p.muted && p.play) { p.muted(true); p.play(); }
        });
      } catch (e) {}
    }
  }
  tryPlay();
  if (document.body) document.body.addEventListener('click', tryPlay, { once: true });
}
"""

VIDEO_PLAYING_SCRIPT = """
() => {
  const video = document.querySelector('video');
  return !!video && !video.paused && video.readyState >= 3;
}
"""

VIDEO_RECT_SCRIPT = """
() => {
  const video = document.querySelector('video');
  if (!video) return null;
  const rect = video.getBoundingClientRect();
  return { width: Math.ceil(rect.width), height: Math.ceil(rect.height) };
}
"""

# Media elements are unmuted inside the graph; the page itself stays silent
START_AUDIO_SCRIPT = """
() => {
  try {
    const media = document.querySelectorAll('video, audio');
    const Ctx = window.AudioContext || window.webkitAudioContext;
    if (!media.length || !Ctx || typeof MediaRecorder === 'undefined') return false;
    const context = new Ctx();
    const destination = context.createMediaStreamDestination();
    media.forEach((el) => {
      try {
        if (!el.__audioSource) el.__audioSource = context.createMediaElementSource(el);
        el.__audioSource.connect(destination);
        el.muted = false;
      } catch (e) {}
    });
    const recorder = new MediaRecorder(destination.stream, { mimeType: 'audio/webm;codecs=opus' });
    window.__audioCapture = { context, recorder, chunks: [] };
    recorder.ondataavailable = (e) => {
      if (e.data && e.data.size > 0) window.__audioCapture.chunks.push(e.data);
    };
    recorder.start(100);
    return true;
  } catch (e) {
    return false;
  }
}
"""

HARVEST_AUDIO_SCRIPT = """
async () => {
  const capture = window.__audioCapture;
  if (!capture || !capture.chunks.length) return [];
  const chunks = capture.chunks;
  capture.chunks = [];
  const out = [];
  for (const chunk of chunks) {
    const bytes = new Uint8Array(await chunk.arrayBuffer());
    let binary = '';
    for (let i = 0; i < bytes.length; i += 0x8000) {
      binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
    }
    out.push(btoa(binary));
  }
  return out;
}
"""

STOP_AUDIO_SCRIPT = """
() => {
  const capture = window.__audioCapture;
  if (!capture) return;
  try { capture.recorder.stop(); } catch (e) {}
  try { capture.context.close(); } catch (e) {}
}
"""

MIN_VIEWPORT = (640, 360)
MAX_VIEWPORT = (1920, 1080)


class BrowserStreamCapture:
    """
    Captures video frames and audio chunks from one browser tab.

    Frames land in `frames` and audio in `audio_chunks`; a None item in
    either queue marks the end of capture.
    """

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        quality: int = 80,
        fps: int = 30,
        audio: bool = True,
        queue_size: int = 30,
        navigation_timeout_ms: int = 60000,
        video_wait_timeout_ms: int = 30000,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.width = width
        self.height = height
        self.quality = quality
        self.fps = fps
        self.audio_enabled = audio
        self.navigation_timeout_ms = navigation_timeout_ms
        self.video_wait_timeout_ms = video_wait_timeout_ms
        self.user_agent = user_agent
        self.min_frame_interval = 1.0 / max(fps, 1)

        self.frames: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.audio_chunks: asyncio.Queue = asyncio.Queue(maxsize=queue_size * 4)

        self.is_capturing = False
        self.audio_active = False
        self.frame_count = 0
        self.dropped_frames = 0
        self.audio_bytes = 0
        self.started_at: Optional[float] = None

        self._playwright = None
        self._browser = None
        self._page = None
        self._cdp = None
        self._last_frame_at = 0.0
        self._frame_tasks: set[asyncio.Task] = set()
        self._audio_task: Optional[asyncio.Task] = None

    async def start(self, embed_url: str) -> None:
        """
        Open the embed, start playback and begin capturing.

        Raises:
            DependencyUnavailable: If Chromium cannot be launched
        """
        logger.info(f"Starting browser capture of {embed_url} ({self.width}x{self.height})")

        try:
            self._playwright = await async_playwright().start()
            try:
                self._browser = await self._playwright.chromium.launch(
                    headless=True, args=CAPTURE_LAUNCH_ARGS
                )
            except PlaywrightError as e:
                raise DependencyUnavailable(
                    f"Chromium could not be launched: {e}", original_error=e
                ) from e

            context = await new_stealth_context(
                self._browser,
                user_agent=self.user_agent,
                viewport={"width": self.width, "height": self.height},
            )
            self._page = await context.new_page()
            harden_page(self._page)

            await self._page.goto(
                embed_url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms
            )
            await self._wait_for_video()
            await self._trigger_playback()
            await self._resize_to_video()

            self._cdp = await context.new_cdp_session(self._page)
            self.is_capturing = True
            self.started_at = time.monotonic()
            await self._start_video_capture()
            if self.audio_enabled:
                await self._start_audio_capture()
        except BaseException:
            await self.stop()
            raise

        logger.info(
            f"Browser capture running ({self.width}x{self.height}@{self.fps}, "
            f"audio={'on' if self.audio_active else 'off'})"
        )

    async def _wait_for_video(self) -> None:
        try:
            await self._page.wait_for_selector("video", timeout=self.video_wait_timeout_ms)
        except PlaywrightError:
            logger.warning("No video element found, continuing anyway")

    async def _trigger_playback(self) -> None:
        await self._page.wait_for_timeout(2000)
        try:
            await self._page.evaluate(TRIGGER_PLAYBACK_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Playback trigger failed: {e}")

        try:
            await self._page.wait_for_function(VIDEO_PLAYING_SCRIPT, timeout=15000)
        except PlaywrightError:
            logger.warning("Could not confirm video playback, continuing anyway")

        await self._page.wait_for_timeout(3000)

    async def _resize_to_video(self) -> None:
        try:
            rect = await self._page.evaluate(VIDEO_RECT_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Could not measure video element: {e}")
            return

        if not rect or rect["width"] <= 100 or rect["height"] <= 100:
            return

        width = min(max(rect["width"], MIN_VIEWPORT[0]), MAX_VIEWPORT[0])
        height = min(max(rect["height"], MIN_VIEWPORT[1]), MAX_VIEWPORT[1])
        await self._page.set_viewport_size({"width": width, "height": height})
        self.width, self.height = width, height
        logger.debug(f"Viewport resized to video: {width}x{height}")

    async def _start_video_capture(self) -> None:
        self._cdp.on("Page.screencastFrame", self._on_frame)
        await self._cdp.send(
            "Page.startScreencast",
            {
                "format": "jpeg",
                "quality": self.quality,
                "maxWidth": self.width,
                "maxHeight": self.height,
                "everyNthFrame": 1,
            },
        )

    def _on_frame(self, params: dict[str, Any]) -> None:
        task = asyncio.create_task(self._handle_frame(params))
        self._frame_tasks.add(task)
        task.add_done_callback(self._frame_tasks.discard)

    async def _handle_frame(self, params: dict[str, Any]) -> None:
        if not self.is_capturing:
            return

        now = time.monotonic()
        if now - self._last_frame_at < self.min_frame_interval * 0.8:
            self.dropped_frames += 1
            await self._ack(params.get("sessionId"))
            return

        self._last_frame_at = now
        data = base64.b64decode(params["data"])
        # Blocks while the queue is full; no ack means no further frames
        await self.frames.put(data)
        self.frame_count += 1
        await self._ack(params.get("sessionId"))

    async def _ack(self, session_id: Optional[int]) -> None:
        if session_id is None or self._cdp is None or not self.is_capturing:
            return
        try:
            await self._cdp.send("Page.screencastFrameAck", {"sessionId": session_id})
        except PlaywrightError as e:
            logger.debug(f"Frame ack failed: {e}")

    async def _start_audio_capture(self) -> None:
        try:
            self.audio_active = bool(await self._page.evaluate(START_AUDIO_SCRIPT))
        except PlaywrightError as e:
            logger.debug(f"Audio capture script failed: {e}")
            self.audio_active = False

        if not self.audio_active:
            logger.warning("Audio capture unavailable, output will carry a silent track")
            return

        self._audio_task = asyncio.create_task(self._audio_loop())

    async def _audio_loop(self) -> None:
        while self.is_capturing:
            try:
                await asyncio.sleep(0.1)
                encoded = await self._page.evaluate(HARVEST_AUDIO_SCRIPT)
                for item in encoded or []:
                    chunk = base64.b64decode(item)
                    self.audio_bytes += len(chunk)
                    await self.audio_chunks.put(chunk)
            except asyncio.CancelledError:
                break
            except PlaywrightError as e:
                if self.is_capturing:
                    logger.debug(f"Audio harvest failed: {e}")

    @staticmethod
    def _end_queue(queue: asyncio.Queue) -> None:
        # Make room for the end marker if the consumer has stalled
        while True:
            try:
                queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def stop(self) -> None:
        """Stop capturing and close the browser."""
        was_capturing = self.is_capturing
        self.is_capturing = False

        if self._audio_task is not None:
            self._audio_task.cancel()
            try:
                await self._audio_task
            except asyncio.CancelledError:
                pass
            self._audio_task = None

        for task in list(self._frame_tasks):
            task.cancel()

        self._end_queue(self.frames)
        self._end_queue(self.audio_chunks)

        if self._cdp is not None:
            try:
                await self._cdp.send("Page.stopScreencast")
                await self._cdp.detach()
            except PlaywrightError as e:
                logger.debug(f"Screencast stop failed: {e}")
            self._cdp = None

        if self._page is not None and self.audio_active:
            try:
                await self._page.evaluate(STOP_AUDIO_SCRIPT)
            except PlaywrightError:
                pass
        self._page = None

        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close failed: {e}")
            self._browser = None

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

        if was_capturing:
            logger.info(
                f"Browser capture stopped ({self.frame_count} frames, "
                f"{self.dropped_frames} dropped)"
            )

    def get_metrics(self) -> dict[str, Any]:
        uptime = time.monotonic() - self.started_at if self.started_at else 0.0
        return {
            "is_capturing": self.is_capturing,
            "frame_count": self.frame_count,
            "dropped_frames": self.dropped_frames,
            "queued_frames": self.frames.qsize(),
            "audio_active": self.audio_active,
            "audio_bytes": self.audio_bytes,
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "actual_fps": round(self.frame_count / uptime, 1) if uptime > 0 else 0.0,
        }


class CaptureSession:
    """One running capture: browser, FFmpeg and the tasks between them."""

    def __init__(self, channel_id: str, embed_url: str, work_dir: str, manifest_path: str):
        self.channel_id = channel_id
        self.embed_url = embed_url
        self.work_dir = work_dir
        self.manifest_path = manifest_path
        self.capture: Optional[BrowserStreamCapture] = None
        self.process: Optional["ProcessWrapper"] = None
        self.audio_pipe: Optional[str] = None
        self.is_running = False
        self.frame_count = 0
        self.bytes_written = 0
        self.errors: list[dict[str, Any]] = []
        self.created_at = time.time()
        self._video_writer: Optional[asyncio.Task] = None
        self._audio_writer: Optional[asyncio.Task] = None

    def record_error(self, kind: str, error: BaseException) -> None:
        self.errors.append({"type": kind, "error": str(error), "timestamp": time.time()})

    @property
    def alive(self) -> bool:
        return (
            self.is_running
            and self.process is not None
            and not self.process.state.is_terminal
        )

    def get_metrics(self) -> dict[str, Any]:
        return {
            "is_running": self.alive,
            "frame_count": self.frame_count,
            "bytes_written": self.bytes_written,
            "uptime_seconds": round(time.time() - self.created_at, 1),
            "errors": self.errors[-5:],
            "capture": self.capture.get_metrics() if self.capture else None,
            "ffmpeg": self.process.get_metrics() if self.process else None,
        }


class CapturePipeline:
    """Starts and stops capture sessions, one per channel."""

    def __init__(
        self,
        orchestrator: "ProcessOrchestrator",
        capture_config: "CaptureConfig",
        temp_root: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.orchestrator = orchestrator
        self.config = capture_config
        self.temp_root = temp_root or tempfile.gettempdir()
        self.user_agent = user_agent
        self.sessions: dict[str, CaptureSession] = {}

    def is_running(self, channel_id: str) -> bool:
        session = self.sessions.get(channel_id)
        return session is not None and session.alive

    def get_session(self, channel_id: str) -> Optional[CaptureSession]:
        return self.sessions.get(channel_id)

    async def start(self, channel_id: str, embed_url: str) -> CaptureSession:
        """
        Start capturing an embed into HLS.

        The browser starts first so the audio decision is known before
        FFmpeg's inputs are fixed. Frames produced meanwhile wait in the
        bounded queue.
        """
        existing = self.sessions.get(channel_id)
        if existing is not None:
            if existing.alive:
                return existing
            await self.stop(channel_id)

        work_dir = tempfile.mkdtemp(prefix="stream-", dir=self.temp_root)
        manifest_path = os.path.join(work_dir, f"{channel_id}.m3u8")
        session = CaptureSession(channel_id, embed_url, work_dir, manifest_path)

        cfg = self.config
        session.capture = BrowserStreamCapture(
            width=cfg.width,
            height=cfg.height,
            quality=cfg.quality,
            fps=cfg.fps,
            audio=cfg.audio,
            queue_size=cfg.queue_size,
            navigation_timeout_ms=cfg.navigation_timeout_ms,
            video_wait_timeout_ms=cfg.video_wait_timeout_ms,
            user_agent=self.user_agent,
        )

        try:
            await session.capture.start(embed_url)

            if session.capture.audio_active:
                session.audio_pipe = os.path.join(work_dir, "audio.webm")
                os.mkfifo(session.audio_pipe)

            session.process = await self.orchestrator.spawn_for_pipe(
                channel_id,
                manifest_path,
                SpawnOptions(fps=session.capture.fps, audio_input=session.audio_pipe),
            )
            stdin = session.process.get_stdin()
            if stdin is None:
                raise DependencyUnavailable("FFmpeg stdin not available", channel_id=channel_id)

            session.is_running = True
            session._video_writer = asyncio.create_task(self._write_frames(session, stdin))
            if session.audio_pipe:
                session._audio_writer = asyncio.create_task(self._write_audio(session))
        except BaseException as e:
            logger.error(f"Failed to start capture for {channel_id}: {e}")
            await self._teardown(session)
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        self.sessions[channel_id] = session
        logger.info(f"Capture pipeline started for {channel_id} -> {manifest_path}")
        return session

    async def _write_frames(self, session: CaptureSession, stdin: asyncio.StreamWriter) -> None:
        queue = session.capture.frames
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                stdin.write(frame)
                await stdin.drain()
                session.frame_count += 1
                session.bytes_written += len(frame)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"FFmpeg stdin closed for {session.channel_id}: {e}")
            session.record_error("ffmpeg", e)
        finally:
            await self._close_stdin(stdin)

    @staticmethod
    async def _close_stdin(stdin: asyncio.StreamWriter) -> None:
        if stdin.is_closing():
            return
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    async def _write_audio(self, session: CaptureSession) -> None:
        queue = session.capture.audio_chunks
        pipe = None
        try:
            # Blocks until FFmpeg opens its second input
            pipe = await asyncio.to_thread(open, session.audio_pipe, "wb", buffering=0)
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                await asyncio.to_thread(pipe.write, chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Audio pipe closed for {session.channel_id}: {e}")
        except OSError as e:
            logger.warning(f"Audio pipe error for {session.channel_id}: {e}")
            session.record_error("audio", e)
        finally:
            if pipe is not None:
                try:
                    pipe.close()
                except OSError:
                    pass

    @staticmethod
    def _unblock_fifo(path: Optional[str]) -> None:
        # A writer stuck in open() returns once a reader appears
        if not path or not os.path.exists(path):
            return
        try:
            fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
            os.close(fd)
        except OSError:
            pass

    async def _teardown(self, session: CaptureSession) -> None:
        session.is_running = False

        # Ending the frame queue lets the writer close FFmpeg's stdin first
        if session.capture is not None:
            session.capture.is_capturing = False
            BrowserStreamCapture._end_queue(session.capture.frames)
            BrowserStreamCapture._end_queue(session.capture.audio_chunks)

        if session._video_writer is not None:
            try:
                await asyncio.wait_for(session._video_writer, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        elif session.process is not None:
            stdin = session.process.get_stdin()
            if stdin is not None:
                await self._close_stdin(stdin)

        if session._audio_writer is not None:
            self._unblock_fifo(session.audio_pipe)
            try:
                await asyncio.wait_for(session._audio_writer, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        if session.capture is not None:
            await session.capture.stop()

        if session.process is not None:
            if self.orchestrator.get_process(session.channel_id) is session.process:
                await self.orchestrator.kill(session.channel_id)
            else:
                await session.process.kill(timeout=self.orchestrator.kill_timeout)

    async def stop(self, channel_id: str) -> None:
        """Stop a channel's capture and remove its work directory."""
        session = self.sessions.pop(channel_id, None)
        if session is None:
            return

        logger.info(
            f"Stopping capture for {channel_id} "
            f"({session.frame_count} frames, {session.bytes_written} bytes)"
        )
        await self._teardown(session)
        shutil.rmtree(session.work_dir, ignore_errors=True)

    async def stop_all(self) -> None:
        channel_ids = list(self.sessions.keys())
        await asyncio.gather(*(self.stop(cid) for cid in channel_ids), return_exceptions=True)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self.sessions),
            "sessions": {cid: s.get_metrics() for cid, s in self.sessions.items()},
        }
