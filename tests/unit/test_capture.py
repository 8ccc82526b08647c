"""
Unit tests for the browser capture frame queue and session bookkeeping.
"""

import asyncio
import base64
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import patch

import pytest

from embedtv.config import CaptureConfig
from embedtv.ffmpeg.state import ProcessState
from embedtv.streaming.capture import BrowserStreamCapture, CapturePipeline, CaptureSession


class FakeCDP:
    def __init__(self):
        self.sent: list[tuple[str, Optional[dict[str, Any]]]] = []

    async def send(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        self.sent.append((method, params))

    def acks(self) -> list[int]:
        return [p["sessionId"] for m, p in self.sent if m == "Page.screencastFrameAck"]


def frame(session_id: int, payload: bytes = b"\xff\xd8jpeg") -> dict[str, Any]:
    return {"data": base64.b64encode(payload).decode(), "sessionId": session_id}


@pytest.fixture
def capture() -> BrowserStreamCapture:
    capture = BrowserStreamCapture(queue_size=2, fps=30, audio=False)
    capture.min_frame_interval = 0.0
    capture.is_capturing = True
    capture._cdp = FakeCDP()
    return capture


@pytest.mark.unit
class TestFrameQueue:
    """Tests for screencast frame handling."""

    @pytest.mark.asyncio
    async def test_frames_are_queued_and_acked(self, capture):
        await capture._handle_frame(frame(1, b"one"))
        await capture._handle_frame(frame(2, b"two"))

        assert capture.frames.get_nowait() == b"one"
        assert capture.frames.get_nowait() == b"two"
        assert capture.frame_count == 2
        assert capture._cdp.acks() == [1, 2]

    @pytest.mark.asyncio
    async def test_full_queue_withholds_ack(self, capture):
        await capture._handle_frame(frame(1))
        await capture._handle_frame(frame(2))

        blocked = asyncio.create_task(capture._handle_frame(frame(3)))
        await asyncio.sleep(0.01)

        assert not blocked.done()
        assert capture._cdp.acks() == [1, 2]

        capture.frames.get_nowait()
        await asyncio.wait_for(blocked, timeout=1.0)

        assert capture._cdp.acks() == [1, 2, 3]
        assert capture.frames.qsize() == 2

    @pytest.mark.asyncio
    async def test_frames_over_rate_are_dropped_but_acked(self, capture):
        capture.min_frame_interval = 10.0
        capture._last_frame_at = time.monotonic()

        await capture._handle_frame(frame(7))

        assert capture.frames.empty()
        assert capture.dropped_frames == 1
        assert capture._cdp.acks() == [7]

    @pytest.mark.asyncio
    async def test_frames_ignored_after_stop(self, capture):
        capture.is_capturing = False

        await capture._handle_frame(frame(1))

        assert capture.frames.empty()
        assert capture._cdp.acks() == []

    @pytest.mark.asyncio
    async def test_end_marker_fits_in_full_queue(self, capture):
        capture.frames.put_nowait(b"a")
        capture.frames.put_nowait(b"b")

        BrowserStreamCapture._end_queue(capture.frames)

        assert capture.frames.get_nowait() == b"b"
        assert capture.frames.get_nowait() is None

    def test_metrics(self, capture):
        metrics = capture.get_metrics()

        assert metrics["is_capturing"] is True
        assert metrics["queued_frames"] == 0
        assert metrics["actual_fps"] == 0.0


@pytest.mark.unit
class TestCaptureSession:
    """Tests for CaptureSession liveness."""

    def test_alive_requires_running_process(self):
        session = CaptureSession("ch-1", "https://embeds.test/e/1", "/tmp/w", "/tmp/w/ch-1.m3u8")
        assert session.alive is False

        session.is_running = True
        session.process = SimpleNamespace(state=ProcessState.HEALTHY)
        assert session.alive is True

        session.process = SimpleNamespace(state=ProcessState.CRASHED)
        assert session.alive is False

    def test_record_error(self):
        session = CaptureSession("ch-1", "https://embeds.test/e/1", "/tmp/w", "/tmp/w/ch-1.m3u8")

        session.record_error("ffmpeg", BrokenPipeError("pipe closed"))

        assert session.errors[0]["type"] == "ffmpeg"
        assert session.errors[0]["error"] == "pipe closed"


@pytest.mark.unit
class TestCapturePipeline:
    """Tests for CapturePipeline bookkeeping."""

    @pytest.mark.asyncio
    async def test_stop_unknown_channel_is_noop(self, temp_dir):
        pipeline = CapturePipeline(SimpleNamespace(), CaptureConfig(), str(temp_dir))

        await pipeline.stop("missing")

        assert pipeline.is_running("missing") is False
        assert pipeline.get_metrics() == {"active_sessions": 0, "sessions": {}}


class RecordingStdin:
    """FFmpeg stdin double that records writes and lifecycle calls."""

    def __init__(self, events: list[str]):
        self.events = events
        self.data: list[bytes] = []
        self.closed = False
        self.drain_gate: Optional[asyncio.Event] = None

    def write(self, data: bytes) -> None:
        self.data.append(data)
        self.events.append("stdin.write")

    async def drain(self) -> None:
        self.events.append("stdin.drain")
        if self.drain_gate is not None:
            await self.drain_gate.wait()

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        self.events.append("stdin.close")

    async def wait_closed(self) -> None:
        self.events.append("stdin.wait_closed")


class FakeProcess:
    def __init__(self, stdin: RecordingStdin):
        self.stdin = stdin
        self.state = ProcessState.HEALTHY

    def get_stdin(self) -> RecordingStdin:
        return self.stdin

    def get_metrics(self) -> dict[str, Any]:
        return {"state": self.state.value}


class FakeOrchestrator:
    kill_timeout = 1.0

    def __init__(self, events: list[str], process: FakeProcess):
        self.events = events
        self.process = process
        self.processes: dict[str, FakeProcess] = {}
        self.spawned: list[tuple[str, str, Any]] = []

    async def spawn_for_pipe(self, channel_id: str, manifest_path: str, options: Any) -> FakeProcess:
        self.spawned.append((channel_id, manifest_path, options))
        self.processes[channel_id] = self.process
        return self.process

    def get_process(self, channel_id: str) -> Optional[FakeProcess]:
        return self.processes.get(channel_id)

    async def kill(self, channel_id: str) -> bool:
        self.events.append("orchestrator.kill")
        self.processes.pop(channel_id).state = ProcessState.KILLED
        return True


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def stdin(events: list[str]) -> RecordingStdin:
    return RecordingStdin(events)


@pytest.fixture
def orchestrator(events: list[str], stdin: RecordingStdin) -> FakeOrchestrator:
    return FakeOrchestrator(events, FakeProcess(stdin))


@pytest.fixture
def fake_capture_class(events: list[str]):
    class FakeBrowserCapture:
        """Browser capture double exposing the real frame queue contract."""

        _end_queue = staticmethod(BrowserStreamCapture._end_queue)
        fail_start = False

        def __init__(self, **kwargs: Any):
            self.fps = kwargs["fps"]
            self.frames: asyncio.Queue = asyncio.Queue(maxsize=kwargs["queue_size"])
            self.audio_chunks: asyncio.Queue = asyncio.Queue()
            self.audio_active = False
            self.is_capturing = False
            self.started_url: Optional[str] = None

        async def start(self, embed_url: str) -> None:
            if self.fail_start:
                raise RuntimeError("navigation failed")
            self.started_url = embed_url
            self.is_capturing = True

        async def stop(self) -> None:
            events.append("capture.stop")

        def get_metrics(self) -> dict[str, Any]:
            return {"queued_frames": self.frames.qsize()}

    return FakeBrowserCapture


@pytest.mark.unit
class TestCapturePipelineLifecycle:
    """Tests for CapturePipeline start, frame writing and teardown."""

    @pytest.mark.asyncio
    async def test_frames_reach_stdin_in_order(self, temp_dir, orchestrator, stdin, fake_capture_class):
        pipeline = CapturePipeline(orchestrator, CaptureConfig(audio=False, fps=25, queue_size=4), str(temp_dir))

        with patch("embedtv.streaming.capture.BrowserStreamCapture", fake_capture_class):
            session = await pipeline.start("ch-1", "https://embeds.test/e/1")
            for payload in (b"one", b"two", b"three"):
                session.capture.frames.put_nowait(payload)
            await wait_until(lambda: session.frame_count == 3)

            assert stdin.data == [b"one", b"two", b"three"]
            assert session.bytes_written == 11
            assert session.capture.started_url == "https://embeds.test/e/1"
            assert pipeline.is_running("ch-1") is True

            channel_id, manifest_path, options = orchestrator.spawned[0]
            assert channel_id == "ch-1"
            assert manifest_path == session.manifest_path
            assert options.fps == 25
            assert options.audio_input is None

            await pipeline.stop("ch-1")

    @pytest.mark.asyncio
    async def test_stdin_closed_before_browser_and_process(
        self, temp_dir, orchestrator, events, fake_capture_class
    ):
        pipeline = CapturePipeline(orchestrator, CaptureConfig(audio=False), str(temp_dir))

        with patch("embedtv.streaming.capture.BrowserStreamCapture", fake_capture_class):
            session = await pipeline.start("ch-1", "https://embeds.test/e/1")
            session.capture.frames.put_nowait(b"frame")
            await wait_until(lambda: session.frame_count == 1)

            await pipeline.stop("ch-1")

        assert events.index("stdin.close") < events.index("capture.stop")
        assert events.index("capture.stop") < events.index("orchestrator.kill")
        assert "stdin.wait_closed" in events
        assert pipeline.sessions == {}
        assert not Path(session.work_dir).exists()

    @pytest.mark.asyncio
    async def test_stalled_drain_leaves_queue_full(self, temp_dir, orchestrator, stdin, fake_capture_class):
        stdin.drain_gate = asyncio.Event()
        pipeline = CapturePipeline(orchestrator, CaptureConfig(audio=False, queue_size=2), str(temp_dir))

        with patch("embedtv.streaming.capture.BrowserStreamCapture", fake_capture_class):
            session = await pipeline.start("ch-1", "https://embeds.test/e/1")
            frames = session.capture.frames

            frames.put_nowait(b"1")
            await wait_until(lambda: stdin.data == [b"1"])
            frames.put_nowait(b"2")
            frames.put_nowait(b"3")
            await asyncio.sleep(0.01)

            assert frames.full()
            assert stdin.data == [b"1"]
            assert session.frame_count == 0

            stdin.drain_gate.set()
            await wait_until(lambda: session.frame_count == 3)
            assert stdin.data == [b"1", b"2", b"3"]

            await pipeline.stop("ch-1")

    @pytest.mark.asyncio
    async def test_failed_browser_start_cleans_up(self, temp_dir, orchestrator, events, fake_capture_class):
        fake_capture_class.fail_start = True
        pipeline = CapturePipeline(orchestrator, CaptureConfig(audio=False), str(temp_dir))

        with patch("embedtv.streaming.capture.BrowserStreamCapture", fake_capture_class):
            with pytest.raises(RuntimeError, match="navigation failed"):
                await pipeline.start("ch-1", "https://embeds.test/e/1")

        assert orchestrator.spawned == []
        assert events == ["capture.stop"]
        assert pipeline.sessions == {}
        assert list(temp_dir.iterdir()) == []
