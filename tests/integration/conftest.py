"""
Fixtures for API integration tests.

The app runs with its real registry, stream service and scheduler; only
the edges are faked: the event source, the stream resolver and the
upstream CDN (an httpx MockTransport).
"""

import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from embedtv.channels.models import Channel
from embedtv.channels.registry import ChannelRegistry
from embedtv.config import EmbedTVConfig
from embedtv.ffmpeg.orchestrator import ProcessOrchestrator
from embedtv.main import create_app
from embedtv.streaming.jobs import MIME_TYPES, Job, Resolution, StreamMode, StreamService
from embedtv.tasks.scheduler import RebuildScheduler

UPSTREAM_MANIFEST = "https://cdn.test/live/index.m3u8"
UPSTREAM_SEGMENT = "https://cdn.test/live/seg0.ts"


def upstream_handler(request: httpx.Request) -> httpx.Response:
    if str(request.url) == UPSTREAM_MANIFEST:
        return httpx.Response(
            200,
            headers=[
                ("content-type", MIME_TYPES["hls"]),
                ("set-cookie", "edge=1; Path=/"),
            ],
            text="#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4.0,\nseg0.ts\n",
        )
    if str(request.url) == UPSTREAM_SEGMENT:
        return httpx.Response(200, headers={"content-type": "video/mp2t"}, content=b"\x47segment")
    return httpx.Response(404)


class FakeResolver:
    """
    Stands in for browser detection and job startup.

    direct-proxy channels resolve to the mock CDN; job-backed channels get
    a work directory with a manifest and one segment, registered with the
    matching job manager like a real job would be.
    """

    def __init__(self, service: StreamService, root: Path):
        self.service = service
        self.root = root
        self.calls: list[str] = []
        self.fail = False

    async def __call__(self, channel: Channel, headers: dict[str, str]) -> Resolution:
        self.calls.append(channel.id)
        if self.fail:
            raise RuntimeError("player never loaded")

        if channel.stream_mode == StreamMode.DIRECT_PROXY.value:
            return Resolution(
                stream_url=UPSTREAM_MANIFEST,
                source_url=UPSTREAM_MANIFEST,
                mime_type=MIME_TYPES["hls"],
                cookies={"sid": "abc"},
            )

        work_dir = self.root / "jobs" / channel.id
        work_dir.mkdir(parents=True, exist_ok=True)
        manifest = work_dir / f"{channel.id}.m3u8"
        manifest.write_text("#EXTM3U\n#EXTINF:4.0,\nseg_000.ts\n")
        (work_dir / "seg_000.ts").write_bytes(b"\x47local")

        job = Job(
            channel.id,
            channel.stream_mode,
            channel.embed_url,
            str(work_dir),
            str(manifest),
            handle=SimpleNamespace(returncode=0),
        )
        self.service.manager_for(channel.stream_mode).jobs[channel.id] = job
        return Resolution(stream_url=str(manifest), mime_type=MIME_TYPES["hls"], job=job)


@pytest.fixture
def restore_root_logger():
    """The app's startup replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def components(test_config: EmbedTVConfig, temp_dir: Path, sample_events) -> SimpleNamespace:
    orchestrator = ProcessOrchestrator()
    service = StreamService(
        orchestrator,
        test_config.transmux,
        test_config.restream,
        test_config.capture,
        temp_root=str(temp_dir),
    )
    resolver = FakeResolver(service, temp_dir)
    registry = ChannelRegistry(
        stream_service=service,
        resolver=resolver,
        default_mode=StreamMode.DIRECT_PROXY.value,
        transport=httpx.MockTransport(upstream_handler),
    )
    event_source = AsyncMock(return_value=sample_events)
    scheduler = RebuildScheduler(registry, event_source)

    return SimpleNamespace(
        config=test_config,
        orchestrator=orchestrator,
        service=service,
        resolver=resolver,
        registry=registry,
        event_source=event_source,
        scheduler=scheduler,
    )


@pytest.fixture
def client(components: SimpleNamespace, restore_root_logger) -> Any:
    app = create_app(
        components.config,
        components.orchestrator,
        components.service,
        components.registry,
        components.scheduler,
        start_background=False,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def rebuilt(client: TestClient, components: SimpleNamespace) -> dict[str, str]:
    """Run one rebuild; returns channel ids by title."""
    response = client.post("/api/rebuild")
    assert response.status_code == 200
    return {c.title: c.id for c in components.registry.list_channels()}
