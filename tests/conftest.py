"""
EmbedTV Test Configuration

Shared fixtures and configuration for all tests.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional
from unittest.mock import patch

import pytest

from embedtv.channels.models import Event, SourceOption
from embedtv.config import EmbedTVConfig


# ============ Temporary File Fixtures ============


@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="function")
def temp_config_file(temp_dir: Path) -> Path:
    """Create a temporary config file."""
    config_file = temp_dir / "config.yaml"
    config_content = f"""
server:
  host: "127.0.0.1"
  port: 3999

logging:
  level: "DEBUG"
  to_file: false

channels:
  front_page_url: "https://events.test"
  categories: ["football"]
  hydration_concurrency: 2
  config_path: "{temp_dir / 'channels.yaml'}"

ffmpeg:
  max_concurrent: 3
"""
    config_file.write_text(config_content)
    return config_file


@pytest.fixture
def test_config(temp_dir: Path) -> EmbedTVConfig:
    """Configuration that never touches the real filesystem layout."""
    cfg = EmbedTVConfig()
    cfg.logging.to_file = False
    cfg.channels.config_path = str(temp_dir / "channels.yaml")
    return cfg


# ============ Sample Data Fixtures ============


@pytest.fixture
def sample_start_time() -> datetime:
    return datetime(2026, 3, 14, 19, 30, tzinfo=timezone.utc)


@pytest.fixture
def sample_event(sample_start_time: datetime) -> Event:
    """A front-page event with alternate embeds."""
    return Event(
        title="Arsenal vs Chelsea",
        category="football",
        embed_url="https://embeds.test/e/arsenal-chelsea",
        source_options=(
            SourceOption("Source 1", "https://embeds.test/e/arsenal-chelsea"),
            SourceOption("Source 2", "https://mirror.test/e/arsenal-chelsea"),
        ),
        quality_options=(
            SourceOption("HD", "https://embeds.test/e/arsenal-chelsea?q=hd"),
        ),
        start_time=sample_start_time,
    )


@pytest.fixture
def sample_events(sample_event: Event) -> list[Event]:
    return [
        sample_event,
        Event(
            title="Lakers vs Celtics",
            category="basketball",
            embed_url="https://embeds.test/e/lakers-celtics",
        ),
    ]


@pytest.fixture
def front_page_html() -> str:
    return """
<html><body>
  <div class="event" data-category="Football">
    <h2>Arsenal vs Chelsea</h2>
    <time datetime="2026-03-14T19:30:00Z">19:30</time>
    <iframe id="streamPlayer" src="/embed/arsenal-chelsea"></iframe>
    <select id="sourceSelect">
      <option value="/embed/arsenal-chelsea">Source 1</option>
      <option value="https://mirror.test/embed/arsenal-chelsea">Source 2</option>
      <option value="">Pick one</option>
    </select>
    <select id="qualitySelect">
      <option value="/embed/arsenal-chelsea?q=hd">HD</option>
    </select>
  </div>
  <div class="event" data-category="Basketball">
    <h3>Lakers vs Celtics</h3>
    <iframe id="streamPlayer" src="https://embeds.test/embed/lakers-celtics"></iframe>
  </div>
  <div class="event" data-category="Basketball">
    <h3>Lakers vs Celtics (duplicate)</h3>
    <iframe id="streamPlayer" src="https://embeds.test/embed/lakers-celtics"></iframe>
  </div>
  <div class="event"><h3>No stream here</h3></div>
</body></html>
"""


# ============ Browser Fakes ============


class FakeRequest:
    """Stand-in for a Playwright request event."""

    def __init__(self, url: str, resource_type: str = "xhr"):
        self.url = url
        self.resource_type = resource_type


class FakePage:
    """
    Minimal Playwright page double.

    Request listeners are stored so tests can fire request events; each
    evaluate() call is answered by `evaluate_handler`.
    """

    def __init__(self, evaluate_handler: Optional[Callable[[str], Any]] = None):
        self.listeners: dict[str, list[Callable]] = {}
        self.evaluate_handler = evaluate_handler or (lambda script: None)
        self.reloads = 0
        self.url = "https://embeds.test/e/page"

    def on(self, event: str, handler: Callable) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable) -> None:
        self.listeners.get(event, []).remove(handler)

    def fire_request(self, url: str, resource_type: str = "xhr") -> None:
        for handler in list(self.listeners.get("request", [])):
            handler(FakeRequest(url, resource_type))

    async def evaluate(self, script: str) -> Any:
        return self.evaluate_handler(script)

    async def reload(self, **kwargs: Any) -> None:
        self.reloads += 1

    async def wait_for_timeout(self, ms: int) -> None:
        await asyncio.sleep(0)


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


# ============ Environment Fixtures ============


@pytest.fixture(autouse=True)
def clean_environment():
    """Clean environment variables for each test."""
    # Save current environment
    original_env = os.environ.copy()

    # Remove EmbedTV-specific and legacy bare vars
    legacy = (
        "PORT",
        "FRONT_PAGE_URL",
        "HYDRATION_CONCURRENCY",
        "FFMPEG_",
        "RESTREAM_",
        "CAPTURE_",
        "SOLVER_",
    )
    for key in list(os.environ.keys()):
        if key.startswith("EMBEDTV_") or key.startswith(legacy):
            del os.environ[key]

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def mock_env_vars():
    """Set up mock environment variables."""
    env_vars = {
        "EMBEDTV_PORT": "4010",
        "EMBEDTV_STREAM_MODE": "direct-proxy",
        "SOLVER_URL": "http://solver.test:8191/v1",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


# ============ Markers ============


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "ffmpeg: FFmpeg required")
    config.addinivalue_line("markers", "network: Network access required")
