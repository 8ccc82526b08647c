"""
Unit tests for configuration module.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from embedtv.config import (
    ChannelsConfig,
    EmbedTVConfig,
    FFmpegConfig,
    ServerConfig,
    _parse_env_value,
    load_config,
    load_operator_settings,
    save_operator_settings,
)


@pytest.mark.unit
class TestServerConfig:
    """Tests for ServerConfig."""

    def test_default_values(self):
        config = ServerConfig()

        assert config.host == "0.0.0.0"
        assert config.port == 3005
        assert config.base_url is None

    def test_custom_values(self):
        config = ServerConfig(host="127.0.0.1", port=9000, base_url="https://tv.example")

        assert config.host == "127.0.0.1"
        assert config.port == 9000
        assert config.base_url == "https://tv.example"


@pytest.mark.unit
class TestChannelsConfig:
    """Tests for ChannelsConfig."""

    def test_default_values(self):
        config = ChannelsConfig()

        assert config.categories == []
        assert config.rebuild_interval_minutes == 60
        assert config.lifetime_hours == 24
        assert config.timezone == "UTC"
        assert config.hydration_concurrency == 5
        assert config.default_mode == "restream"
        assert config.expand_embeds is False


@pytest.mark.unit
class TestFFmpegConfig:
    """Tests for FFmpegConfig."""

    def test_default_limits(self):
        config = FFmpegConfig()

        assert config.max_concurrent == 20
        assert config.memory_limit_mb == 512
        assert config.health_check_interval_ms == 10000
        assert config.stale_threshold_ms == 60000


@pytest.mark.unit
class TestEmbedTVConfig:
    """Tests for main configuration."""

    def test_default_config(self):
        config = EmbedTVConfig()

        assert config.server is not None
        assert config.logging is not None
        assert config.channels is not None
        assert config.ffmpeg is not None
        assert config.restream.max_attempts == 4
        assert config.capture.fps == 30
        assert config.proxy.max_cookies == 50
        assert config.solver.provider == "flaresolverr"

    def test_from_dict(self):
        config = EmbedTVConfig(
            server={"host": "localhost", "port": 9000},
            channels={"categories": ["football"], "default_mode": "transmux"},
        )

        assert config.server.host == "localhost"
        assert config.server.port == 9000
        assert config.channels.categories == ["football"]
        assert config.channels.default_mode == "transmux"


@pytest.mark.unit
class TestLoadConfig:
    """Tests for config loading."""

    def test_load_from_file(self, temp_config_file: Path):
        config = load_config(str(temp_config_file))

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 3999
        assert config.logging.level == "DEBUG"
        assert config.logging.to_file is False
        assert config.channels.front_page_url == "https://events.test"
        assert config.channels.categories == ["football"]
        assert config.ffmpeg.max_concurrent == 3

    def test_load_missing_file_uses_defaults(self, temp_dir: Path):
        config = load_config(str(temp_dir / "missing.yaml"))

        assert config.server.port == 3005

    def test_env_overrides(self, temp_config_file: Path, mock_env_vars):
        config = load_config(str(temp_config_file))

        assert config.server.port == 4010
        assert config.channels.default_mode == "direct-proxy"
        assert config.solver.endpoint == "http://solver.test:8191/v1"

    def test_prefixed_env_wins_over_legacy(self, temp_config_file: Path):
        with patch.dict(os.environ, {"PORT": "5000", "EMBEDTV_PORT": "5001"}):
            config = load_config(str(temp_config_file))

        assert config.server.port == 5001

    def test_legacy_env_names(self, temp_config_file: Path):
        env = {
            "FFMPEG_MAX_CONCURRENT": "7",
            "RESTREAM_DETECT_CONFIG_FALLBACK": "true",
            "CAPTURE_FPS": "25",
        }
        with patch.dict(os.environ, env):
            config = load_config(str(temp_config_file))

        assert config.ffmpeg.max_concurrent == 7
        assert config.restream.detect_config_fallback is True
        assert config.capture.fps == 25

    def test_numeric_solver_api_key_stays_a_string(self, temp_config_file: Path):
        with patch.dict(os.environ, {"SOLVER_API_KEY": "123456", "SOLVER_PROVIDER": "byparr"}):
            config = load_config(str(temp_config_file))

        assert config.solver.api_key == "123456"
        assert config.solver.provider == "byparr"

    def test_parse_env_value(self):
        assert _parse_env_value("42") == 42
        assert _parse_env_value("2.5") == 2.5
        assert _parse_env_value("true") is True
        assert _parse_env_value("off") is False
        assert _parse_env_value("ffmpeg") == "ffmpeg"


@pytest.mark.unit
class TestOperatorSettings:
    """Tests for persisted operator settings."""

    def test_save_then_load(self, test_config: EmbedTVConfig):
        test_config.channels.categories = ["football", "tennis"]
        test_config.channels.rebuild_interval_minutes = 15
        test_config.channels.timezone = "Europe/London"

        assert save_operator_settings(test_config) is True

        fresh = EmbedTVConfig()
        fresh.channels.config_path = test_config.channels.config_path
        load_operator_settings(fresh)

        assert fresh.channels.categories == ["football", "tennis"]
        assert fresh.channels.rebuild_interval_minutes == 15
        assert fresh.channels.lifetime_hours == 24
        assert fresh.channels.timezone == "Europe/London"

    def test_load_applied_by_load_config(self, temp_config_file: Path, temp_dir: Path):
        (temp_dir / "channels.yaml").write_text("lifetime_hours: 6\n")

        config = load_config(str(temp_config_file))

        assert config.channels.lifetime_hours == 6
        assert config.channels.categories == ["football"]

    def test_corrupt_file_keeps_defaults(self, test_config: EmbedTVConfig):
        Path(test_config.channels.config_path).write_text("categories: [unclosed\n")

        load_operator_settings(test_config)

        assert test_config.channels.categories == []

    def test_missing_file_is_ignored(self, test_config: EmbedTVConfig):
        load_operator_settings(test_config)

        assert test_config.channels.rebuild_interval_minutes == 60
