"""
Configuration management for EmbedTV.

Handles loading, validation, and access to application configuration.
Operator-editable channel settings (categories, rebuild interval, lifetime,
timezone) can also be persisted separately so the control API survives
restarts.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Global configuration instance
_config: Optional["EmbedTVConfig"] = None

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

OPERATOR_SETTINGS = ("categories", "rebuild_interval_minutes", "lifetime_hours", "timezone")


class ServerConfig(BaseModel):
    """Server configuration."""
    host: str = "0.0.0.0"
    port: int = 3005
    base_url: Optional[str] = None  # Overrides the request host in playlist URLs


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "logs/embedtv.log"
    max_size: str = "10MB"
    backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    to_file: bool = True
    buffer_size: int = 500  # Entries kept for /api/logs and SSE replay


class ChannelsConfig(BaseModel):
    """Channel discovery and hydration configuration."""
    front_page_url: str = "https://streamed.pk"
    categories: list[str] = Field(default_factory=list)
    rebuild_interval_minutes: int = 60
    lifetime_hours: int = 24
    timezone: str = "UTC"
    hydration_concurrency: int = 5
    default_mode: str = "restream"  # direct-proxy, transmux, restream, capture
    expand_embeds: bool = False  # Fetch embed pages for options the front page lacks
    config_path: str = "channels.yaml"


class FFmpegConfig(BaseModel):
    """FFmpeg process management configuration."""
    path: str = "ffmpeg"
    max_concurrent: int = 20
    memory_limit_mb: int = 512
    health_check_interval_ms: int = 10000
    stale_threshold_ms: int = 60000
    manifest_timeout_ms: int = 30000
    manifest_poll_ms: int = 500
    kill_timeout_ms: int = 5000
    buffer_lines: int = 50


class TransmuxConfig(BaseModel):
    """Direct transmux job configuration."""
    readiness_timeout_ms: int = 15000
    hls_time: int = 4
    hls_list_size: int = 5


class RestreamConfig(BaseModel):
    """Browser-assisted restream worker configuration."""
    readiness_timeout_ms: int = 120000
    max_attempts: int = 4
    detect_config_fallback: bool = False
    network_timeout_ms: int = 90000
    navigation_timeout_ms: int = 90000
    reload_backoff_ms: int = 2000
    hls_time: int = 4
    hls_list_size: int = 8


class CaptureConfig(BaseModel):
    """Browser screencast capture configuration."""
    width: int = 1280
    height: int = 720
    quality: int = 80
    fps: int = 30
    audio: bool = True
    queue_size: int = 30  # Frames buffered between capture and FFmpeg stdin
    navigation_timeout_ms: int = 60000
    video_wait_timeout_ms: int = 30000


class ProxyConfig(BaseModel):
    """Upstream proxy configuration."""
    user_agent: str = DEFAULT_USER_AGENT
    max_cookies: int = 50
    timeout: float = 20.0


class SolverConfig(BaseModel):
    """Anti-bot challenge solver (FlareSolverr / Byparr) configuration."""
    model_config = ConfigDict(coerce_numbers_to_str=True)  # Numeric API keys from the environment

    enabled: bool = True
    endpoint: Optional[str] = None
    provider: str = "flaresolverr"
    api_key: Optional[str] = None
    max_timeout_ms: int = 45000


class EmbedTVConfig(BaseModel):
    """Main EmbedTV configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    transmux: TransmuxConfig = Field(default_factory=TransmuxConfig)
    restream: RestreamConfig = Field(default_factory=RestreamConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)


def load_config(config_path: Optional[str] = None) -> EmbedTVConfig:
    """
    Load configuration from file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in project root.

    Returns:
        Loaded and validated configuration.
    """
    global _config

    if config_path is None:
        possible_paths = [
            Path("config.yaml"),
            Path(__file__).parent.parent / "config.yaml",
        ]
        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data: dict[str, Any] = {}

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    env_overrides = _get_env_overrides()
    _deep_merge(config_data, env_overrides)

    _config = EmbedTVConfig(**config_data)
    load_operator_settings(_config)
    return _config


def get_config() -> EmbedTVConfig:
    """
    Get the current configuration.

    Returns:
        Current configuration (loads default if not yet loaded).
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> EmbedTVConfig:
    """Reload configuration from disk."""
    global _config
    _config = None
    return load_config()


def load_operator_settings(cfg: EmbedTVConfig) -> None:
    """Overlay persisted operator settings onto the channels section."""
    path = Path(cfg.channels.config_path)
    if not path.exists():
        return

    try:
        with open(path) as f:
            saved = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load operator settings from {path}, using defaults: {e}")
        return

    for key in OPERATOR_SETTINGS:
        if key in saved and saved[key] is not None:
            setattr(cfg.channels, key, saved[key])


def save_operator_settings(cfg: EmbedTVConfig) -> bool:
    """
    Persist the operator-editable channel settings.

    Returns:
        True when the file was written.
    """
    path = Path(cfg.channels.config_path)
    data = {key: getattr(cfg.channels, key) for key in OPERATOR_SETTINGS}

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False, allow_unicode=True)
    except OSError as e:
        logger.error(f"Failed to save operator settings to {path}: {e}")
        return False

    logger.info(f"Operator settings saved: {path}")
    return True


def _get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: dict[str, Any] = {}

    # Later entries win, so the EMBEDTV_ names override the bare legacy ones
    env_map = {
        "PORT": ("server", "port"),
        "FRONT_PAGE_URL": ("channels", "front_page_url"),
        "HYDRATION_CONCURRENCY": ("channels", "hydration_concurrency"),
        "FFMPEG_MAX_CONCURRENT": ("ffmpeg", "max_concurrent"),
        "FFMPEG_MEMORY_LIMIT_MB": ("ffmpeg", "memory_limit_mb"),
        "FFMPEG_HEALTH_CHECK_INTERVAL_MS": ("ffmpeg", "health_check_interval_ms"),
        "FFMPEG_STALE_THRESHOLD_MS": ("ffmpeg", "stale_threshold_ms"),
        "RESTREAM_MAX_ATTEMPTS": ("restream", "max_attempts"),
        "RESTREAM_DETECT_CONFIG_FALLBACK": ("restream", "detect_config_fallback"),
        "RESTREAM_NETWORK_TIMEOUT_MS": ("restream", "network_timeout_ms"),
        "CAPTURE_WIDTH": ("capture", "width"),
        "CAPTURE_HEIGHT": ("capture", "height"),
        "CAPTURE_FPS": ("capture", "fps"),
        "CAPTURE_QUALITY": ("capture", "quality"),
        "SOLVER_URL": ("solver", "endpoint"),
        "SOLVER_ENDPOINT_URL": ("solver", "endpoint"),
        "SOLVER_PROVIDER": ("solver", "provider"),
        "SOLVER_API_KEY": ("solver", "api_key"),
        "SOLVER_MAX_TIMEOUT_MS": ("solver", "max_timeout_ms"),
        "SOLVER_ENABLED": ("solver", "enabled"),
        "EMBEDTV_HOST": ("server", "host"),
        "EMBEDTV_PORT": ("server", "port"),
        "EMBEDTV_BASE_URL": ("server", "base_url"),
        "EMBEDTV_LOG_LEVEL": ("logging", "level"),
        "EMBEDTV_FRONT_PAGE_URL": ("channels", "front_page_url"),
        "EMBEDTV_STREAM_MODE": ("channels", "default_mode"),
        "EMBEDTV_FFMPEG_PATH": ("ffmpeg", "path"),
        "EMBEDTV_FFMPEG_MAX_CONCURRENT": ("ffmpeg", "max_concurrent"),
        "EMBEDTV_SOLVER_ENDPOINT": ("solver", "endpoint"),
    }

    for env_var, path in env_map.items():
        value = os.environ.get(env_var)
        if value is not None and value != "":
            _set_nested(overrides, path, _parse_env_value(value))

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    # Integer first so "1"/"0" stay numeric; pydantic coerces them for bool fields
    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    return value


def _set_nested(d: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Set a nested dictionary value from a path tuple."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class _ConfigProxy:
    """
    Proxy object that provides lazy access to configuration.

    Allows modules to import `config` directly and access it like:
        from embedtv.config import config
        config.server.port
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_config(), name)

    def __repr__(self) -> str:
        return f"<ConfigProxy for {get_config()}>"


config = _ConfigProxy()
