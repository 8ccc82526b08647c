"""Request-scoped access to the application's components."""

from typing import Optional

from fastapi import Request

from embedtv.channels.registry import ChannelRegistry
from embedtv.config import EmbedTVConfig
from embedtv.ffmpeg.orchestrator import ProcessOrchestrator
from embedtv.streaming.jobs import StreamService
from embedtv.tasks.scheduler import RebuildScheduler


def get_app_config(request: Request) -> EmbedTVConfig:
    return request.app.state.config


def get_registry(request: Request) -> ChannelRegistry:
    return request.app.state.registry


def get_stream_service(request: Request) -> StreamService:
    return request.app.state.stream_service


def get_orchestrator(request: Request) -> ProcessOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> Optional[RebuildScheduler]:
    return getattr(request.app.state, "scheduler", None)


def public_base_url(request: Request) -> str:
    """Base URL clients should use; server.base_url wins over the request host."""
    cfg: EmbedTVConfig = request.app.state.config
    if cfg.server.base_url:
        return cfg.server.base_url.rstrip("/")
    return f"{request.url.scheme}://{request.url.netloc}"
