"""Control API: state, logs, operator settings, rebuilds and channel selection"""

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from embedtv import __version__
from embedtv.api.deps import (
    get_app_config,
    get_orchestrator,
    get_registry,
    get_scheduler,
    get_stream_service,
)
from embedtv.channels.playlist import is_valid_timezone
from embedtv.channels.registry import ChannelRegistry
from embedtv.config import OPERATOR_SETTINGS, EmbedTVConfig, save_operator_settings
from embedtv.ffmpeg.orchestrator import ProcessOrchestrator
from embedtv.streaming.jobs import StreamService
from embedtv.tasks.scheduler import RebuildScheduler
from embedtv.utils.log_buffer import get_log_buffer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Control"])

SSE_KEEPALIVE_SECONDS = 15.0


class ConfigUpdate(BaseModel):
    """Operator-editable settings; absent fields keep their current value."""

    categories: Optional[list[str]] = None
    rebuild_interval_minutes: Optional[int] = Field(None, ge=1)
    lifetime_hours: Optional[int] = Field(None, ge=1)
    timezone: Optional[str] = None


class EmbedSelection(BaseModel):
    embed_url: str = Field(..., min_length=1)


def operator_settings(cfg: EmbedTVConfig) -> dict[str, Any]:
    return {key: getattr(cfg.channels, key) for key in OPERATOR_SETTINGS}


@router.get("/state")
async def get_state(
    registry: ChannelRegistry = Depends(get_registry),
    scheduler: Optional[RebuildScheduler] = Depends(get_scheduler),
    cfg: EmbedTVConfig = Depends(get_app_config),
) -> dict[str, Any]:
    last_rebuild = scheduler.last_rebuild if scheduler else None
    return {
        "config": operator_settings(cfg),
        "channels": [c.to_dict() for c in registry.list_channels()],
        "logs": get_log_buffer().entries(),
        "last_rebuild": last_rebuild.isoformat() if last_rebuild else None,
        "playlist_ready": registry.playlist_ready,
        "hydrating": registry.hydrating,
    }


@router.get("/logs")
async def get_logs() -> list[dict[str, Any]]:
    return get_log_buffer().entries()


@router.get("/logs/stream")
async def stream_logs(request: Request, follow: bool = True) -> StreamingResponse:
    """
    Stream log entries as server-sent events.

    History is replayed oldest first, then live entries follow until the
    client disconnects. With follow=false the stream ends after the replay.
    """
    buffer = get_log_buffer()
    queue = buffer.subscribe()

    async def event_generator():
        try:
            while True:
                if not follow and queue.empty():
                    break
                if await request.is_disconnected():
                    break
                try:
                    entry = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(entry)}\n\n"
        finally:
            buffer.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/config")
async def update_config(
    update: ConfigUpdate,
    registry: ChannelRegistry = Depends(get_registry),
    scheduler: Optional[RebuildScheduler] = Depends(get_scheduler),
    cfg: EmbedTVConfig = Depends(get_app_config),
) -> dict[str, Any]:
    if update.timezone is not None and not is_valid_timezone(update.timezone):
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {update.timezone}")

    channels = cfg.channels
    if update.categories is not None:
        channels.categories = [c.strip().lower() for c in update.categories if c.strip()]
    if update.rebuild_interval_minutes is not None:
        channels.rebuild_interval_minutes = update.rebuild_interval_minutes
    if update.lifetime_hours is not None:
        channels.lifetime_hours = update.lifetime_hours
    if update.timezone is not None:
        channels.timezone = update.timezone

    registry.apply_settings(categories=channels.categories, lifetime_hours=channels.lifetime_hours)
    save_operator_settings(cfg)

    if scheduler is not None and update.rebuild_interval_minutes is not None:
        scheduler.reschedule(channels.rebuild_interval_minutes)

    logger.info(f"Operator settings updated: {operator_settings(cfg)}")
    return {"config": operator_settings(cfg)}


@router.post("/rebuild")
async def rebuild(
    scheduler: Optional[RebuildScheduler] = Depends(get_scheduler),
) -> dict[str, Any]:
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Rebuild scheduler not running")

    result = await scheduler.trigger()
    if result is None:
        raise HTTPException(status_code=502, detail=f"Rebuild failed: {scheduler.last_error}")

    return {
        "status": "ok",
        "last_rebuild": scheduler.last_rebuild.isoformat() if scheduler.last_rebuild else None,
        "result": result.to_dict(),
    }


@router.post("/channel/{channel_id}/source")
async def select_source(
    channel_id: str,
    selection: EmbedSelection,
    registry: ChannelRegistry = Depends(get_registry),
) -> dict[str, Any]:
    channel = registry.select_source(channel_id, selection.embed_url)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel.to_dict()


@router.post("/channel/{channel_id}/quality")
async def select_quality(
    channel_id: str,
    selection: EmbedSelection,
    registry: ChannelRegistry = Depends(get_registry),
) -> dict[str, Any]:
    channel = await registry.select_quality(channel_id, selection.embed_url)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel.to_dict()


@router.get("/metrics")
async def get_metrics(
    orchestrator: ProcessOrchestrator = Depends(get_orchestrator),
    service: StreamService = Depends(get_stream_service),
    scheduler: Optional[RebuildScheduler] = Depends(get_scheduler),
) -> dict[str, Any]:
    return {
        "ffmpeg": orchestrator.get_metrics(),
        "jobs": service.get_metrics(),
        "scheduler": scheduler.get_status() if scheduler else None,
    }


@router.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok", "version": __version__}
