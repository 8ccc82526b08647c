"""IPTV endpoints (playlist.m3u8, epg.xml, per-channel HLS)"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import PlainTextResponse

from embedtv.api.deps import (
    get_app_config,
    get_registry,
    get_stream_service,
    public_base_url,
)
from embedtv.channels.models import Channel
from embedtv.channels.playlist import NOT_READY_PLAYLIST, generate_epg, generate_playlist
from embedtv.channels.registry import ChannelRegistry
from embedtv.config import EmbedTVConfig
from embedtv.streaming.errors import DependencyUnavailable, UpstreamFetchFailed
from embedtv.streaming.jobs import StreamMode, StreamService
from embedtv.streaming.proxy import (
    HLS_MEDIA_TYPE,
    is_hls_content_type,
    rewrite_local_manifest,
    rewrite_manifest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["IPTV"])

PLAYLIST_MEDIA_TYPE = "application/x-mpegurl"

JOB_FAILURE_MESSAGES = {
    StreamMode.TRANSMUX.value: "Failed to transmux stream",
    StreamMode.RESTREAM.value: "Failed to restream embed",
    StreamMode.CAPTURE.value: "Failed to capture stream",
}


def _channel_base(request: Request, channel_id: str) -> str:
    return f"{public_base_url(request)}/hls/{quote(channel_id, safe='')}"


@router.get("/playlist.m3u8")
async def get_playlist(
    request: Request,
    registry: ChannelRegistry = Depends(get_registry),
) -> Response:
    if not registry.playlist_ready:
        return Response(content=NOT_READY_PLAYLIST, status_code=503, media_type=PLAYLIST_MEDIA_TYPE)

    content = generate_playlist(registry.list_channels(), public_base_url(request))
    return Response(content=content, media_type=PLAYLIST_MEDIA_TYPE)


@router.get("/epg.xml")
async def get_epg(
    registry: ChannelRegistry = Depends(get_registry),
    cfg: EmbedTVConfig = Depends(get_app_config),
) -> Response:
    content = generate_epg(registry.list_channels(), registry.programmes, cfg.channels.timezone)
    return Response(content=content, media_type="application/xml")


async def _proxy_response(
    request: Request,
    registry: ChannelRegistry,
    channel: Channel,
    target_url: str,
    is_root_manifest: bool,
) -> Response:
    try:
        upstream = await registry.fetch_stream(channel, target_url)
    except UpstreamFetchFailed as e:
        logger.error(
            f"Failed to proxy HLS request for {channel.id} "
            f"(status={e.status_code}): {target_url}: {e}"
        )
        return PlainTextResponse("Upstream error fetching stream", status_code=502)

    should_rewrite = (
        is_root_manifest
        or is_hls_content_type(upstream.content_type)
        or ".m3u8" in target_url
    )
    if should_rewrite:
        rewritten = rewrite_manifest(upstream.text, upstream.url, _channel_base(request, channel.id))
        return Response(content=rewritten, media_type=HLS_MEDIA_TYPE)

    return Response(content=upstream.content, media_type=upstream.content_type)


@router.get("/hls/{channel_id}")
async def get_channel_manifest(
    channel_id: str,
    request: Request,
    registry: ChannelRegistry = Depends(get_registry),
) -> Response:
    channel = registry.get_channel(channel_id)
    if channel is None:
        return PlainTextResponse("Channel not found", status_code=404)

    if channel.stream_mode == StreamMode.DIRECT_PROXY.value:
        if not channel.stream_url:
            try:
                await registry.resolve_channel(channel_id)
            except DependencyUnavailable as e:
                logger.error(f"Cannot resolve {channel_id}: {e}")
                return PlainTextResponse("Stream dependencies unavailable", status_code=503)
            except Exception as e:
                logger.error(f"Failed to resolve stream for {channel_id}: {e}")
                return PlainTextResponse("Failed to resolve stream", status_code=502)
        if not channel.stream_url:
            return PlainTextResponse("Failed to resolve stream", status_code=502)
        return await _proxy_response(request, registry, channel, channel.stream_url, True)

    failure = JOB_FAILURE_MESSAGES.get(channel.stream_mode, "Failed to start stream")
    try:
        job = await registry.ensure_job(channel_id)
    except DependencyUnavailable as e:
        logger.error(f"Cannot start {channel.stream_mode} job for {channel_id}: {e}")
        return PlainTextResponse("Stream dependencies unavailable", status_code=503)
    except Exception as e:
        logger.error(f"{failure} for {channel_id} ({channel.embed_url}): {e}")
        return PlainTextResponse(failure, status_code=502)

    if job is None:
        return PlainTextResponse(failure, status_code=502)

    try:
        manifest = Path(job.manifest_path).read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to read manifest for {channel_id}: {e}")
        return PlainTextResponse(failure, status_code=502)

    rewritten = rewrite_local_manifest(manifest, f"{_channel_base(request, channel_id)}/local")
    return Response(content=rewritten, media_type=HLS_MEDIA_TYPE)


@router.get("/hls/{channel_id}/proxy")
async def proxy_channel_resource(
    channel_id: str,
    request: Request,
    url: Optional[str] = Query(None),
    registry: ChannelRegistry = Depends(get_registry),
) -> Response:
    channel = registry.get_channel(channel_id)
    if channel is None:
        return PlainTextResponse("Channel not found", status_code=404)

    if channel.stream_mode != StreamMode.DIRECT_PROXY.value:
        return PlainTextResponse(
            f"Channel is in {channel.stream_mode} mode; direct proxy not available",
            status_code=400,
        )

    if not url:
        return PlainTextResponse("Missing url parameter", status_code=400)

    return await _proxy_response(request, registry, channel, url, False)


@router.get("/hls/{channel_id}/local/{segment:path}")
async def get_local_segment(
    channel_id: str,
    segment: str,
    registry: ChannelRegistry = Depends(get_registry),
    service: StreamService = Depends(get_stream_service),
) -> Response:
    channel = registry.get_channel(channel_id)
    if channel is None or channel.stream_mode == StreamMode.DIRECT_PROXY.value:
        return PlainTextResponse("Channel not found or not locally produced", status_code=404)

    job = service.get_local_job(channel_id)
    if job is None:
        return PlainTextResponse("Stream output unavailable", status_code=404)

    work_dir = Path(job.work_dir).resolve()
    resolved = (work_dir / segment).resolve()
    if not resolved.is_relative_to(work_dir) or resolved == work_dir:
        return PlainTextResponse("Invalid segment path", status_code=400)

    try:
        content = resolved.read_bytes()
    except OSError:
        logger.debug(f"Segment not found for {channel_id}: {segment}")
        return PlainTextResponse("Segment not found", status_code=404)

    media_type = HLS_MEDIA_TYPE if resolved.suffix == ".m3u8" else "video/mp2t"
    return Response(content=content, media_type=media_type)
