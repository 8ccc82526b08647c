"""
EmbedTV Main Application

FastAPI application serving the playlist, EPG, per-channel HLS and the
control API.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from embedtv import __version__
from embedtv.channels.registry import ChannelRegistry, init_channel_registry
from embedtv.config import EmbedTVConfig, load_config
from embedtv.ffmpeg.orchestrator import (
    ProcessOrchestrator,
    check_ffmpeg_available,
    init_process_orchestrator,
)
from embedtv.streaming.errors import DependencyUnavailable
from embedtv.streaming.jobs import StreamService
from embedtv.tasks.scheduler import RebuildScheduler, init_rebuild_scheduler
from embedtv.utils.log_buffer import init_log_buffer
from embedtv.utils.logging_setup import parse_size, setup_logging

# Logger
logger = logging.getLogger(__name__)


def configure_logging(cfg: EmbedTVConfig) -> None:
    buffer = init_log_buffer(cfg.logging.buffer_size)
    setup_logging(
        log_level=cfg.logging.level,
        log_file_name=cfg.logging.file,
        log_to_console=True,
        log_to_file=cfg.logging.to_file,
        max_bytes=parse_size(cfg.logging.max_size),
        backup_count=cfg.logging.backup_count,
        log_format=cfg.logging.format,
        log_buffer=buffer,
    )


def create_app(
    cfg: Optional[EmbedTVConfig] = None,
    orchestrator: Optional[ProcessOrchestrator] = None,
    stream_service: Optional[StreamService] = None,
    registry: Optional[ChannelRegistry] = None,
    scheduler: Optional[RebuildScheduler] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Components not passed in are built from configuration at startup.
    With start_background=False no dependency check or rebuild is started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        config = cfg or load_config()
        configure_logging(config)
        logger.info(f"Starting EmbedTV v{__version__}")
        logger.info(f"Configuration loaded, server port: {config.server.port}")

        orch = init_process_orchestrator(orchestrator or ProcessOrchestrator.from_config(config))
        service = stream_service or StreamService.from_config(config, orch)
        reg = init_channel_registry(registry or ChannelRegistry.from_config(config, service))
        sched = init_rebuild_scheduler(scheduler or RebuildScheduler.from_config(config, reg))

        app.state.config = config
        app.state.orchestrator = orch
        app.state.stream_service = service
        app.state.registry = reg
        app.state.scheduler = sched

        if start_background:
            try:
                version = await check_ffmpeg_available(config.ffmpeg.path)
                logger.info(f"FFmpeg available: {version}")
            except DependencyUnavailable as e:
                logger.error(f"FFmpeg unavailable, transcoded modes will fail: {e}")

            await sched.start(run_immediately=True)
            logger.info("Initial rebuild started in background")

        logger.info("EmbedTV started successfully")

        yield

        # Shutdown
        logger.info("Shutting down EmbedTV")

        try:
            await sched.stop()
            logger.info("Rebuild scheduler stopped")
        except Exception as e:
            logger.warning(f"Error stopping scheduler: {e}")

        try:
            await service.shutdown()
            logger.info("Stream jobs cleaned up")
        except Exception as e:
            logger.warning(f"Error cleaning up stream jobs: {e}")

        try:
            stopped = await orch.kill_all()
            logger.info(f"FFmpeg processes stopped ({stopped})")
        except Exception as e:
            logger.warning(f"Error stopping FFmpeg processes: {e}")

        logger.info("EmbedTV shutdown complete")

    app = FastAPI(
        title="EmbedTV",
        description="Live event embeds republished as IPTV channels",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    from embedtv.api import api_router, iptv_router

    app.include_router(api_router)
    # IPTV routes live at the root so players get /playlist.m3u8 and /hls/{id}
    app.include_router(iptv_router)

    return app


# Create the app instance
app = create_app()


def main() -> None:
    """
    Main entry point for running the server.

    Called when running `python -m embedtv` or via the `embedtv` script.
    """
    import uvicorn

    config = load_config()

    uvicorn.run(
        "embedtv.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
