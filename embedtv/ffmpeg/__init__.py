"""
FFmpeg process management.

Argument builders, per-process lifecycle, health checks and a global
concurrency cap for every transcoder the service runs.
"""

from embedtv.ffmpeg.args import (
    build_hls_args,
    build_pipe_args,
    build_restream_args,
    build_transmux_args,
    format_header_arg,
    parse_progress,
)
from embedtv.ffmpeg.health_monitor import ProcessHealthMonitor
from embedtv.ffmpeg.orchestrator import (
    ProcessOrchestrator,
    SpawnOptions,
    check_ffmpeg_available,
    get_process_orchestrator,
    init_process_orchestrator,
    shutdown_process_orchestrator,
)
from embedtv.ffmpeg.process import ProcessWrapper
from embedtv.ffmpeg.resource_monitor import ResourceMonitor
from embedtv.ffmpeg.state import ProcessState

__all__ = [
    "ProcessHealthMonitor",
    "ProcessOrchestrator",
    "ProcessState",
    "ProcessWrapper",
    "ResourceMonitor",
    "SpawnOptions",
    "build_hls_args",
    "build_pipe_args",
    "build_restream_args",
    "build_transmux_args",
    "check_ffmpeg_available",
    "format_header_arg",
    "get_process_orchestrator",
    "init_process_orchestrator",
    "parse_progress",
    "shutdown_process_orchestrator",
]
