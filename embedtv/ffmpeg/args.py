"""
FFmpeg argument builders.

Each builder returns the argument list (without the binary) for one kind
of job. Keeping them pure makes the exact invocation easy to inspect in
logs and tests.
"""

import os
import re
from typing import Any, Mapping, Optional

HLS_CONTENT_PROTOCOLS = "file,http,https,tcp,tls"


def format_header_arg(headers: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Format request headers for FFmpeg's -headers option.

    Returns CRLF-terminated "Key: Value" lines, or None when there is
    nothing to send. Empty values are dropped.
    """
    if not headers:
        return None

    lines = [
        f"{key}: {value}"
        for key, value in headers.items()
        if value is not None and value != ""
    ]
    if not lines:
        return None
    return "\r\n".join(lines) + "\r\n"


def _input_args(stream_url: str, stream_type: str) -> list[str]:
    # DASH manifests reference segments over several protocols
    if stream_type == "dash":
        return ["-protocol_whitelist", HLS_CONTENT_PROTOCOLS, "-i", stream_url, "-map", "0"]
    return ["-i", stream_url]


def build_hls_args(
    stream_url: str,
    output_path: str,
    headers: Optional[Mapping[str, Any]] = None,
    stream_type: str = "hls",
    log_level: str = "warning",
) -> list[str]:
    """Copy an upstream HLS/DASH stream into a rolling local HLS playlist."""
    segment_pattern = os.path.join(os.path.dirname(output_path), "segment_%03d.ts")

    args = [
        "-loglevel", log_level,
        "-fflags", "+genpts+discardcorrupt",
        "-err_detect", "ignore_err",
    ]

    header_arg = format_header_arg(headers)
    if header_arg:
        args.extend(["-headers", header_arg])

    args.extend(_input_args(stream_url, stream_type))
    args.extend([
        "-c:v", "copy",
        "-c:a", "copy",
        "-bsf:a", "aac_adtstoasc",
        "-f", "hls",
        "-hls_time", "6",
        "-hls_list_size", "12",
        "-hls_flags", "append_list+independent_segments+program_date_time+temp_file",
        "-hls_delete_threshold", "3",
        "-hls_playlist_type", "event",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", segment_pattern,
        "-start_number", "0",
        output_path,
    ])
    return args


def build_transmux_args(
    input_url: str,
    output_path: str,
    headers: Optional[Mapping[str, Any]] = None,
    hls_time: int = 4,
    hls_list_size: int = 5,
) -> list[str]:
    """Remux any FFmpeg-readable input into a short sliding HLS window."""
    segment_pattern = os.path.join(os.path.dirname(output_path), "segment_%03d.ts")

    args = ["-y", "-hide_banner", "-loglevel", "error"]

    header_arg = format_header_arg(headers)
    if header_arg:
        args.extend(["-headers", header_arg])

    args.extend([
        "-i", input_url,
        "-c", "copy",
        "-f", "hls",
        "-hls_time", str(hls_time),
        "-hls_list_size", str(hls_list_size),
        "-hls_flags", "delete_segments+append_list+independent_segments",
        "-hls_segment_filename", segment_pattern,
        output_path,
    ])
    return args


def build_restream_args(
    stream_url: str,
    output_dir: str,
    stream_name: str,
    headers: Optional[Mapping[str, Any]] = None,
    user_agent: Optional[str] = None,
    stream_type: str = "hls",
    hls_time: int = 4,
    hls_list_size: int = 8,
) -> list[str]:
    """Rebroadcast a browser-discovered stream in real time as live HLS."""
    args = ["-loglevel", "warning", "-fflags", "+genpts", "-re"]

    header_arg = format_header_arg(headers)
    if header_arg:
        args.extend(["-headers", header_arg])
    if user_agent:
        args.extend(["-user_agent", user_agent])

    args.extend(_input_args(stream_url, stream_type))
    args.extend([
        "-c", "copy",
        "-f", "hls",
        "-hls_time", str(hls_time),
        "-hls_list_size", str(hls_list_size),
        "-hls_flags", "delete_segments+append_list+program_date_time",
        "-hls_playlist_type", "live",
        "-start_number", "0",
        "-hls_segment_filename", os.path.join(output_dir, f"{stream_name}_%03d.ts"),
        os.path.join(output_dir, f"{stream_name}.m3u8"),
    ])
    return args


def build_pipe_args(
    manifest_path: str,
    fps: int = 30,
    audio_input: Optional[str] = None,
    hls_time: int = 4,
    hls_list_size: int = 8,
) -> list[str]:
    """
    Encode JPEG frames from stdin (plus optional WebM/Opus audio) into HLS.

    Args:
        manifest_path: Output playlist path
        fps: Target frame rate of the screencast
        audio_input: Path of a named pipe carrying WebM audio; a silent
            track is generated when None so players always see audio
    """
    segment_pattern = os.path.join(os.path.dirname(manifest_path), "segment_%03d.ts")

    args = [
        "-loglevel", "warning",
        "-fflags", "+genpts",
        "-use_wallclock_as_timestamps", "1",
        "-thread_queue_size", "512",
        "-f", "image2pipe",
        "-framerate", str(fps),
        "-c:v", "mjpeg",
        "-i", "pipe:0",
    ]

    if audio_input:
        args.extend([
            "-thread_queue_size", "512",
            "-use_wallclock_as_timestamps", "1",
            "-f", "webm",
            "-i", audio_input,
        ])
    else:
        args.extend(["-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=48000"])

    args.extend([
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-vf", "scale=trunc(iw/2)*2:trunc(ih/2)*2,format=yuv420p",
        "-r", str(fps),
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-g", str(fps * 2),
        "-c:a", "aac",
        "-b:a", "128k",
        "-ar", "48000",
        "-ac", "2",
        "-f", "hls",
        "-hls_time", str(hls_time),
        "-hls_list_size", str(hls_list_size),
        "-hls_flags", "delete_segments+append_list+independent_segments+program_date_time",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", segment_pattern,
        "-start_number", "0",
        manifest_path,
    ])
    return args


_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\w+)")


def parse_progress(line: str) -> Optional[dict[str, Any]]:
    """
    Extract frame/fps/bitrate from an FFmpeg status line.

    Returns None when the line carries no progress information.
    """
    frame = _FRAME_RE.search(line)
    fps = _FPS_RE.search(line)
    bitrate = _BITRATE_RE.search(line)

    if not (frame or fps or bitrate):
        return None

    return {
        "frame": int(frame.group(1)) if frame else None,
        "fps": float(fps.group(1)) if fps else None,
        "bitrate": bitrate.group(1) if bitrate else None,
    }
