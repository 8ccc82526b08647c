"""
Restream worker process.

Usage:
    python -m embedtv.streaming.restream_worker <embed-url> <channel-id> <work-dir>

Opens the embed page in a stealth browser, finds the underlying HLS/DASH
stream, closes the browser and rebroadcasts the stream with FFmpeg into
<work-dir>/<channel-id>.m3u8. Exits with FFmpeg's exit code, or 1 when
no stream could be resolved.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from playwright.async_api import Error as PlaywrightError

from embedtv.config import get_config
from embedtv.ffmpeg.args import build_restream_args
from embedtv.streaming.browser import (
    autoplay,
    browser_page,
    clear_challenge,
    cookie_header,
    is_challenge_page,
)
from embedtv.streaming.detection import DetectedStream, StreamDetector, detect_with_retries
from embedtv.streaming.errors import StreamingError
from embedtv.streaming.solver import create_solver_client
from embedtv.utils.logging_setup import setup_logging

logger = logging.getLogger("embedtv.restream_worker")


async def resolve_stream(embed_url: str) -> tuple[DetectedStream, dict[str, str]]:
    """
    Detect the stream behind an embed page.

    Returns the stream and the request headers FFmpeg should send.
    """
    cfg = get_config()
    restream = cfg.restream
    user_agent = cfg.proxy.user_agent

    async with browser_page(user_agent=user_agent) as page:
        logger.info(f"Navigating to {embed_url}")
        await page.goto(
            embed_url,
            wait_until="domcontentloaded",
            timeout=restream.navigation_timeout_ms,
        )

        if await is_challenge_page(page):
            await clear_challenge(page, create_solver_client(), restream.navigation_timeout_ms)

        detector = StreamDetector(timeout=restream.network_timeout_ms / 1000)
        stream = await detect_with_retries(
            page,
            detector,
            max_attempts=restream.max_attempts,
            enable_config_fallback=restream.detect_config_fallback,
            reload_backoff_ms=restream.reload_backoff_ms,
            navigation_timeout_ms=restream.navigation_timeout_ms,
            before_wait=autoplay,
        )
        logger.info(f"Detected source stream ({stream.type.value}): {stream.url}")

        headers = {"Referer": embed_url}
        try:
            cookies = await page.context.cookies([stream.url])
        except PlaywrightError:
            cookies = []
        cookie_value = cookie_header(cookies)
        if cookie_value:
            headers["Cookie"] = cookie_value

    return stream, headers


async def _pump(stream: Optional[asyncio.StreamReader], level: int) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace").strip()
        if text:
            logger.log(level, f"[ffmpeg] {text}")


async def run_ffmpeg(
    stream: DetectedStream,
    headers: dict[str, str],
    channel_id: str,
    work_dir: Path,
) -> int:
    """Run FFmpeg until it exits, forwarding SIGTERM/SIGINT to it."""
    cfg = get_config()
    args = build_restream_args(
        stream.url,
        str(work_dir),
        channel_id,
        headers=headers,
        user_agent=cfg.proxy.user_agent,
        stream_type=stream.type.value,
        hls_time=cfg.restream.hls_time,
        hls_list_size=cfg.restream.hls_list_size,
    )

    logger.info(f"Starting FFmpeg restream -> {work_dir / (channel_id + '.m3u8')}")
    process = await asyncio.create_subprocess_exec(
        cfg.ffmpeg.path,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    loop = asyncio.get_running_loop()

    def forward(sig: signal.Signals) -> None:
        logger.info(f"Caught {sig.name}, stopping FFmpeg")
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, forward, sig)

    try:
        await asyncio.gather(
            _pump(process.stdout, logging.INFO),
            _pump(process.stderr, logging.WARNING),
        )
        code = await process.wait()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    logger.info(f"FFmpeg exited (code={code})")
    # Negative codes mean FFmpeg died from a signal
    return code if code >= 0 else 128 - code


async def run(embed_url: str, channel_id: str, work_dir: Path) -> int:
    work_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Restream worker for {channel_id}: {embed_url} -> {work_dir}")

    try:
        stream, headers = await resolve_stream(embed_url)
    except StreamingError as e:
        logger.error(f"Stream resolution failed: {e}")
        return 1
    except PlaywrightError as e:
        logger.error(f"Browser error while resolving stream: {e}")
        return 1

    return await run_ffmpeg(stream, headers, channel_id, work_dir)


def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 3:
        print(
            "Usage: python -m embedtv.streaming.restream_worker "
            "<embed-url> <channel-id> <work-dir>",
            file=sys.stderr,
        )
        return 2

    embed_url, channel_id, work_dir = argv
    cfg = get_config()
    setup_logging(log_level=cfg.logging.level, log_to_file=False)
    return asyncio.run(run(embed_url, channel_id, Path(work_dir).resolve()))


if __name__ == "__main__":
    sys.exit(main())
