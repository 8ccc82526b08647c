"""
HLS manifest rewriting and upstream fetching.

Rewritten manifests point every segment and sub-playlist back at this
server, so clients never talk to the upstream directly.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, urljoin, urlsplit

import httpx

from embedtv.streaming.errors import UpstreamFetchFailed

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE_RE = re.compile(r"application/(vnd\.apple\.mpegurl|x-mpegurl|mpegurl)", re.IGNORECASE)
HLS_MEDIA_TYPE = "application/vnd.apple.mpegurl"
_LINE_SPLIT_RE = re.compile(r"\r?\n")


def is_hls_content_type(content_type: Optional[str]) -> bool:
    return bool(content_type and HLS_CONTENT_TYPE_RE.search(content_type))


def proxy_url(proxy_base: str, absolute_url: str) -> str:
    """Build the proxied form of an upstream URL."""
    return f"{proxy_base}/proxy?url={quote(absolute_url, safe='')}"


def rewrite_manifest(text: str, source_url: str, proxy_base: str) -> str:
    """
    Route every URI line of a manifest through the proxy.

    Blank lines and # directives are left untouched, as are lines that
    already point at this proxy. Relative URIs resolve against source_url.
    """
    proxy_prefix = f"{proxy_base}/proxy?url="
    rewritten = []

    for line in _LINE_SPLIT_RE.split(text):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#") or trimmed.startswith(proxy_prefix):
            rewritten.append(line)
            continue

        try:
            absolute = urljoin(source_url, trimmed)
            parts = urlsplit(absolute)
        except ValueError:
            rewritten.append(line)
            continue
        if not parts.scheme or not parts.netloc:
            rewritten.append(line)
            continue

        rewritten.append(proxy_url(proxy_base, absolute))

    return "\n".join(rewritten)


def rewrite_local_manifest(text: str, local_base: str) -> str:
    """Point segment lines of a job's local manifest at the local segment route."""
    rewritten = []
    for line in _LINE_SPLIT_RE.split(text):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            rewritten.append(line)
            continue
        # FFmpeg may write bare names or paths; only the file name is served
        name = trimmed.rsplit("/", 1)[-1]
        rewritten.append(f"{local_base}/{quote(name, safe='')}")
    return "\n".join(rewritten)


@dataclass
class UpstreamResponse:
    """A fetched upstream resource."""

    url: str
    status_code: int
    content: bytes
    content_type: str
    set_cookies: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


async def fetch_stream(
    target_url: str,
    headers: dict[str, str],
    channel_id: Optional[str] = None,
    timeout: float = 20.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> UpstreamResponse:
    """
    GET an upstream manifest or segment.

    Raises:
        UpstreamFetchFailed: On transport errors or a 4xx/5xx status
    """
    logger.debug(f"Proxying fetch for {channel_id}: {target_url}")
    try:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            verify=False,
            transport=transport,
        ) as client:
            response = await client.get(target_url, headers=headers)
    except httpx.HTTPError as e:
        raise UpstreamFetchFailed(
            f"Upstream request failed for {target_url}: {e}",
            channel_id=channel_id,
            original_error=e,
        ) from e

    if response.status_code >= 400:
        raise UpstreamFetchFailed(
            f"Upstream returned {response.status_code} for {target_url}",
            channel_id=channel_id,
            status_code=response.status_code,
        )

    return UpstreamResponse(
        url=str(response.url),
        status_code=response.status_code,
        content=response.content,
        content_type=response.headers.get("content-type", "application/octet-stream"),
        set_cookies=response.headers.get_list("set-cookie"),
    )
