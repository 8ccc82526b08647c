"""
Channel Registry & Reconciler.

Owns the channel set. Rebuilds are diffed against the previous set by
content-derived id so running jobs and client bookmarks survive changes
in upstream event order. All writes to channels go through this class;
background workers hand their results back via apply_resolution.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlsplit

import httpx

from embedtv.channels.models import (
    Channel,
    Event,
    Programme,
    ReconcileResult,
    stable_channel_id,
)
from embedtv.config import DEFAULT_USER_AGENT
from embedtv.streaming.jobs import Job, Resolution, StreamMode
from embedtv.streaming.proxy import UpstreamResponse, fetch_stream

if TYPE_CHECKING:
    from embedtv.config import EmbedTVConfig
    from embedtv.streaming.jobs import StreamService

logger = logging.getLogger(__name__)

# Global registry instance
_registry: Optional["ChannelRegistry"] = None

Resolver = Callable[[Channel, dict[str, str]], Awaitable[Resolution]]


def embed_origin(embed_url: Optional[str]) -> Optional[str]:
    if not embed_url:
        return None
    parts = urlsplit(embed_url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def default_stream_headers(
    embed_url: Optional[str], user_agent: str = DEFAULT_USER_AGENT
) -> dict[str, str]:
    """Headers an upstream expects from a browser playing the embed."""
    headers = {
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
    }
    if embed_url:
        headers["Referer"] = embed_url
        origin = embed_origin(embed_url)
        if origin:
            headers["Origin"] = origin
    return headers


def parse_set_cookie(header: str) -> Optional[tuple[str, str]]:
    """Name and value from one Set-Cookie header; attributes are ignored."""
    pair = header.split(";", 1)[0].strip()
    name, sep, value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    return name, value.strip()


class ChannelRegistry:
    """
    The single writer of channel state.

    Attributes:
        channels: id -> Channel, in event order
        programmes: EPG entries from the last reconcile
        playlist_ready: False while streams are being (re)resolved
        hydrating: True while a hydration pass runs
    """

    def __init__(
        self,
        stream_service: Optional["StreamService"] = None,
        resolver: Optional[Resolver] = None,
        categories: Optional[list[str]] = None,
        lifetime_hours: int = 24,
        hydration_concurrency: int = 5,
        default_mode: str = StreamMode.RESTREAM.value,
        user_agent: str = DEFAULT_USER_AGENT,
        max_cookies: int = 50,
        proxy_timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.stream_service = stream_service
        self._resolver = resolver
        self.categories = list(categories or [])
        self.lifetime_hours = lifetime_hours
        self.hydration_concurrency = hydration_concurrency
        self.default_mode = StreamMode(default_mode).value
        self.user_agent = user_agent
        self.max_cookies = max_cookies
        self.proxy_timeout = proxy_timeout
        self.transport = transport

        self.channels: dict[str, Channel] = {}
        self.programmes: list[Programme] = []
        self.playlist_ready = False
        self.hydrating = False
        self._expired_ids: set[str] = set()

    @classmethod
    def from_config(
        cls,
        cfg: "EmbedTVConfig",
        stream_service: Optional["StreamService"] = None,
    ) -> "ChannelRegistry":
        return cls(
            stream_service=stream_service,
            categories=cfg.channels.categories,
            lifetime_hours=cfg.channels.lifetime_hours,
            hydration_concurrency=cfg.channels.hydration_concurrency,
            default_mode=cfg.channels.default_mode,
            user_agent=cfg.proxy.user_agent,
            max_cookies=cfg.proxy.max_cookies,
            proxy_timeout=cfg.proxy.timeout,
        )

    # ---- lookup ----

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        return self.channels.get(channel_id)

    def list_channels(self) -> list[Channel]:
        return list(self.channels.values())

    # ---- reconcile ----

    def _create_channel(self, channel_id: str, event: Event, now: datetime) -> Channel:
        return Channel(
            id=channel_id,
            category=event.category,
            title=event.title,
            embed_url=event.embed_url,
            expires_at=now + timedelta(hours=self.lifetime_hours),
            stream_mode=self.default_mode,
            request_headers=default_stream_headers(event.embed_url, self.user_agent),
            source_options=list(event.source_options),
            quality_options=list(event.quality_options),
            start_time=event.start_time,
        )

    def _update_channel(self, channel: Channel, event: Event) -> None:
        channel.title = event.title
        channel.category = event.category
        channel.source_options = list(event.source_options)
        channel.quality_options = list(event.quality_options)
        channel.start_time = event.start_time

        # An operator's pick survives while the page still offers it
        offered = {o.embed_url for o in channel.source_options + channel.quality_options}
        if channel.selected_source and channel.selected_source not in offered:
            channel.selected_source = None
        embed_url = channel.selected_source or event.embed_url

        if embed_url != channel.embed_url:
            logger.info(f"Embed changed for {channel.id}, resetting stream state")
            channel.embed_url = embed_url
            channel.reset_stream()
            channel.request_headers = default_stream_headers(embed_url, self.user_agent)

    async def reconcile(
        self,
        events: Iterable[Event],
        category_filter: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Diff a rebuild's events against the current channel set.

        Existing ids are updated in place, new ids are added, and ids that
        disappeared or expired are removed and have their jobs evicted.
        The new set replaces the old one in a single assignment.
        """
        now = now or datetime.now(timezone.utc)
        snapshot = list(events)
        categories = self.categories if category_filter is None else category_filter
        wanted = {c.strip().lower() for c in categories if c and c.strip()}

        previous = self.channels
        current: dict[str, Channel] = {}
        result = ReconcileResult()
        seen_ids: set[str] = set()

        for event in snapshot:
            if wanted and event.category.lower() not in wanted:
                continue

            channel_id = stable_channel_id(event)
            seen_ids.add(channel_id)
            if channel_id in current or channel_id in self._expired_ids:
                continue

            existing = previous.get(channel_id)
            if existing is not None and existing.is_expired(now):
                self._expired_ids.add(channel_id)
                continue

            if existing is not None:
                self._update_channel(existing, event)
                current[channel_id] = existing
                result.updated += 1
            else:
                current[channel_id] = self._create_channel(channel_id, event, now)
                result.added += 1

        # Expired events stay retired only while the page still lists them
        self._expired_ids &= seen_ids

        result.removed_ids = [cid for cid in previous if cid not in current]
        result.removed = len(result.removed_ids)
        result.total = len(current)

        self.channels = current
        self.programmes = [
            Programme(
                channel_id=channel.id,
                title=channel.title,
                category=channel.category,
                start=now,
                stop=now + timedelta(hours=self.lifetime_hours),
            )
            for channel in current.values()
        ]

        logger.info(
            f"Reconciled channels: total={result.total} added={result.added} "
            f"updated={result.updated} removed={result.removed}"
        )

        if result.removed_ids and self.stream_service is not None:
            await self.stream_service.evict(result.removed_ids)

        return result

    # ---- resolution ----

    async def _default_resolver(self, channel: Channel, headers: dict[str, str]) -> Resolution:
        if self.stream_service is None:
            raise RuntimeError("No stream service configured")
        return await self.stream_service.resolve(channel, headers)

    @property
    def resolver(self) -> Resolver:
        return self._resolver or self._default_resolver

    def apply_resolution(
        self,
        channel_id: str,
        resolution: Resolution,
        embed_url: Optional[str] = None,
    ) -> bool:
        """
        Record a resolver's result on the channel.

        Ignored when the channel is gone or its embed changed since the
        resolution started.
        """
        channel = self.channels.get(channel_id)
        if channel is None:
            logger.debug(f"Dropping resolution for removed channel {channel_id}")
            return False
        if embed_url is not None and channel.embed_url != embed_url:
            logger.debug(f"Dropping stale resolution for {channel_id} (embed changed)")
            return False

        channel.stream_url = resolution.stream_url
        if resolution.source_url:
            channel.source_url = resolution.source_url
        if resolution.mime_type:
            channel.stream_mime_type = resolution.mime_type
        for name, value in resolution.cookies.items():
            self._set_cookie(channel, name, value)
        return True

    async def resolve_channel(self, channel_id: str) -> Optional[Resolution]:
        """Resolve one channel now and apply the result."""
        channel = self.channels.get(channel_id)
        if channel is None:
            return None

        embed_url = channel.embed_url
        resolution = await self.resolver(channel, self.build_stream_headers(channel))
        self.apply_resolution(channel_id, resolution, embed_url=embed_url)

        if not self.hydrating:
            self.playlist_ready = True
        return resolution

    async def ensure_job(self, channel_id: str) -> Optional[Job]:
        """Resolve a channel on access and return its job, if it has one."""
        resolution = await self.resolve_channel(channel_id)
        return resolution.job if resolution else None

    async def _hydrate_one(self, channel: Channel) -> bool:
        try:
            await self.resolve_channel(channel.id)
        except Exception as e:
            logger.warning(f"Failed to resolve stream for {channel.id} ({channel.title}): {e}")
            return False
        logger.info(f"Resolved stream for {channel.id} ({channel.title})")
        return True

    async def hydrate(self) -> dict[str, bool]:
        """
        Resolve every channel with a bounded pool of workers.

        Workers pull from a shared cursor until the list is drained; one
        channel failing never affects the others.
        """
        channels = list(self.channels.values())
        results: dict[str, bool] = {}

        if not channels:
            self.playlist_ready = True
            self.hydrating = False
            return results

        self.hydrating = True
        self.playlist_ready = False
        cursor = 0

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(channels):
                channel = channels[cursor]
                cursor += 1
                results[channel.id] = await self._hydrate_one(channel)

        pool_size = max(1, min(self.hydration_concurrency, len(channels)))
        logger.info(f"Hydrating {len(channels)} channel(s) with {pool_size} worker(s)")
        try:
            await asyncio.gather(*(worker() for _ in range(pool_size)))
        finally:
            self.hydrating = False
            self.playlist_ready = True

        resolved = sum(1 for ok in results.values() if ok)
        logger.info(f"Hydration complete: {resolved}/{len(channels)} resolved")
        return results

    # ---- operator selection ----

    def _switch_embed(self, channel: Channel, embed_url: str) -> None:
        channel.embed_url = embed_url
        channel.selected_source = embed_url
        channel.reset_stream()
        channel.request_headers = default_stream_headers(embed_url, self.user_agent)
        self.playlist_ready = False

    def select_source(self, channel_id: str, embed_url: str) -> Optional[Channel]:
        """Point a channel at another embed; resolved on next hydration or access."""
        channel = self.channels.get(channel_id)
        if channel is None:
            return None
        self._switch_embed(channel, embed_url)
        logger.info(f"Updated source for {channel_id}: {embed_url}")
        return channel

    async def select_quality(self, channel_id: str, embed_url: str) -> Optional[Channel]:
        """Point a channel at another embed and re-resolve it immediately."""
        channel = self.channels.get(channel_id)
        if channel is None:
            return None
        self._switch_embed(channel, embed_url)
        logger.info(f"Updated quality for {channel_id}: {embed_url}")
        try:
            await self.resolve_channel(channel_id)
        except Exception as e:
            logger.warning(f"Failed to resolve new quality for {channel_id}: {e}")
        return channel

    # ---- upstream access ----

    def build_stream_headers(self, channel: Channel) -> dict[str, str]:
        headers = {
            **default_stream_headers(channel.embed_url, self.user_agent),
            **channel.request_headers,
        }
        if channel.embed_url:
            headers.setdefault("Referer", channel.embed_url)
            origin = embed_origin(channel.embed_url)
            if origin:
                headers.setdefault("Origin", origin)
        if channel.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in channel.cookies.items())
        return headers

    def _set_cookie(self, channel: Channel, name: str, value: str) -> None:
        # Re-setting a cookie moves it to the newest position
        channel.cookies.pop(name, None)
        channel.cookies[name] = value
        while len(channel.cookies) > self.max_cookies:
            oldest = next(iter(channel.cookies))
            del channel.cookies[oldest]

    def merge_cookies(self, channel: Channel, set_cookie_headers: Iterable[str]) -> None:
        """Fold Set-Cookie headers into the channel's bounded cookie set."""
        for header in set_cookie_headers:
            parsed = parse_set_cookie(header)
            if parsed:
                self._set_cookie(channel, *parsed)

    async def fetch_stream(self, channel: Channel, target_url: str) -> UpstreamResponse:
        """
        Fetch an upstream resource with the channel's headers and cookies.

        Raises:
            UpstreamFetchFailed: On transport errors or an error status
        """
        response = await fetch_stream(
            target_url,
            self.build_stream_headers(channel),
            channel_id=channel.id,
            timeout=self.proxy_timeout,
            transport=self.transport,
        )
        if response.set_cookies:
            self.merge_cookies(channel, response.set_cookies)
        return response

    # ---- settings ----

    def apply_settings(
        self,
        categories: Optional[list[str]] = None,
        lifetime_hours: Optional[int] = None,
    ) -> None:
        if categories is not None:
            self.categories = list(categories)
        if lifetime_hours is not None:
            self.lifetime_hours = lifetime_hours

    def get_state(self) -> dict[str, Any]:
        return {
            "channels": [c.to_dict() for c in self.channels.values()],
            "playlist_ready": self.playlist_ready,
            "hydrating": self.hydrating,
        }


def get_channel_registry() -> ChannelRegistry:
    """Get the global channel registry, building it from config on first use."""
    global _registry
    if _registry is None:
        from embedtv.config import get_config

        _registry = ChannelRegistry.from_config(get_config())
    return _registry


def init_channel_registry(registry: ChannelRegistry) -> ChannelRegistry:
    """Install a registry as the global instance."""
    global _registry
    _registry = registry
    return registry
