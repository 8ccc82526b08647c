"""
Stream detection for embed pages.

Two phases:
1. NetworkSniffer watches the page's outgoing requests and scores media
   URLs, resolving early on a manifest-class hit.
2. PlayerInspector (optional fallback) evaluates one adapter per known
   player library inside the page and takes the first usable answer.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from embedtv.streaming.errors import DetectionTimeout, NoStreamDetected

logger = logging.getLogger(__name__)


class StreamType(str, Enum):
    """Media delivery formats."""

    HLS = "hls"
    DASH = "dash"
    PROGRESSIVE = "progressive"


@dataclass
class StreamCandidate:
    """A media URL seen during one detection attempt."""

    url: str
    type: StreamType
    priority: int
    timestamp: float = field(default_factory=time.monotonic)
    resource_type: Optional[str] = None


@dataclass
class DetectedStream:
    """Result of a successful detection."""

    url: str
    type: StreamType
    player: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url, "type": self.type.value}
        if self.player:
            data["player"] = self.player
        return data


# Ordered; the first matching pattern classifies a URL
CANDIDATE_PATTERNS: list[tuple[re.Pattern, StreamType, int]] = [
    (re.compile(r"playlist\.m3u8", re.IGNORECASE), StreamType.HLS, 11),
    (re.compile(r"master\.m3u8", re.IGNORECASE), StreamType.HLS, 11),
    (re.compile(r"index\.m3u8", re.IGNORECASE), StreamType.HLS, 10),
    (re.compile(r"\.m3u8(\?|$)", re.IGNORECASE), StreamType.HLS, 10),
    (re.compile(r"chunklist.*\.m3u8", re.IGNORECASE), StreamType.HLS, 8),
    (re.compile(r"manifest\.mpd", re.IGNORECASE), StreamType.DASH, 10),
    (re.compile(r"\.mpd(\?|$)", re.IGNORECASE), StreamType.DASH, 9),
    (re.compile(r"\.mp4(\?|$)", re.IGNORECASE), StreamType.PROGRESSIVE, 3),
]

SEGMENT_RE = re.compile(r"\.ts(\?|$)", re.IGNORECASE)

# Minimum priority that resolves the sniffer without waiting for the timeout
IMMEDIATE_PRIORITY = {StreamType.HLS: 10, StreamType.DASH: 9}


def classify_url(url: str) -> Optional[tuple[StreamType, int]]:
    """Return (type, priority) for a media-looking URL, or None."""
    if SEGMENT_RE.search(url):
        return None
    for pattern, stream_type, priority in CANDIDATE_PATTERNS:
        if pattern.search(url):
            return stream_type, priority
    return None


def _short(url: str, limit: int = 100) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


class NetworkSniffer:
    """Collects stream candidates from a page's request events."""

    def __init__(self):
        self.candidates: dict[str, StreamCandidate] = {}

    def reset(self) -> None:
        self.candidates.clear()

    def observe(self, url: str, resource_type: Optional[str] = None) -> Optional[DetectedStream]:
        """
        Record a request URL.

        Returns a DetectedStream when the URL is good enough to stop
        sniffing immediately.
        """
        classified = classify_url(url)
        if classified is None:
            return None

        stream_type, priority = classified
        self.candidates[url] = StreamCandidate(
            url=url,
            type=stream_type,
            priority=priority,
            resource_type=resource_type,
        )
        logger.debug(f"Stream candidate ({stream_type.value}, p{priority}): {_short(url)}")

        threshold = IMMEDIATE_PRIORITY.get(stream_type)
        if threshold is not None and priority >= threshold:
            logger.info(f"High-priority {stream_type.value} stream detected: {_short(url)}")
            return DetectedStream(url=url, type=stream_type)
        return None

    def select_best(self) -> Optional[DetectedStream]:
        """Best candidate: highest priority adaptive stream, else earliest progressive."""
        adaptive = [c for c in self.candidates.values() if c.type != StreamType.PROGRESSIVE]
        if adaptive:
            best = sorted(adaptive, key=lambda c: (-c.priority, c.timestamp))[0]
            logger.info(
                f"Selected {best.type.value} candidate (p{best.priority}) "
                f"out of {len(self.candidates)}: {_short(best.url)}"
            )
            return DetectedStream(url=best.url, type=best.type)

        progressive = sorted(self.candidates.values(), key=lambda c: c.timestamp)
        if progressive:
            best = progressive[0]
            logger.debug(f"Selected progressive fallback: {_short(best.url)}")
            return DetectedStream(url=best.url, type=best.type)

        return None

    async def sniff(self, page: Any, timeout: float = 15.0) -> DetectedStream:
        """
        Watch page requests for up to `timeout` seconds.

        Raises:
            DetectionTimeout: If no candidate was seen at all
        """
        self.reset()
        found: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_request(request: Any) -> None:
            if found.done():
                return
            try:
                result = self.observe(request.url, getattr(request, "resource_type", None))
            except Exception as e:
                logger.debug(f"Error handling request event: {e}")
                return
            if result is not None:
                found.set_result(result)

        page.on("request", on_request)
        try:
            return await asyncio.wait_for(found, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(
                f"Network sniffing timed out with {len(self.candidates)} candidate(s)"
            )
            best = self.select_best()
            if best is None:
                raise DetectionTimeout("No stream detected via network sniffing")
            return best
        finally:
            page.remove_listener("request", on_request)


_INFER_TYPE_JS = """
  function inferType(url, mime) {
    if (!url) return null;
    const u = String(url).toLowerCase();
    const m = (mime || '').toLowerCase();
    if (u.includes('.m3u8') || m.includes('mpegurl') || m.includes('m3u8')) return 'hls';
    if (u.includes('.mpd') || m.includes('dash')) return 'dash';
    return 'progressive';
  }
  function candidate(url, mime) {
    if (!url || typeof url !== 'string') return null;
    return { url: url, type: inferType(url, mime) };
  }
  function pick(list) {
    return list.find((c) => c && c.type !== 'progressive') || list.find(Boolean) || null;
  }
"""


def _adapter_script(body: str) -> str:
    return "() => {" + _INFER_TYPE_JS + "  try {" + body + "  } catch (e) { return null; }\n}"


_JWPLAYER_JS = """
    if (typeof window.jwplayer !== 'function') return null;
    const selector = '.jwplayer, [id^="jwplayer"], [id^="vplayer"]';
    let player = null;
    try { player = window.jwplayer(); } catch (e) {}
    if (!player || !player.getPlaylist) {
      const elem = document.querySelector(selector + ', [class*="jwplayer"]');
      if (elem) { try { player = window.jwplayer(elem); } catch (e) {} }
    }
    if (!player) return null;
    const found = [];
    const addItem = (item) => {
      if (!item) return;
      found.push(candidate(item.file, item.type));
      (Array.isArray(item.sources) ? item.sources : []).forEach((s) => found.push(candidate(s.file, s.type)));
    };
    if (typeof player.getPlaylist === 'function') (player.getPlaylist() || []).forEach(addItem);
    if (typeof player.getPlaylistItem === 'function') { try { addItem(player.getPlaylistItem()); } catch (e) {} }
    if (typeof player.getConfig === 'function') {
      try {
        const config = player.getConfig() || {};
        (Array.isArray(config.sources) ? config.sources : []).forEach((s) => found.push(candidate(s.file, s.type)));
        found.push(candidate(config.file, config.type));
        (Array.isArray(config.playlist) ? config.playlist : []).forEach(addItem);
      } catch (e) {}
    }
    const container = document.querySelector(selector);
    const video = container && container.querySelector('video');
    if (video) found.push(candidate(video.currentSrc || video.src));
    return pick(found);
"""

_HTML5_JS = """
    const found = [];
    document.querySelectorAll('video, audio').forEach((media) => {
      found.push(candidate(media.currentSrc || media.src, media.type || media.currentType));
      media.querySelectorAll('source').forEach((s) => found.push(candidate(s.src, s.type)));
    });
    return pick(found);
"""

_VIDEOJS_JS = """
    if (typeof window.videojs === 'undefined') return null;
    const players = window.videojs.players || {};
    for (const id in players) {
      const p = players[id];
      if (p && typeof p.currentSrc === 'function') {
        const mime = typeof p.currentType === 'function' ? p.currentType() : '';
        const c = candidate(p.currentSrc(), mime);
        if (c && c.type !== 'progressive') return c;
      }
    }
    for (const elem of document.querySelectorAll('.video-js, .vjs-player, [class*="video-js"]')) {
      let c = candidate(elem.src);
      if (c && c.type !== 'progressive') return c;
      for (const s of elem.querySelectorAll('source')) {
        c = candidate(s.src, s.type);
        if (c && c.type !== 'progressive') return c;
      }
    }
    return null;
"""

_BITMOVIN_JS = """
    if (typeof window.bitmovin === 'undefined' || !window.bitmovin.player) return null;
    for (const instance of (window.bitmovin.player.instances || [])) {
      if (instance && typeof instance.getSource === 'function') {
        try {
          const source = instance.getSource();
          if (source && (source.hls || source.dash)) {
            return source.hls ? { url: source.hls, type: 'hls' } : { url: source.dash, type: 'dash' };
          }
        } catch (e) {}
      }
    }
    for (const elem of document.querySelectorAll('[class*="bitmovin"], [id*="bitmovin"]')) {
      const src = elem.getAttribute('data-source') || elem.getAttribute('data-src');
      const c = candidate(src);
      if (c && c.type !== 'progressive') return c;
    }
    return null;
"""

_CLAPPR_JS = """
    const Clappr = window.Clappr || window.clappr;
    if (!Clappr) return null;
    for (const instance of (Clappr.instances || [])) {
      if (instance && instance.options && instance.options.source) {
        const c = candidate(instance.options.source, instance.options.mimeType);
        if (c && c.type !== 'progressive') return c;
      }
    }
    for (const elem of document.querySelectorAll('[data-player], .clappr-player, [class*="clappr"]')) {
      const c = candidate(elem.getAttribute('data-source') || elem.getAttribute('data-src'));
      if (c && c.type !== 'progressive') return c;
    }
    return null;
"""

_FLOWPLAYER_JS = """
    if (typeof window.flowplayer === 'undefined') return null;
    for (const elem of document.querySelectorAll('.flowplayer, [class*="flowplayer"]')) {
      try {
        const api = window.flowplayer(elem);
        if (api && api.video) {
          const c = candidate(api.video.src || api.video.url, api.video.type);
          if (c && c.type !== 'progressive') return c;
        }
      } catch (e) {}
    }
    return null;
"""

_JPLAYER_JS = """
    const $ = window.jQuery;
    if (typeof $ === 'undefined' || typeof $.jPlayer === 'undefined') return null;
    const srcOf = (v) => (v && typeof v === 'object' && v.src) ? v.src : (typeof v === 'string' ? v : null);
    const adaptive = (src, mime) => {
      const c = candidate(srcOf(src), mime);
      return c && c.type !== 'progressive' ? c : null;
    };
    const elems = $('.jp-jplayer, [id^="jquery_jplayer"], [id*="jplayer"], .jplayer, [class*="jplayer"]');
    for (let i = 0; i < elems.length; i++) {
      const elem = elems.eq(i);
      const data = elem.data('jPlayer');
      let c = null;
      if (data && data.status) c = adaptive(data.status.src);
      if (c) return c;
      if (data && data.html && data.html.video && data.html.video.used) c = adaptive(data.html.video.used.src);
      if (c) return c;
      if (data && data.html && data.html.audio && data.html.audio.used) c = adaptive(data.html.audio.used.src);
      if (c) return c;
      const media = elem.find('video, audio');
      if (media.length > 0) {
        c = adaptive(media[0].src || media[0].currentSrc, media[0].type || media[0].currentType);
        if (c) return c;
        const sources = media.find('source');
        for (let j = 0; j < sources.length; j++) {
          c = adaptive(sources[j].src, sources[j].type);
          if (c) return c;
        }
      }
      const all = elem.data() || {};
      for (const key in all) {
        const k = key.toLowerCase();
        if (k.includes('src') || k.includes('url') || k.includes('stream')) {
          const src = srcOf(all[key]);
          if (src && (src.startsWith('http') || src.startsWith('//'))) {
            c = adaptive(src);
            if (c) return c;
          }
        }
      }
    }
    if (typeof window.jpPlayerId !== 'undefined') {
      const data = $('#' + window.jpPlayerId).data('jPlayer');
      if (data && data.status) return adaptive(data.status.src);
    }
    return null;
"""


@dataclass(frozen=True)
class PlayerAdapter:
    """Config lookup for one player library, evaluated in the page."""

    name: str
    script: str


# Registration order breaks ties; the generic HTML5 adapter runs last
PLAYER_ADAPTERS: tuple[PlayerAdapter, ...] = (
    PlayerAdapter("JWPlayer", _adapter_script(_JWPLAYER_JS)),
    PlayerAdapter("VideoJS", _adapter_script(_VIDEOJS_JS)),
    PlayerAdapter("Bitmovin", _adapter_script(_BITMOVIN_JS)),
    PlayerAdapter("Clappr", _adapter_script(_CLAPPR_JS)),
    PlayerAdapter("Flowplayer", _adapter_script(_FLOWPLAYER_JS)),
    PlayerAdapter("jPlayer", _adapter_script(_JPLAYER_JS)),
    PlayerAdapter("HTML5Video", _adapter_script(_HTML5_JS)),
)


class PlayerInspector:
    """Runs every player adapter concurrently and picks one result."""

    def __init__(self, adapters: tuple[PlayerAdapter, ...] = PLAYER_ADAPTERS):
        self.adapters = adapters

    async def _try_adapter(self, page: Any, adapter: PlayerAdapter) -> Optional[DetectedStream]:
        try:
            result = await page.evaluate(adapter.script)
        except Exception as e:
            logger.debug(f"Player adapter {adapter.name} failed: {e}")
            return None

        if not result or not isinstance(result, dict) or not result.get("url"):
            return None

        try:
            stream_type = StreamType(result.get("type") or "progressive")
        except ValueError:
            stream_type = StreamType.PROGRESSIVE

        return DetectedStream(url=result["url"], type=stream_type, player=adapter.name)

    async def inspect(self, page: Any) -> Optional[DetectedStream]:
        if not self.adapters:
            logger.warning("No player adapters configured")
            return None

        results = await asyncio.gather(
            *(self._try_adapter(page, adapter) for adapter in self.adapters)
        )
        found = [r for r in results if r is not None]

        for result in found:
            if result.type != StreamType.PROGRESSIVE:
                logger.info(f"Player detected: {result.player} ({result.type.value})")
                return result
        if found:
            logger.info(f"Player detected with progressive source: {found[0].player}")
            return found[0]

        logger.debug(f"No player config detected across {len(self.adapters)} adapters")
        return None


class StreamDetector:
    """Network sniffing first, player inspection as the fallback."""

    def __init__(
        self,
        timeout: float = 90.0,
        adapters: tuple[PlayerAdapter, ...] = PLAYER_ADAPTERS,
    ):
        self.timeout = timeout
        self.sniffer = NetworkSniffer()
        self.inspector = PlayerInspector(adapters)

    async def detect(self, page: Any, enable_config_fallback: bool = True) -> DetectedStream:
        """
        Find the media URL behind an embed page.

        Raises:
            NoStreamDetected: If both phases come up empty
        """
        logger.info(
            f"Starting stream detection (timeout={self.timeout}s, "
            f"config_fallback={enable_config_fallback})"
        )

        try:
            result = await self.sniffer.sniff(page, self.timeout)
            logger.info(f"Stream detected via network ({result.type.value}): {_short(result.url)}")
            return result
        except DetectionTimeout as e:
            logger.debug(f"Network sniffing found nothing: {e}")

        if enable_config_fallback:
            result = await self.inspector.inspect(page)
            if result:
                logger.info(
                    f"Stream detected via {result.player} config "
                    f"({result.type.value}): {_short(result.url)}"
                )
                return result

        raise NoStreamDetected("No stream detected via network or player config")


async def detect_with_retries(
    page: Any,
    detector: StreamDetector,
    max_attempts: int = 4,
    enable_config_fallback: bool = False,
    reload_backoff_ms: int = 2000,
    navigation_timeout_ms: int = 90000,
    before_wait: Optional[Callable[[Any], Awaitable[None]]] = None,
) -> DetectedStream:
    """
    Run detection in rounds, reloading the page between them.

    Sniffing starts before the reload so requests issued while the page
    loads are seen. Round n > 1 first waits reload_backoff * 2**(n-2).
    `before_wait` (usually autoplay) runs every round.
    """
    attempts = max(1, max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        detection = asyncio.create_task(
            detector.detect(page, enable_config_fallback=enable_config_fallback)
        )
        try:
            if attempt > 1:
                backoff = reload_backoff_ms * 2 ** (attempt - 2)
                logger.warning(
                    f"Retrying stream detection (attempt {attempt}/{attempts}) "
                    f"after {backoff} ms"
                )
                await asyncio.sleep(backoff / 1000)
                await page.reload(wait_until="domcontentloaded", timeout=navigation_timeout_ms)

            if before_wait is not None:
                await before_wait(page)

            return await detection
        except NoStreamDetected as e:
            last_error = e
        finally:
            if not detection.done():
                detection.cancel()
                try:
                    await detection
                except (asyncio.CancelledError, NoStreamDetected):
                    pass

    raise NoStreamDetected(
        f"No stream detected after {attempts} attempt(s)",
        original_error=last_error,
    )
