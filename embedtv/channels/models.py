"""Channel data model."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class SourceOption:
    """An alternate embed an operator can switch a channel to."""

    label: str
    embed_url: str

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "embed_url": self.embed_url}


@dataclass(frozen=True)
class Event:
    """A live event found on the front page."""

    title: str
    category: str
    embed_url: str
    source_options: tuple[SourceOption, ...] = ()
    quality_options: tuple[SourceOption, ...] = ()
    start_time: Optional[datetime] = None


def stable_channel_id(event: Event) -> str:
    """
    Content-derived channel id.

    Hashes title, start time and embed URL only, so an event keeps its id
    when other events come and go or it moves between categories.
    """
    payload = json.dumps(
        {
            "title": event.title,
            "startTime": event.start_time.isoformat() if event.start_time else None,
            "embedUrl": event.embed_url,
        },
        sort_keys=True,
    )
    return "ch-" + hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


@dataclass
class Channel:
    """One IPTV channel, owned by the ChannelRegistry."""

    id: str
    category: str
    title: str
    embed_url: str
    expires_at: datetime
    stream_mode: str = "restream"
    # What /hls/{id} serves: upstream URL (direct-proxy) or a job manifest path
    stream_url: Optional[str] = None
    # Upstream media URL found behind the embed (direct-proxy, transmux)
    source_url: Optional[str] = None
    stream_mime_type: Optional[str] = None
    request_headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)  # insertion ordered
    source_options: list[SourceOption] = field(default_factory=list)
    quality_options: list[SourceOption] = field(default_factory=list)
    selected_source: Optional[str] = None
    start_time: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def reset_stream(self) -> None:
        """Forget everything resolved from the current embed."""
        self.stream_url = None
        self.source_url = None
        self.stream_mime_type = None
        self.cookies = {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "title": self.title,
            "embed_url": self.embed_url,
            "stream_url": self.stream_url,
            "stream_mime_type": self.stream_mime_type,
            "stream_mode": self.stream_mode,
            "request_headers": self.request_headers,
            "cookies": len(self.cookies),
            "source_options": [o.to_dict() for o in self.source_options],
            "quality_options": [o.to_dict() for o in self.quality_options],
            "selected_source": self.selected_source,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class Programme:
    """One EPG entry."""

    channel_id: str
    title: str
    category: str
    start: datetime
    stop: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "title": self.title,
            "category": self.category,
            "start": self.start.isoformat(),
            "stop": self.stop.isoformat(),
        }


@dataclass
class ReconcileResult:
    """Counts from one reconcile pass."""

    total: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    removed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
        }
