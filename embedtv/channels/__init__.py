"""Channel registry, event scraping and playlist/EPG output."""

from embedtv.channels.models import (
    Channel,
    Event,
    Programme,
    ReconcileResult,
    SourceOption,
    stable_channel_id,
)
from embedtv.channels.registry import (
    ChannelRegistry,
    get_channel_registry,
    init_channel_registry,
)

__all__ = [
    "Channel",
    "ChannelRegistry",
    "Event",
    "Programme",
    "ReconcileResult",
    "SourceOption",
    "get_channel_registry",
    "init_channel_registry",
    "stable_channel_id",
]
