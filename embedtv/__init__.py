"""
EmbedTV - Live Event Restreaming for IPTV Players

Turns live-event video embeds into per-channel HLS outputs:
- Stable channel identity across rebuilds
- Stream discovery via network sniffing and player inspection
- Managed FFmpeg processes with health and resource limits
- Browser capture fallback piped into FFmpeg
- M3U playlist and XMLTV guide for IPTV clients
"""

__version__ = "1.0.0"
__author__ = "EmbedTV Contributors"
__license__ = "MIT"

from embedtv.config import get_config, load_config

__all__ = [
    "__version__",
    "get_config",
    "load_config",
]
