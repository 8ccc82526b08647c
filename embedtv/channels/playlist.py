"""M3U playlist and XMLTV guide rendering."""

import logging
from datetime import datetime, tzinfo
from typing import Iterable
from urllib.parse import quote
from xml.sax.saxutils import escape as xml_escape

from dateutil import tz

from embedtv.channels.models import Channel, Programme

logger = logging.getLogger(__name__)

NOT_READY_PLAYLIST = "#EXTM3U\n# Playlist not ready. Streams are still being resolved."
XMLTV_TIME_FORMAT = "%Y%m%d%H%M%S %z"


def _xml(value) -> str:
    """Escape XML text/attribute values."""
    if value is None:
        return ""
    return xml_escape(str(value), {'"': "&quot;", "'": "&apos;"})


def _m3u_line(value: str) -> str:
    return " ".join(value.splitlines())


def _m3u_attr(value: str) -> str:
    return _m3u_line(value.replace('"', "'"))


def resolve_timezone(name: str) -> tzinfo:
    """Timezone by IANA name; unknown names fall back to UTC."""
    zone = tz.gettz(name) if name else None
    if zone is None:
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return tz.UTC
    return zone


def is_valid_timezone(name: str) -> bool:
    return bool(name) and tz.gettz(name) is not None


def format_xmltv_time(value: datetime, zone: tzinfo) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz.UTC)
    return value.astimezone(zone).strftime(XMLTV_TIME_FORMAT)


def generate_playlist(channels: Iterable[Channel], base_url: str) -> str:
    """One #EXTINF + URL pair per channel that currently has a stream."""
    lines = ["#EXTM3U"]
    for channel in channels:
        if not channel.stream_url:
            continue
        lines.append(
            f'#EXTINF:-1 tvg-id="{_m3u_attr(channel.id)}" '
            f'group-title="{_m3u_attr(channel.category)}",{_m3u_line(channel.title)}'
        )
        lines.append(f"{base_url}/hls/{quote(channel.id, safe='')}")
    return "\n".join(lines)


def generate_epg(
    channels: Iterable[Channel],
    programmes: Iterable[Programme],
    timezone_name: str = "UTC",
) -> str:
    zone = resolve_timezone(timezone_name)

    xml_content = '<?xml version="1.0" encoding="UTF-8"?>\n'
    xml_content += '<tv generator-info-name="EmbedTV">\n'

    for channel in channels:
        xml_content += f'  <channel id="{_xml(channel.id)}">\n'
        xml_content += f"    <display-name>{_xml(channel.title)}</display-name>\n"
        xml_content += "  </channel>\n"

    for programme in programmes:
        start = format_xmltv_time(programme.start, zone)
        stop = format_xmltv_time(programme.stop, zone)
        xml_content += (
            f'  <programme start="{_xml(start)}" stop="{_xml(stop)}" '
            f'channel="{_xml(programme.channel_id)}">\n'
        )
        xml_content += f"    <title>{_xml(programme.title)}</title>\n"
        xml_content += f"    <category>{_xml(programme.category)}</category>\n"
        xml_content += "  </programme>\n"

    xml_content += "</tv>\n"
    return xml_content
