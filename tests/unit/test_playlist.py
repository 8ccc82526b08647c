"""
Unit tests for M3U and XMLTV rendering.
"""

from datetime import datetime, timedelta, timezone

import pytest

from embedtv.channels.models import Channel, Programme
from embedtv.channels.playlist import (
    format_xmltv_time,
    generate_epg,
    generate_playlist,
    is_valid_timezone,
    resolve_timezone,
)

START = datetime(2026, 3, 14, 19, 30, tzinfo=timezone.utc)


def make_channel(channel_id: str, title: str, stream_url=None, category: str = "football") -> Channel:
    return Channel(
        id=channel_id,
        category=category,
        title=title,
        embed_url=f"https://embeds.test/e/{channel_id}",
        expires_at=START + timedelta(hours=24),
        stream_url=stream_url,
    )


@pytest.mark.unit
class TestPlaylist:
    """Tests for generate_playlist."""

    def test_only_resolved_channels_listed(self):
        channels = [
            make_channel("ch-a", "Arsenal vs Chelsea", stream_url="/tmp/a/index.m3u8"),
            make_channel("ch-b", "Lakers vs Celtics"),
        ]

        playlist = generate_playlist(channels, "http://127.0.0.1:3005")

        assert playlist.splitlines() == [
            "#EXTM3U",
            '#EXTINF:-1 tvg-id="ch-a" group-title="football",Arsenal vs Chelsea',
            "http://127.0.0.1:3005/hls/ch-a",
        ]

    def test_empty(self):
        assert generate_playlist([], "http://localhost") == "#EXTM3U"

    def test_id_is_url_quoted(self):
        channel = make_channel("ch 1/x", "Odd", stream_url="https://cdn.test/a.m3u8")

        playlist = generate_playlist([channel], "http://localhost")

        assert playlist.endswith("http://localhost/hls/ch%201%2Fx")

    def test_attribute_quotes_replaced(self):
        channel = make_channel("ch-a", "Quoted", stream_url="x", category='say "hi"')

        assert "group-title=\"say 'hi'\"" in generate_playlist([channel], "http://localhost")

    def test_multiline_title_stays_on_one_line(self):
        channel = make_channel("ch-a", "Arsenal vs Chelsea\r\nLIVE", stream_url="x")

        playlist = generate_playlist([channel], "http://localhost")

        assert playlist.splitlines() == [
            "#EXTM3U",
            '#EXTINF:-1 tvg-id="ch-a" group-title="football",Arsenal vs Chelsea LIVE',
            "http://localhost/hls/ch-a",
        ]


@pytest.mark.unit
class TestEpg:
    """Tests for generate_epg and timezone handling."""

    def test_channels_and_programmes(self):
        channel = make_channel("ch-a", "Tom & Jerry <Live>")
        programme = Programme("ch-a", "Tom & Jerry <Live>", "cartoons", START, START + timedelta(hours=2))

        epg = generate_epg([channel], [programme], "UTC")

        assert epg.startswith('<?xml version="1.0" encoding="UTF-8"?>\n<tv generator-info-name="EmbedTV">')
        assert '<channel id="ch-a">' in epg
        assert "<display-name>Tom &amp; Jerry &lt;Live&gt;</display-name>" in epg
        assert '<programme start="20260314193000 +0000" stop="20260314213000 +0000" channel="ch-a">' in epg
        assert "<category>cartoons</category>" in epg
        assert epg.rstrip().endswith("</tv>")

    def test_times_in_configured_zone(self):
        programme = Programme("ch-a", "Match", "football", START, START + timedelta(hours=2))

        epg = generate_epg([], [programme], "America/New_York")

        assert 'start="20260314153000 -0400"' in epg

    def test_unknown_zone_falls_back_to_utc(self):
        programme = Programme("ch-a", "Match", "football", START, START + timedelta(hours=2))

        epg = generate_epg([], [programme], "Mars/Olympus_Mons")

        assert 'start="20260314193000 +0000"' in epg

    def test_naive_times_are_utc(self):
        naive = datetime(2026, 1, 2, 3, 4, 5)

        assert format_xmltv_time(naive, resolve_timezone("UTC")) == "20260102030405 +0000"

    def test_is_valid_timezone(self):
        assert is_valid_timezone("Europe/London")
        assert not is_valid_timezone("Not/AZone")
        assert not is_valid_timezone("")
