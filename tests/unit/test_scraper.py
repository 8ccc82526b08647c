"""
Unit tests for front-page and embed-page scraping.
"""

from datetime import datetime, timezone

import httpx
import pytest

from embedtv.channels.models import SourceOption
from embedtv.channels.scraper import (
    SCRAPER_USER_AGENT,
    parse_embed_page,
    parse_front_page,
    scrape_front_page,
)

EMBED_PAGE = """
<html><body>
  <iframe id="streamIframe" src="/player/lakers"></iframe>
  <select id="sourceSelect">
    <option value="/embed/lakers-celtics">Main</option>
    <option value="https://mirror.test/embed/lakers-celtics">Backup</option>
  </select>
</body></html>
"""


@pytest.mark.unit
class TestParseFrontPage:
    """Tests for parse_front_page."""

    def test_events_from_containers(self, front_page_html: str):
        events = parse_front_page(front_page_html, "https://events.test")

        assert [e.title for e in events] == ["Arsenal vs Chelsea", "Lakers vs Celtics"]
        arsenal, lakers = events
        assert arsenal.category == "football"
        assert arsenal.embed_url == "https://events.test/embed/arsenal-chelsea"
        assert arsenal.source_options == (
            SourceOption("Source 1", "https://events.test/embed/arsenal-chelsea"),
            SourceOption("Source 2", "https://mirror.test/embed/arsenal-chelsea"),
        )
        assert arsenal.quality_options == (
            SourceOption("HD", "https://events.test/embed/arsenal-chelsea?q=hd"),
        )
        assert arsenal.start_time == datetime(2026, 3, 14, 19, 30, tzinfo=timezone.utc)
        assert lakers.category == "basketball"
        assert lakers.source_options == ()
        assert lakers.start_time is None

    def test_bare_iframes(self):
        html = """
        <p>Tonight</p>
        <iframe src="https://embeds.test/embed/one" title="Match One"></iframe>
        <iframe src="https://embeds.test/embed/two" data-category="Tennis"></iframe>
        <iframe src="https://embeds.test/embed/one"></iframe>
        """

        events = parse_front_page(html)

        assert [(e.title, e.category) for e in events] == [
            ("Match One", "general"),
            ("Event 2", "tennis"),
        ]

    def test_untitled_container(self):
        html = '<div class="event"><iframe id="streamPlayer" src="https://embeds.test/embed/x"></iframe></div>'

        events = parse_front_page(html)

        assert events[0].title == "Event 1"
        assert events[0].category == "general"

    def test_data_start_attribute(self):
        html = (
            '<article data-category="Rugby" data-start="2026-03-15T14:00:00+00:00">'
            "<h2>Wales vs England</h2>"
            '<iframe src="https://embeds.test/embed/wales"></iframe></article>'
        )

        event = parse_front_page(html)[0]

        assert event.category == "rugby"
        assert event.start_time == datetime(2026, 3, 15, 14, 0, tzinfo=timezone.utc)

    def test_bad_start_time_ignored(self):
        html = (
            '<div class="event"><time datetime="kick-off soon">soon</time>'
            '<iframe id="streamPlayer" src="https://embeds.test/embed/x"></iframe></div>'
        )

        assert parse_front_page(html)[0].start_time is None

    def test_nothing_found(self):
        assert parse_front_page("<html><body><p>No events today</p></body></html>") == []


@pytest.mark.unit
class TestParseEmbedPage:
    """Tests for parse_embed_page."""

    def test_stream_iframe_and_options(self):
        embed = parse_embed_page(EMBED_PAGE, "https://embeds.test/embed/lakers-celtics")

        assert embed["stream_url"] == "https://embeds.test/player/lakers"
        assert [o.label for o in embed["source_options"]] == ["Main", "Backup"]
        assert embed["quality_options"] == ()

    def test_no_iframe(self):
        assert parse_embed_page("<html></html>")["stream_url"] is None


@pytest.mark.unit
class TestScrapeFrontPage:
    """Tests for scrape_front_page."""

    @pytest.mark.asyncio
    async def test_fetches_and_parses(self, front_page_html: str):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), request.headers.get("user-agent")))
            return httpx.Response(200, text=front_page_html)

        events = await scrape_front_page("https://events.test/", transport=httpx.MockTransport(handler))

        assert len(events) == 2
        assert seen == [("https://events.test/", SCRAPER_USER_AGENT)]

    @pytest.mark.asyncio
    async def test_expand_embeds_fills_missing_options(self, front_page_html: str):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            if request.url.host == "events.test":
                return httpx.Response(200, text=front_page_html)
            return httpx.Response(200, text=EMBED_PAGE)

        events = await scrape_front_page(
            "https://events.test/",
            expand_embeds=True,
            transport=httpx.MockTransport(handler),
        )

        arsenal, lakers = events
        assert requested == ["https://events.test/", "https://embeds.test/embed/lakers-celtics"]
        assert len(arsenal.source_options) == 2
        assert [o.embed_url for o in lakers.source_options] == [
            "https://embeds.test/embed/lakers-celtics",
            "https://mirror.test/embed/lakers-celtics",
        ]

    @pytest.mark.asyncio
    async def test_embed_fetch_failure_keeps_event(self, front_page_html: str):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "events.test":
                return httpx.Response(200, text=front_page_html)
            return httpx.Response(403)

        events = await scrape_front_page(
            "https://events.test/",
            expand_embeds=True,
            transport=httpx.MockTransport(handler),
        )

        assert events[1].source_options == ()

    @pytest.mark.asyncio
    async def test_front_page_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))

        with pytest.raises(httpx.HTTPStatusError):
            await scrape_front_page("https://events.test/", transport=transport)
