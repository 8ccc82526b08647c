"""
Front-page scraping.

Turns the events site's HTML into Event objects: one per container that
holds a stream iframe, with its title, category and alternate embeds.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag
from dateutil import parser as date_parser

from embedtv.channels.models import Event, SourceOption

logger = logging.getLogger(__name__)

SCRAPER_USER_AGENT = "embedtv/1.0"

CONTAINER_SELECTOR = "[data-category], .event, article, li"
PLAYER_IFRAME_SELECTOR = 'iframe#streamPlayer, iframe[id*="streamPlayer"], iframe[src*="embed"]'
TITLE_SELECTOR = "h1, h2, h3, .title, .event-title"
SOURCE_OPTION_SELECTOR = '#sourceSelect option, select[name*="source"] option'
QUALITY_OPTION_SELECTOR = '#qualitySelect option, select[name*="quality"] option'
EMBED_IFRAME_SELECTOR = 'iframe#streamIframe, iframe[id*="streamIframe"]'
DEFAULT_CATEGORY = "general"


def _absolute(url: str, base_url: Optional[str]) -> str:
    return urljoin(base_url, url) if base_url else url


def _options(element: Tag, selector: str, base_url: Optional[str] = None) -> tuple[SourceOption, ...]:
    options = []
    for option in element.select(selector):
        value = (option.get("value") or "").strip()
        if not value:
            continue
        label = option.get_text(strip=True) or value
        options.append(SourceOption(label=label, embed_url=_absolute(value, base_url)))
    return tuple(options)


def _category(element: Tag) -> str:
    category = element.get("data-category")
    if not category:
        nested = element.select_one("[data-category]")
        category = nested.get("data-category") if nested else None
    return (category or DEFAULT_CATEGORY).strip().lower() or DEFAULT_CATEGORY


def _start_time(element: Tag) -> Optional[datetime]:
    raw = element.get("data-start")
    if not raw:
        time_tag = element.select_one("time[datetime]")
        raw = time_tag.get("datetime") if time_tag else None
    if not raw:
        return None
    try:
        return date_parser.parse(raw)
    except (ValueError, OverflowError):
        logger.debug(f"Ignoring unparseable start time {raw!r}")
        return None


def parse_front_page(html: str, base_url: Optional[str] = None) -> list[Event]:
    """Extract events from the front page, one per distinct embed URL."""
    soup = BeautifulSoup(html, "html.parser")
    events: list[Event] = []
    seen: set[str] = set()

    containers = [el for el in soup.select(CONTAINER_SELECTOR) if el.select_one(PLAYER_IFRAME_SELECTOR)]

    for index, element in enumerate(containers):
        iframe = element.select_one(PLAYER_IFRAME_SELECTOR)
        src = (iframe.get("src") or "").strip()
        if not src:
            continue
        embed_url = _absolute(src, base_url)
        if embed_url in seen:
            continue
        seen.add(embed_url)

        heading = element.select_one(TITLE_SELECTOR)
        title = heading.get_text(strip=True) if heading else ""

        events.append(
            Event(
                title=title or f"Event {index + 1}",
                category=_category(element),
                embed_url=embed_url,
                source_options=_options(element, SOURCE_OPTION_SELECTOR, base_url),
                quality_options=_options(element, QUALITY_OPTION_SELECTOR, base_url),
                start_time=_start_time(element),
            )
        )

    if events:
        return events

    # No containers: every bare player iframe is an event
    for index, iframe in enumerate(soup.select(PLAYER_IFRAME_SELECTOR)):
        src = (iframe.get("src") or "").strip()
        if not src:
            continue
        embed_url = _absolute(src, base_url)
        if embed_url in seen:
            continue
        seen.add(embed_url)
        events.append(
            Event(
                title=(iframe.get("title") or "").strip() or f"Event {index + 1}",
                category=(iframe.get("data-category") or DEFAULT_CATEGORY).strip().lower(),
                embed_url=embed_url,
            )
        )

    return events


def parse_embed_page(html: str, base_url: Optional[str] = None) -> dict[str, Any]:
    """Inner stream iframe and option lists of an embed page."""
    soup = BeautifulSoup(html, "html.parser")
    iframe = soup.select_one(EMBED_IFRAME_SELECTOR)
    src = (iframe.get("src") or "").strip() if iframe else ""
    return {
        "stream_url": _absolute(src, base_url) if src else None,
        "source_options": _options(soup, SOURCE_OPTION_SELECTOR, base_url),
        "quality_options": _options(soup, QUALITY_OPTION_SELECTOR, base_url),
    }


async def fetch_html(
    client: httpx.AsyncClient,
    url: str,
) -> str:
    response = await client.get(url)
    response.raise_for_status()
    return response.text


async def _expand_options(client: httpx.AsyncClient, event: Event) -> Event:
    """Fill in options from the embed page when the front page had none."""
    try:
        html = await fetch_html(client, event.embed_url)
    except httpx.HTTPError as e:
        logger.debug(f"Could not fetch embed page {event.embed_url}: {e}")
        return event

    embed = parse_embed_page(html, event.embed_url)
    return Event(
        title=event.title,
        category=event.category,
        embed_url=event.embed_url,
        source_options=event.source_options or embed["source_options"],
        quality_options=event.quality_options or embed["quality_options"],
        start_time=event.start_time,
    )


async def scrape_front_page(
    url: str,
    timeout: float = 20.0,
    expand_embeds: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[Event]:
    """
    Fetch and parse the events front page.

    Raises:
        httpx.HTTPError: If the front page cannot be fetched
    """
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": SCRAPER_USER_AGENT},
        transport=transport,
    ) as client:
        html = await fetch_html(client, url)
        events = parse_front_page(html, base_url=url)

        if expand_embeds:
            expanded = []
            for event in events:
                if event.source_options or event.quality_options:
                    expanded.append(event)
                else:
                    expanded.append(await _expand_options(client, event))
            events = expanded

    logger.info(f"Scraped {len(events)} event(s) from {url}")
    return events
