from __future__ import annotations

import logging
from datetime import date
from typing import Any
from urllib.parse import urljoin, urldefrag

import feedparser
from bs4 import BeautifulSoup

from .extraction.jsonld import extract_jsonld_events
from .models import Source
from .normalize import clean_whitespace, extract_time, parse_event_date
from .utils import log_event, sha256_hex

logger = logging.getLogger("eventvigil.listing")

DEFAULT_ITEM_SELECTORS = (
    "article",
    ".event",
    ".event-item",
    ".agenda-item",
    ".activity",
    "li.event",
    ".card",
)
TITLE_SELECTORS = ("h1", "h2", "h3", "h4", "[class*=title]", "[class*=titel]")
MAX_ITEMS = 100
MAX_CARD_HTML = 8000


def split_listing(source: Source, body: str, page_url: str | None = None) -> list[dict[str, Any]]:
    """Split a fetched listing into stageable items.

    Each item is ``{"source_url": ..., "payload": {...}}``; ``source_url`` is
    the staging key, so it must be stable across fetches of the same page.
    """
    page_url = page_url or source.url
    if source.kind == "feed":
        items = _split_feed(body, page_url)
    else:
        items = _split_html(source, body, page_url)
    limit = int(source.config.get("max_items") or MAX_ITEMS)
    if len(items) > limit:
        log_event(
            logger,
            logging.INFO,
            "listing_truncated",
            source_id=source.id,
            found=len(items),
            limit=limit,
        )
        items = items[:limit]
    return items


def _split_feed(body: str, page_url: str) -> list[dict[str, Any]]:
    parsed = feedparser.parse(body)
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            url=page_url,
            error=str(parsed.bozo_exception),
        )
    items: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in parsed.entries:
        title = clean_whitespace(entry.get("title"))
        link = entry.get("link") or entry.get("id")
        if not title or not link:
            continue
        link = urldefrag(urljoin(page_url, link))[0]
        if link in seen:
            continue
        seen.add(link)
        summary = clean_whitespace(_strip_html(entry.get("summary") or entry.get("description")))
        start_raw = entry.get("ev_startdate") or entry.get("startdate") or ""
        structured = {
            "title": title,
            "description": summary,
            "event_date": parse_event_date(start_raw) or parse_event_date(summary),
            "event_time": extract_time(start_raw) or extract_time(summary),
            "venue_name": clean_whitespace(entry.get("ev_location") or entry.get("location")),
            "image_url": _feed_image(entry),
            "organizer": clean_whitespace(entry.get("ev_organizer") or entry.get("author")),
            "url": link,
        }
        items.append(
            {
                "source_url": link,
                "payload": {
                    "kind": "feed",
                    "title": title,
                    "detail_url": link,
                    "text": summary,
                    "page_url": page_url,
                    "structured": structured,
                },
            }
        )
    return items


def _feed_image(entry: Any) -> str | None:
    for key in ("media_content", "media_thumbnail"):
        media = entry.get(key) or []
        if media and media[0].get("url"):
            return media[0]["url"]
    for link in entry.get("links") or []:
        if link.get("rel") == "enclosure" and str(link.get("type", "")).startswith("image/"):
            return link.get("href")
    return None


def _split_html(source: Source, body: str, page_url: str) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    seen: set[str] = set()
    for event in extract_jsonld_events(body):
        detail_url = urljoin(page_url, event["url"]) if event.get("url") else None
        source_url = _item_key(page_url, detail_url, event["title"], event.get("event_date") or "")
        if source_url in seen:
            continue
        seen.add(source_url)
        items.append(
            {
                "source_url": source_url,
                "payload": {
                    "kind": "html",
                    "title": event["title"],
                    "detail_url": detail_url,
                    "text": event.get("description"),
                    "page_url": page_url,
                    "jsonld": [event],
                },
            }
        )

    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for card in _find_cards(soup, source):
        fields = card_fields(card, page_url)
        if not fields["title"]:
            continue
        source_url = _item_key(page_url, fields["detail_url"], fields["title"], fields["text"] or "")
        if source_url in seen:
            continue
        seen.add(source_url)
        items.append(
            {
                "source_url": source_url,
                "payload": {
                    "kind": "html",
                    "page_url": page_url,
                    "html": str(card)[:MAX_CARD_HTML],
                    **fields,
                },
            }
        )
    log_event(
        logger,
        logging.DEBUG,
        "listing_split",
        source_id=source.id,
        items=len(items),
    )
    return items


def _find_cards(soup: BeautifulSoup, source: Source) -> list[Any]:
    selectors = source.config.get("selectors") or {}
    configured = selectors.get("item") if isinstance(selectors, dict) else None
    candidates = [configured] if configured else list(DEFAULT_ITEM_SELECTORS)
    for selector in candidates:
        cards = soup.select(selector)
        if cards:
            # Nested matches (an article inside an .event) would stage twice.
            card_ids = {id(card) for card in cards}
            return [
                card
                for card in cards
                if not any(id(parent) in card_ids for parent in card.parents)
            ]
    return []


def card_fields(card: Any, page_url: str) -> dict[str, Any]:
    title = None
    for selector in TITLE_SELECTORS:
        node = card.select_one(selector)
        if node and node.get_text(strip=True):
            title = clean_whitespace(node.get_text(" ", strip=True))
            break
    link = card.find("a", href=True)
    if not title and link is not None:
        title = clean_whitespace(link.get_text(" ", strip=True))
    detail_url = None
    if link is not None:
        href = link["href"].strip()
        if href and not href.startswith(("javascript:", "mailto:", "tel:", "#")):
            detail_url = urldefrag(urljoin(page_url, href))[0]
    image = card.find("img")
    image_url = None
    if image is not None:
        src = image.get("src") or image.get("data-src")
        if src:
            image_url = urljoin(page_url, src)
    time_node = card.find("time")
    datetime_attr = time_node.get("datetime") if time_node is not None else None
    return {
        "title": title,
        "detail_url": detail_url,
        "text": clean_whitespace(card.get_text(" ", strip=True)),
        "datetime": datetime_attr,
        "image_url": image_url,
    }


def heuristic_fields(payload: dict[str, Any], today: date | None = None) -> dict[str, Any]:
    title = clean_whitespace(payload.get("title"))
    text = payload.get("text") or ""
    if not title and payload.get("html"):
        soup = BeautifulSoup(payload["html"], "html.parser")
        fields = card_fields(soup, payload.get("page_url") or "")
        title = fields["title"]
        text = text or fields["text"] or ""
    date_source = payload.get("datetime") or text
    return {
        "title": title,
        "description": clean_whitespace(text),
        "event_date": parse_event_date(date_source, today) or parse_event_date(text, today),
        "event_time": extract_time(payload.get("datetime") or "") or extract_time(text),
        "image_url": payload.get("image_url"),
        "url": payload.get("detail_url"),
    }


def _item_key(page_url: str, detail_url: str | None, title: str, extra: str) -> str:
    if detail_url and urldefrag(detail_url)[0] != urldefrag(page_url)[0]:
        return detail_url
    return f"{urldefrag(page_url)[0]}#item-{sha256_hex(title + '|' + extra)[:16]}"


def _strip_html(value: str | None) -> str | None:
    if not value:
        return None
    if "<" not in value:
        return value
    return BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
