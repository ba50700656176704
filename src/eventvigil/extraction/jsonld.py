from __future__ import annotations

import json
import logging
import re
from typing import Any

from bs4 import BeautifulSoup

from ..utils import log_event

logger = logging.getLogger("eventvigil.extraction.jsonld")

VALID_EVENT_TYPES = frozenset(
    {
        "Event",
        "SportsEvent",
        "MusicEvent",
        "Festival",
        "TheaterEvent",
        "DanceEvent",
        "ComedyEvent",
        "ExhibitionEvent",
        "SocialEvent",
        "BusinessEvent",
        "EducationEvent",
        "FoodEvent",
        "ScreeningEvent",
        "ChildrensEvent",
        "LiteraryEvent",
        "VisualArtsEvent",
    }
)

_ISO_DATETIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2}))?")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_MAX_DEPTH = 8


def extract_jsonld_events(html: str | None) -> list[dict[str, Any]]:
    if not html or "ld+json" not in html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    events: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": re.compile(r"ld\+json", re.I)}):
        content = script.string or script.get_text()
        if not content or not content.strip():
            continue
        data = load_jsonld(content)
        if data is None:
            log_event(logger, logging.DEBUG, "jsonld_unparseable", size=len(content))
            continue
        for item in _walk(data, 0):
            event = parse_event_object(item)
            if event:
                events.append(event)
    return events


def load_jsonld(content: str) -> Any:
    content = content.strip()
    # Some CMSes wrap the block in HTML comments or CDATA.
    content = re.sub(r"^<!--|-->$", "", content).strip()
    content = re.sub(r"^/\*<!\[CDATA\[\*/|/\*\]\]>\*/$", "", content).strip()
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass
    repaired = _TRAILING_COMMA.sub(r"\1", content)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(repaired.replace("'", '"'))
    except json.JSONDecodeError:
        return None


def _walk(data: Any, depth: int):
    if depth > _MAX_DEPTH:
        return
    if isinstance(data, list):
        for item in data:
            yield from _walk(item, depth + 1)
        return
    if not isinstance(data, dict):
        return
    if _is_event(data):
        yield data
    for key in ("@graph", "itemListElement", "item", "subEvent", "event", "events", "mainEntity"):
        nested = data.get(key)
        if nested is not None:
            yield from _walk(nested, depth + 1)


def _is_event(item: dict[str, Any]) -> bool:
    types = item.get("@type")
    if not types:
        return False
    if not isinstance(types, list):
        types = [types]
    return any(str(value).split("/")[-1] in VALID_EVENT_TYPES for value in types)


def schema_type(item: dict[str, Any]) -> str:
    types = item.get("@type")
    if isinstance(types, list):
        for value in types:
            name = str(value).split("/")[-1]
            if name in VALID_EVENT_TYPES and name != "Event":
                return name
        return str(types[0]).split("/")[-1] if types else "Event"
    return str(types or "Event").split("/")[-1]


def parse_event_object(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, dict) or not _is_event(item):
        return None
    title = _text(item.get("name")) or _text(item.get("headline"))
    if not title:
        return None
    start = _parse_datetime(_text(item.get("startDate")))
    if not start:
        return None
    end = _parse_datetime(_text(item.get("endDate")))

    venue_name, venue_address, lat, lng = _location(item.get("location"))
    price, ticket_url = _offers(item.get("offers"))
    if item.get("isAccessibleForFree") is True:
        price = "Gratis"
    return {
        "title": title,
        "description": _text(item.get("description")) or None,
        "event_date": start[0],
        "event_time": start[1],
        "end_date": end[0] if end else None,
        "end_time": end[1] if end else None,
        "venue_name": venue_name,
        "venue_address": venue_address,
        "lat": lat,
        "lng": lng,
        "image_url": _image(item.get("image")),
        "price": price,
        "ticket_url": ticket_url,
        "organizer": _named(item.get("organizer")),
        "performer": _named(item.get("performer")),
        "event_status": _status(item.get("eventStatus")),
        "url": _text(item.get("url")) or None,
        "schema_type": schema_type(item),
    }


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list) and value:
        return _text(value[0])
    if isinstance(value, dict):
        return str(value.get("@value") or value.get("name") or value.get("text") or "").strip()
    return ""


def _parse_datetime(value: str) -> tuple[str, str | None] | None:
    if not value:
        return None
    match = _ISO_DATETIME.match(value)
    if not match:
        return None
    day = f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
    time_value = f"{match.group(4)}:{match.group(5)}" if match.group(4) else None
    return day, time_value


def _location(location: Any) -> tuple[str | None, str | None, float | None, float | None]:
    if isinstance(location, list):
        location = location[0] if location else None
    if isinstance(location, str):
        return location.strip() or None, None, None, None
    if not isinstance(location, dict):
        return None, None, None, None
    name = _text(location.get("name")) or None
    address = location.get("address")
    venue_address: str | None = None
    if isinstance(address, str):
        venue_address = address.strip() or None
    elif isinstance(address, dict):
        parts = [
            _text(address.get("streetAddress")),
            _text(address.get("postalCode")),
            _text(address.get("addressLocality")),
            _text(address.get("addressCountry")),
        ]
        venue_address = ", ".join(part for part in parts if part) or None
    lat, lng = _geo(location.get("geo"))
    return name or venue_address, venue_address, lat, lng


def _geo(geo: Any) -> tuple[float | None, float | None]:
    if not isinstance(geo, dict):
        return None, None
    try:
        lat = float(geo.get("latitude"))
        lng = float(geo.get("longitude"))
    except (TypeError, ValueError):
        return None, None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None, None
    return lat, lng


def _offers(offers: Any) -> tuple[str | None, str | None]:
    if offers is None:
        return None, None
    if not isinstance(offers, list):
        offers = [offers]
    low: float | None = None
    high: float | None = None
    currency = "EUR"
    ticket_url: str | None = None
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        for key in ("price", "lowPrice", "highPrice"):
            amount = _amount(offer.get(key))
            if amount is None:
                continue
            low = amount if low is None else min(low, amount)
            high = amount if high is None else max(high, amount)
        currency = _text(offer.get("priceCurrency")) or currency
        ticket_url = ticket_url or (_text(offer.get("url")) or None)
    if low is None:
        return None, ticket_url
    symbol = "€" if currency == "EUR" else f"{currency} "
    if low == 0 and (high is None or high == 0):
        return "Gratis", ticket_url
    if high is not None and high != low:
        return f"{symbol}{low:.2f} - {symbol}{high:.2f}", ticket_url
    return f"{symbol}{low:.2f}", ticket_url


def _amount(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^0-9.,]", "", str(value)).replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def _image(image: Any) -> str | None:
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, str):
        return image.strip() or None
    if isinstance(image, dict):
        return _text(image.get("url")) or _text(image.get("contentUrl")) or None
    return None


def _named(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        return _text(value.get("name")) or None
    return None


def _status(value: Any) -> str | None:
    status = _text(value).lower()
    if not status:
        return None
    for name in ("cancelled", "postponed", "rescheduled", "movedonline"):
        if name in status:
            return name
    return "scheduled"
