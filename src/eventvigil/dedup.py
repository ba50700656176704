from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .config import Config, default_config
from .geocode import Geocoder, resolve_coordinates
from .models import EventRecord, ExtractionResult, Source, StagingRecord
from .normalize import (
    classify_category,
    clean_whitespace,
    completeness,
    compute_fingerprint,
    extract_time,
    parse_event_date,
    to_utc,
)
from .utils import log_event, utc_now_iso

logger = logging.getLogger("eventvigil.dedup")

_EVENT_COLUMNS = """
    id, source_id, source_url, fingerprint, title, description, category, venue_name,
    venue_address, starts_at, ends_at, event_date, event_time, lat, lng, image_url,
    ticket_url, price, organizer, parsing_method, extraction_incomplete, completeness,
    first_seen_at, last_seen_at, event_url
"""


@dataclass(frozen=True)
class PersistOutcome:
    event_id: int
    inserted: bool


def build_event_record(
    record: StagingRecord,
    source: Source | None,
    result: ExtractionResult,
    *,
    config: Config | None = None,
    geocoder: Geocoder | None = None,
) -> EventRecord:
    config = config or default_config()
    fields = result.fields
    title = clean_whitespace(str(fields.get("title") or "")) or ""
    description = clean_whitespace(_str_or_none(fields.get("description")))
    venue_name = clean_whitespace(_str_or_none(fields.get("venue_name")))
    event_date = _valid_date(fields.get("event_date"))
    event_time = _valid_time(fields.get("event_time"))
    tz_name = config.app.timezone

    starts_at = to_utc(event_date, event_time, tz_name) if event_date else None
    ends_at = None
    end_date = _valid_date(fields.get("end_date")) or event_date
    end_time = _valid_time(fields.get("end_time"))
    if end_date and end_time:
        ends_at = to_utc(end_date, end_time, tz_name)

    hint = source.category_hint if source is not None else None
    category, confidence = classify_category(
        " ".join(part for part in (title, description or "") if part),
        hint=_str_or_none(fields.get("category")) or hint,
        schema_type=_str_or_none(fields.get("schema_type")),
        default=config.normalize.default_category,
        min_confidence=config.normalize.min_category_confidence,
    )
    lat, lng, origin = resolve_coordinates(fields, source, geocoder, config.app)
    event_url = _str_or_none(fields.get("url")) or _str_or_none(record.payload.get("detail_url"))

    score_fields = dict(fields)
    score_fields.update(
        {
            "event_date": event_date,
            "event_time": event_time,
            "ends_at": ends_at,
            "category": category,
            "lat": lat if origin in ("event", "geocoder") else None,
        }
    )
    log_event(
        logger,
        logging.DEBUG,
        "event_normalized",
        staging_id=record.id,
        category=category,
        category_confidence=round(confidence, 2),
        coordinates=origin,
    )
    return EventRecord(
        source_id=record.source_id,
        source_url=record.source_url,
        fingerprint=compute_fingerprint(title, venue_name, event_date),
        title=title,
        description=description,
        category=category,
        venue_name=venue_name,
        venue_address=clean_whitespace(_str_or_none(fields.get("venue_address"))),
        starts_at=starts_at,
        ends_at=ends_at,
        event_date=event_date,
        event_time=event_time,
        lat=lat,
        lng=lng,
        image_url=_str_or_none(fields.get("image_url")),
        ticket_url=_str_or_none(fields.get("ticket_url")),
        price=_str_or_none(fields.get("price")),
        organizer=_str_or_none(fields.get("organizer")),
        parsing_method=result.method.value,
        extraction_incomplete=result.extraction_incomplete,
        completeness=completeness(score_fields),
        event_url=event_url,
    )


def persist_event(conn: Any, source: Source | None, record: EventRecord) -> PersistOutcome:
    """Insert an event, or refresh the existing one with the same identity.

    Identity is the fingerprint or the source URL. A duplicate keeps its
    stored values and only gains fields it was missing.
    """
    if not record.title:
        raise ValueError("event title is required")
    if source is not None and source.id != record.source_id:
        raise ValueError(f"event belongs to {record.source_id}, not {source.id}")
    now = utc_now_iso()
    with conn.transaction():
        lock_clause = "FOR UPDATE" if conn.is_postgres else ""
        cursor = conn.execute(
            f"""
            SELECT id FROM events
            WHERE fingerprint = ? OR source_url = ?
            ORDER BY id ASC
            LIMIT 1
            {lock_clause}
            """,
            (record.fingerprint, record.source_url),
        )
        row = cursor.fetchone()
        if row:
            event_id = int(row[0])
            _refresh_event(conn, event_id, record, now)
            inserted = False
        else:
            event_id = _insert_event(conn, record, now)
            inserted = True
    log_event(
        logger,
        logging.INFO if inserted else logging.DEBUG,
        "event_persisted" if inserted else "event_duplicate",
        event_id=event_id,
        source_id=record.source_id,
        fingerprint=record.fingerprint[:12],
        parsing_method=record.parsing_method,
    )
    return PersistOutcome(event_id=event_id, inserted=inserted)


def _insert_event(conn: Any, record: EventRecord, now: str) -> int:
    cursor = conn.execute(
        """
        INSERT INTO events
            (source_id, source_url, fingerprint, title, description, category, venue_name,
             venue_address, starts_at, ends_at, event_date, event_time, lat, lng, image_url,
             ticket_url, price, organizer, parsing_method, extraction_incomplete, completeness,
             first_seen_at, last_seen_at, created_at, updated_at, event_url)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            record.source_id,
            record.source_url,
            record.fingerprint,
            record.title,
            record.description,
            record.category,
            record.venue_name,
            record.venue_address,
            record.starts_at,
            record.ends_at,
            record.event_date,
            record.event_time,
            record.lat,
            record.lng,
            record.image_url,
            record.ticket_url,
            record.price,
            record.organizer,
            record.parsing_method,
            1 if record.extraction_incomplete else 0,
            record.completeness,
            now,
            now,
            now,
            now,
            record.event_url,
        ),
    )
    return int(cursor.fetchall()[0][0])


def _refresh_event(conn: Any, event_id: int, record: EventRecord, now: str) -> None:
    # A complete extraction clears the incomplete flag; a partial one never sets it.
    conn.execute(
        """
        UPDATE events
        SET description = COALESCE(description, ?),
            venue_name = COALESCE(venue_name, ?),
            venue_address = COALESCE(venue_address, ?),
            starts_at = COALESCE(starts_at, ?),
            ends_at = COALESCE(ends_at, ?),
            event_date = COALESCE(event_date, ?),
            event_time = COALESCE(event_time, ?),
            image_url = COALESCE(image_url, ?),
            ticket_url = COALESCE(ticket_url, ?),
            price = COALESCE(price, ?),
            organizer = COALESCE(organizer, ?),
            event_url = COALESCE(event_url, ?),
            extraction_incomplete = CASE WHEN ? = 0 THEN 0 ELSE extraction_incomplete END,
            completeness = CASE WHEN completeness < ? THEN ? ELSE completeness END,
            last_seen_at = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            record.description,
            record.venue_name,
            record.venue_address,
            record.starts_at,
            record.ends_at,
            record.event_date,
            record.event_time,
            record.image_url,
            record.ticket_url,
            record.price,
            record.organizer,
            record.event_url,
            1 if record.extraction_incomplete else 0,
            record.completeness,
            record.completeness,
            now,
            now,
            event_id,
        ),
    )


def get_event(conn: Any, event_id: int) -> dict[str, object] | None:
    cursor = conn.execute(f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row)


def list_events(conn: Any, source_id: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    if source_id:
        cursor = conn.execute(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE source_id = ?
            ORDER BY event_date DESC, id DESC
            LIMIT ?
            """,
            (source_id, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY event_date DESC, id DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_dict(row) for row in cursor.fetchall()]


def count_events(conn: Any) -> int:
    cursor = conn.execute("SELECT COUNT(*) FROM events")
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def _row_to_dict(row: tuple) -> dict[str, object]:
    keys = [key.strip() for key in _EVENT_COLUMNS.replace("\n", " ").split(",")]
    item = dict(zip(keys, row))
    item["extraction_incomplete"] = bool(item["extraction_incomplete"])
    return item


def _valid_date(value: Any) -> str | None:
    if not value:
        return None
    return parse_event_date(str(value))


def _valid_time(value: Any) -> str | None:
    if not value:
        return None
    return extract_time(str(value))


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
