"""Cheapest-first extraction for one staged item.

Order: trusted structured payload, JSON-LD in the staged HTML, JSON-LD on
the detail page, the AI parser, and finally a partial record built from the
card heuristics. Only an item without any recoverable title fails.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import date
from typing import Any, Callable

from bs4 import BeautifulSoup

from .. import circuit_breaker, rate_limiter
from ..config import Config, default_config
from ..fetch import Fetcher, fetch_url, source_headers
from ..listing import heuristic_fields
from ..models import CircuitState, ExtractionResult, ParsingMethod, Source, StagingRecord
from ..utils import log_event
from .ai_parser import AIParserError, AIParserUnavailable
from .jsonld import extract_jsonld_events

logger = logging.getLogger("eventvigil.extraction.waterfall")


class ExtractionError(RuntimeError):
    pass


def run_waterfall(
    record: StagingRecord,
    source: Source | None,
    *,
    conn: Any = None,
    config: Config | None = None,
    fetcher: Fetcher = fetch_url,
    ai_parser: Any = None,
    today: date | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ExtractionResult:
    config = config or default_config()
    payload = record.payload
    attempts: list[str] = []
    context = {"staging_id": record.id, "source_id": record.source_id}

    attempts.append(ParsingMethod.TRUSTED_FEED.value)
    trusted = _trusted_fields(payload, source, today)
    if trusted:
        return _result(ParsingMethod.TRUSTED_FEED, trusted, attempts, context)

    attempts.append(ParsingMethod.JSON_LD.value)
    events = payload.get("jsonld") or extract_jsonld_events(payload.get("html"))
    event = _pick_event(events, payload.get("title"))
    if event:
        return _result(ParsingMethod.JSON_LD, event, attempts, context)

    detail_text: str | None = None
    detail_url = payload.get("detail_url")
    if detail_url and detail_url != payload.get("page_url") and config.extraction.fetch_detail_pages:
        attempts.append(ParsingMethod.JSON_LD_DETAIL.value)
        detail_body = _fetch_detail(conn, source, record, detail_url, config, fetcher, sleep)
        if detail_body:
            event = _pick_event(extract_jsonld_events(detail_body), payload.get("title"))
            if event:
                return _result(ParsingMethod.JSON_LD_DETAIL, event, attempts, context)
            detail_text = _readable_text(detail_body)

    attempts.append(ParsingMethod.AI.value)
    content = _ai_content(payload, detail_text, config.extraction.max_content_chars)
    ai_fields = _try_ai(ai_parser, content, config.extraction.ai_timeout_seconds, context)
    if ai_fields:
        heuristics = heuristic_fields(payload, today)
        ai_fields.setdefault("url", heuristics.get("url"))
        ai_fields.setdefault("image_url", heuristics.get("image_url"))
        return _result(ParsingMethod.AI, ai_fields, attempts, context)

    attempts.append(ParsingMethod.PARTIAL.value)
    partial = heuristic_fields(payload, today)
    if not partial.get("title"):
        log_event(
            logger,
            logging.WARNING,
            "extraction_failed",
            attempts=",".join(attempts),
            **context,
        )
        raise ExtractionError("no title recoverable from staged item")
    return _result(ParsingMethod.PARTIAL, partial, attempts, context, incomplete=True)


def _trusted_fields(
    payload: dict[str, Any], source: Source | None, today: date | None
) -> dict[str, Any] | None:
    structured = payload.get("structured")
    if isinstance(structured, dict) and structured.get("title"):
        return dict(structured)
    if source is not None and source.is_trusted:
        fields = heuristic_fields(payload, today)
        if fields.get("title") and fields.get("event_date"):
            return fields
    return None


def _pick_event(events: list[dict[str, Any]] | None, title: str | None) -> dict[str, Any] | None:
    if not events:
        return None
    if title:
        lowered = title.strip().lower()
        for event in events:
            if str(event.get("title") or "").strip().lower() == lowered:
                return dict(event)
    return dict(events[0])


def _fetch_detail(
    conn: Any,
    source: Source | None,
    record: StagingRecord,
    url: str,
    config: Config,
    fetcher: Fetcher,
    sleep: Callable[[float], None],
) -> str | None:
    guarded = conn is not None and source is not None
    probing = False
    if guarded:
        if not circuit_breaker.can_attempt(conn, source.id, config.breaker):
            log_event(
                logger,
                logging.INFO,
                "detail_fetch_skipped",
                staging_id=record.id,
                source_id=source.id,
                reason="circuit_open",
            )
            return None
        # can_attempt may have handed this fetch the half-open probe slot.
        probing = circuit_breaker.get_breaker(conn, source.id).state != CircuitState.CLOSED
        rate_limiter.pace(source, sleep)
    result = fetcher(
        url,
        headers=source_headers(source),
        timeout_seconds=config.http.timeout_seconds,
        user_agent=config.http.user_agent,
    )
    if result.ok:
        if guarded:
            rate_limiter.record_request_success(conn, source.id, config.adaptive)
        if probing:
            circuit_breaker.record_success(conn, source.id)
        return result.body
    if guarded:
        if result.is_rate_limited:
            rate_limiter.record_rate_limited(conn, source.id, int(result.status or 0), config.adaptive)
        circuit_breaker.record_failure(
            conn,
            source.id,
            f"detail_fetch:{result.status or result.error}",
            config.breaker,
        )
    log_event(
        logger,
        logging.INFO,
        "detail_fetch_failed",
        staging_id=record.id,
        source_id=record.source_id,
        url=url,
        status=result.status,
        error=result.error,
    )
    return None


def _readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript"]):
        tag.decompose()
    main = soup.find("main") or soup.find("article") or soup
    return " ".join(main.get_text(" ", strip=True).split())


def _ai_content(payload: dict[str, Any], detail_text: str | None, max_chars: int) -> str:
    parts = [
        str(payload.get("title") or ""),
        str(payload.get("text") or ""),
        detail_text or "",
    ]
    if payload.get("detail_url"):
        parts.append(f"URL: {payload['detail_url']}")
    return "\n\n".join(part for part in parts if part)[:max_chars]


def _try_ai(
    ai_parser: Any, content: str, timeout_seconds: float, context: dict[str, Any]
) -> dict[str, Any] | None:
    if ai_parser is None:
        log_event(logger, logging.INFO, "ai_parser_unavailable", reason="not_configured", **context)
        return None
    if not content.strip():
        return None
    # Hard bound on the whole call; socket timeouts alone do not cap total time.
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(ai_parser.parse, content, None, timeout_seconds)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout:
        log_event(logger, logging.WARNING, "ai_parser_unavailable", reason="timeout", **context)
    except AIParserUnavailable as exc:
        log_event(logger, logging.WARNING, "ai_parser_unavailable", reason=str(exc), **context)
    except AIParserError as exc:
        log_event(logger, logging.WARNING, "ai_parse_failed", reason=str(exc), **context)
    finally:
        executor.shutdown(wait=False)
    return None


def _result(
    method: ParsingMethod,
    fields: dict[str, Any],
    attempts: list[str],
    context: dict[str, Any],
    incomplete: bool = False,
) -> ExtractionResult:
    log_event(
        logger,
        logging.INFO,
        "extraction_succeeded",
        method=method.value,
        incomplete=incomplete,
        attempts=",".join(attempts),
        **context,
    )
    return ExtractionResult(
        method=method,
        fields=fields,
        extraction_incomplete=incomplete,
        attempts=list(attempts),
    )
