"""Find new agenda sources for a municipality through web search.

Candidates are filtered for noise, canonicalized, scored from the fetched
page (optionally blended with an LLM judgement) and registered. High
confidence sources start enabled; the rest wait for manual review.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup

from .config import Config, default_config
from .extraction.ai_parser import AIParserError, AIParserUnavailable
from .extraction.jsonld import extract_jsonld_events
from .fetch import Fetcher, fetch_url
from .models import DiscoveredSourceCandidate
from .normalize import MONTHS, classify_category
from .notify import safe_notify
from .rate_limiter import check_stage_budget
from .search import SearchAuthError, SearchError, SearchFn, search_with_retry
from .storage import count_sources_for_municipality, insert_source_if_new, list_source_urls
from .utils import log_event, sha256_hex, slugify, utc_now_iso

logger = logging.getLogger("eventvigil.discovery")

NOISE_DOMAINS = (
    "tripadvisor.",
    "facebook.com",
    "booking.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "pinterest.com",
    "youtube.com",
    "tiktok.com",
    "yelp.",
    "groupon.",
    "expedia.",
    "hotels.",
    "airbnb.",
    "marktplaats.nl",
    "wikipedia.org",
)

_TRACKING_PREFIXES = ("utm_",)
_TRACKING_KEYS = {"gclid", "fbclid", "mc_cid", "mc_eid", "ref"}

_AGENDA_WORDS = ("agenda", "evenement", "activiteit", "programma", "kalender", "uitagenda")
# Abbreviations ("mar", "okt") are too ambiguous to count as dates.
_MONTH_NAMES = tuple(name for name in MONTHS if name.isascii() and (len(name) > 3 or name == "mei"))
_DATE_PATTERN = re.compile(
    r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b|\b(?:" + "|".join(_MONTH_NAMES) + r")\b",
    re.IGNORECASE,
)
_PENALTY_PHRASES = {
    "vacature": -10,
    "webshop": -10,
    "winkelwagen": -10,
    "nieuwsarchief": -8,
}
_NOT_FOUND_TITLES = ("404", "niet gevonden", "not found")
_THIN_PAGE_CHARS = 500
_LLM_CONTENT_CHARS = 4000
_QUERY_DELAY_SECONDS = 0.2


@dataclass(frozen=True)
class DiscoveryResult:
    municipality: str
    status: str
    queries_run: int = 0
    sources_found: int = 0
    sources_added: int = 0
    sources_enabled: int = 0
    errors: list[str] = field(default_factory=list)


def build_queries(municipality: str, year: int | None = None) -> list[str]:
    year = year or date.today().year
    return [
        f"uitagenda {municipality}",
        f"evenementen {municipality}",
        f"agenda activiteiten {municipality}",
        f"wat te doen in {municipality}",
        f"festivals {municipality} {year}",
    ]


def is_noise_domain(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return True
    for domain in NOISE_DOMAINS:
        if domain.endswith("."):
            if host.startswith(domain) or f".{domain}" in host:
                return True
        elif host == domain or host.endswith("." + domain):
            return True
    return False


def canonicalize_url(url: str) -> str:
    if not url:
        return ""
    parsed = urlparse(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    if "@" in netloc:
        netloc = netloc.rsplit("@", 1)[1]
    if ":" in netloc:
        host, port = netloc.rsplit(":", 1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    if netloc.startswith("www."):
        netloc = netloc[4:]
    path = parsed.path or ""
    if path.endswith("/"):
        path = path.rstrip("/")
    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k and not k.lower().startswith(_TRACKING_PREFIXES) and k.lower() not in _TRACKING_KEYS
    ]
    query = urlencode(sorted(query_pairs))
    return urlunparse((scheme, netloc, path, "", query, ""))


def score_page(html: str, url: str, municipality: str) -> tuple[int, dict[str, int]]:
    """Heuristic agenda score for a fetched page, clamped to 0..100."""
    soup = BeautifulSoup(html, "html.parser")
    page_title = soup.title.get_text(" ", strip=True) if soup.title else ""
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = " ".join(soup.get_text(" ", strip=True).split())
    lowered = text.lower()
    score = 0
    reasons: dict[str, int] = {}

    agenda_hits = [word for word in _AGENDA_WORDS if word in lowered]
    if agenda_hits:
        score += 25
        reasons["agenda_keywords"] = 25
        extra = min(5 * (len(agenda_hits) - 1), 10)
        if extra:
            score += extra
            reasons["agenda_keywords_extra"] = extra

    date_hits = len(_DATE_PATTERN.findall(text))
    if date_hits:
        score += 20
        reasons["dates"] = 20
        if date_hits >= 5:
            score += 10
            reasons["many_dates"] = 10

    if not agenda_hits or not date_hits:
        return 0, {"missing_agenda_or_dates": 0}

    place = municipality.lower()
    if place and place in lowered:
        score += 15
        reasons["municipality_text"] = 15
    if place and slugify(place) in url.lower():
        score += 10
        reasons["municipality_url"] = 10

    if extract_jsonld_events(html):
        score += 25
        reasons["jsonld_events"] = 25

    if len(text) < _THIN_PAGE_CHARS:
        score -= 20
        reasons["thin_page"] = -20
    for phrase, points in _PENALTY_PHRASES.items():
        if phrase in lowered or phrase in page_title.lower():
            score += points
            reasons[f"penalty:{phrase}"] = points
    if any(marker in page_title.lower() for marker in _NOT_FOUND_TITLES):
        score -= 40
        reasons["not_found_page"] = -40
    if "/tag/" in url or "/nieuws/" in url:
        score -= 8
        reasons["category_index"] = -8

    score = max(min(score, 100), 0)
    return score, reasons


def validate_candidate(
    url: str,
    municipality: str,
    fetcher: Fetcher = fetch_url,
    llm: Any = None,
    *,
    title: str = "",
    snippet: str = "",
    timeout_seconds: int = 10,
    llm_timeout_seconds: float = 5,
) -> DiscoveredSourceCandidate:
    result = fetcher(url, timeout_seconds=timeout_seconds)
    fallback_name = title.strip() or f"Agenda {municipality}"
    if not result.ok or not result.body:
        return DiscoveredSourceCandidate(
            url=url,
            title=title,
            snippet=snippet,
            municipality=municipality,
            confidence=0,
            suggested_name=fallback_name,
            suggested_category=None,
            reasons={"fetch_failed": 0},
        )

    confidence, reasons = score_page(result.body, url, municipality)
    suggested_name = _page_title(result.body) or fallback_name
    if confidence and llm is not None and getattr(llm, "available", True):
        rating = _llm_rating(llm, result.body, url, municipality, llm_timeout_seconds)
        if rating is not None:
            llm_score = int(rating.get("confidence") or 0)
            if rating.get("is_event_agenda") is False:
                llm_score = min(llm_score, 30)
            blended = round((confidence + llm_score) / 2)
            reasons["llm_blend"] = blended - confidence
            confidence = max(min(blended, 100), 0)
            suggested_name = rating.get("suggested_name") or suggested_name

    category, category_confidence = classify_category(f"{title} {snippet} {suggested_name}")
    return DiscoveredSourceCandidate(
        url=url,
        title=title,
        snippet=snippet,
        municipality=municipality,
        confidence=confidence,
        suggested_name=suggested_name[:120],
        suggested_category=category if category_confidence >= 0.6 else None,
        reasons=reasons,
    )


def _llm_rating(
    llm: Any, html: str, url: str, municipality: str, timeout_seconds: float
) -> dict[str, Any] | None:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    content = f"URL: {url}\n\n" + " ".join(soup.get_text(" ", strip=True).split())[:_LLM_CONTENT_CHARS]
    try:
        return llm.rate_agenda(content, municipality, timeout_seconds=timeout_seconds)
    except AIParserUnavailable as exc:
        log_event(logger, logging.INFO, "ai_parser_unavailable", url=url, reason=exc)
    except AIParserError as exc:
        log_event(logger, logging.WARNING, "discovery_llm_invalid", url=url, reason=exc)
    return None


def _page_title(html: str) -> str | None:
    soup = BeautifulSoup(html, "html.parser")
    if soup.title is None:
        return None
    title = " ".join(soup.title.get_text(" ", strip=True).split())
    return title or None


def discover_for_municipality(
    conn: Any,
    municipality: str,
    *,
    search_fn: SearchFn | None,
    fetcher: Fetcher = fetch_url,
    llm: Any = None,
    config: Config | None = None,
    notifier: Any = None,
    coordinates: tuple[float, float] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    today: date | None = None,
) -> DiscoveryResult:
    config = config or default_config()
    settings = config.discovery
    municipality = municipality.strip()
    run_id = _start_run(conn, municipality)

    existing_count = count_sources_for_municipality(conn, municipality)
    if existing_count >= settings.max_sources_per_municipality:
        log_event(
            logger,
            logging.INFO,
            "discovery_skipped",
            municipality=municipality,
            reason="saturated",
            sources=existing_count,
        )
        return _finish_run(conn, run_id, DiscoveryResult(municipality=municipality, status="saturated"))
    if search_fn is None:
        log_event(logger, logging.WARNING, "search_unconfigured", municipality=municipality)
        return _finish_run(
            conn, run_id, DiscoveryResult(municipality=municipality, status="search_unconfigured")
        )

    known = {canonicalize_url(url) for url in list_source_urls(conn)}
    seen: set[str] = set()
    errors: list[str] = []
    status = "completed"
    queries_run = found = added = enabled = 0
    year = (today or date.today()).year

    for query in build_queries(municipality, year):
        if existing_count + added >= settings.max_sources_per_municipality:
            break
        decision = check_stage_budget(conn, "discovery", municipality, config.rate_limits)
        if not decision.allowed:
            log_event(
                logger,
                logging.INFO,
                "discovery_throttled",
                municipality=municipality,
                retry_after=round(decision.retry_after_seconds, 2),
            )
            status = "throttled"
            break
        try:
            results = search_with_retry(
                query, search_fn, attempts=settings.search_attempts, sleep=sleep
            )
        except SearchAuthError as exc:
            errors.append(f"{query}: {exc}")
            status = "failed"
            break
        except SearchError as exc:
            log_event(
                logger,
                logging.WARNING,
                "discovery_query_failed",
                municipality=municipality,
                query=query,
                error=exc,
            )
            errors.append(f"{query}: {exc}")
            continue
        queries_run += 1

        for item in results[: settings.max_results_per_query]:
            link = str(item.get("url") or "")
            if not link or is_noise_domain(link):
                continue
            canonical = canonicalize_url(link)
            if canonical in seen or canonical in known:
                continue
            seen.add(canonical)
            found += 1
            try:
                candidate = validate_candidate(
                    canonical,
                    municipality,
                    fetcher,
                    llm,
                    title=str(item.get("title") or ""),
                    snippet=str(item.get("snippet") or ""),
                    timeout_seconds=settings.fetch_timeout_seconds,
                    llm_timeout_seconds=config.extraction.ai_timeout_seconds,
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    logging.WARNING,
                    "discovery_candidate_failed",
                    municipality=municipality,
                    url=canonical,
                    error=exc,
                )
                errors.append(f"{canonical}: {exc}")
                continue
            finally:
                sleep(settings.candidate_delay_seconds)

            if candidate.confidence < settings.min_confidence:
                log_event(
                    logger,
                    logging.DEBUG,
                    "discovery_candidate_rejected",
                    url=canonical,
                    confidence=candidate.confidence,
                )
                continue
            registered, is_enabled = register_candidate(
                conn, candidate, config, coordinates=coordinates, query=query
            )
            if not registered:
                continue
            added += 1
            known.add(canonical)
            if is_enabled:
                enabled += 1
                safe_notify(
                    notifier,
                    "source_discovered",
                    {
                        "name": candidate.suggested_name,
                        "url": candidate.url,
                        "municipality": municipality,
                        "confidence": candidate.confidence,
                    },
                )
            if existing_count + added >= settings.max_sources_per_municipality:
                break
        sleep(_QUERY_DELAY_SECONDS)

    result = DiscoveryResult(
        municipality=municipality,
        status=status,
        queries_run=queries_run,
        sources_found=found,
        sources_added=added,
        sources_enabled=enabled,
        errors=errors,
    )
    log_event(
        logger,
        logging.INFO,
        "discovery_finished",
        municipality=municipality,
        status=status,
        queries=queries_run,
        found=found,
        added=added,
        enabled=enabled,
        errors=len(errors),
    )
    return _finish_run(conn, run_id, result)


def register_candidate(
    conn: Any,
    candidate: DiscoveredSourceCandidate,
    config: Config,
    *,
    coordinates: tuple[float, float] | None = None,
    query: str | None = None,
) -> tuple[bool, bool]:
    settings = config.discovery
    enabled = candidate.confidence > settings.auto_enable_confidence
    lat, lng = coordinates or (config.app.default_lat, config.app.default_lng)
    host = (urlparse(candidate.url).hostname or "source").lower()
    source_id = f"{slugify(candidate.municipality, 40)}-{slugify(host, 40)}-{sha256_hex(candidate.url)[:8]}"
    inserted = insert_source_if_new(
        conn,
        {
            "id": source_id,
            "name": candidate.suggested_name,
            "url": candidate.url,
            "kind": "html",
            "enabled": enabled,
            "auto_discovered": True,
            "confidence_score": candidate.confidence,
            "category_hint": candidate.suggested_category,
            "municipality": candidate.municipality,
            "default_lat": lat,
            "default_lng": lng,
            "config": {
                "rate_limit_ms": 200,
                "headers": {"Accept-Language": "nl-NL,nl;q=0.9,en;q=0.8"},
                "discovery_query": query,
                "discovery_reasons": candidate.reasons,
            },
        },
    )
    if inserted and not enabled:
        conn.execute(
            "UPDATE sources SET disabled_reason = ? WHERE id = ?",
            ("pending_review", source_id),
        )
        conn.commit()
    log_event(
        logger,
        logging.INFO if inserted else logging.DEBUG,
        "source_discovered" if inserted else "source_already_known",
        source_id=source_id,
        url=candidate.url,
        confidence=candidate.confidence,
        enabled=enabled,
    )
    return inserted, enabled and inserted


def _start_run(conn: Any, municipality: str) -> int:
    cursor = conn.execute(
        """
        INSERT INTO discovery_runs (municipality, status, started_at)
        VALUES (?, 'running', ?)
        RETURNING id
        """,
        (municipality, utc_now_iso()),
    )
    run_id = int(cursor.fetchall()[0][0])
    conn.commit()
    return run_id


def _finish_run(conn: Any, run_id: int, result: DiscoveryResult) -> DiscoveryResult:
    conn.execute(
        """
        UPDATE discovery_runs
        SET status = ?, queries_run = ?, sources_found = ?, sources_added = ?,
            error = ?, finished_at = ?
        WHERE id = ?
        """,
        (
            result.status,
            result.queries_run,
            result.sources_found,
            result.sources_added,
            "; ".join(result.errors)[:2000] or None,
            utc_now_iso(),
            run_id,
        ),
    )
    conn.commit()
    return result


def list_discovery_runs(conn: Any, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT id, municipality, status, queries_run, sources_found, sources_added, error,
               started_at, finished_at
        FROM discovery_runs
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    keys = [
        "id",
        "municipality",
        "status",
        "queries_run",
        "sources_found",
        "sources_added",
        "error",
        "started_at",
        "finished_at",
    ]
    return [dict(zip(keys, row)) for row in cursor.fetchall()]
