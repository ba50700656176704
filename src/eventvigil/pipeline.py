"""Job handlers for the ingestion pipeline.

Stages only hand work to each other through the jobs table and the staging
queue: the coordinator enqueues ``fetch_source`` jobs, a fetch stages listing
items and enqueues ``process_staging``, and processing claims staged rows.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from . import circuit_breaker, dlq, rate_limiter, staging
from .config import Config
from .db import StoreUnavailableError
from .dedup import build_event_record, persist_event
from .discovery import discover_for_municipality
from .extraction.ai_parser import AIParser
from .extraction.waterfall import run_waterfall
from .fetch import Fetcher, fetch_url, source_headers
from .geocode import Geocoder, build_geocoder
from .health import review_source_health
from .listing import split_listing
from .models import CircuitState, DeadLetterEntry, Job, Source, StagingRecord, StagingStatus
from .notify import build_notifier
from .search import SearchFn, build_search_fn
from .storage import (
    enqueue_job,
    get_source,
    has_pending_job,
    list_due_sources,
    record_source_run,
    requeue_job,
)
from .utils import log_event, parse_iso, to_iso, utc_now, utc_now_iso

logger = logging.getLogger("eventvigil.pipeline")

COORDINATOR_ACTOR = "global"


@dataclass(frozen=True)
class Collaborators:
    fetcher: Fetcher = fetch_url
    ai_parser: Any = None
    search_fn: SearchFn | None = None
    notifier: Any = None
    geocoder: Geocoder | None = None
    sleep: Callable[[float], None] = time.sleep


def build_collaborators(config: Config) -> Collaborators:
    parser = AIParser.from_env(config.llm, timeout_seconds=config.extraction.ai_timeout_seconds)
    if not parser.available:
        log_event(logger, logging.INFO, "ai_parser_unavailable", reason="not_configured")
        parser = None
    return Collaborators(
        ai_parser=parser,
        search_fn=build_search_fn(
            timeout_s=config.discovery.search_timeout_seconds,
            max_results=config.discovery.max_results_per_query,
        ),
        notifier=build_notifier(),
        geocoder=build_geocoder(),
    )


def handle_ingest_due_sources(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    deferred = _defer_if_over_budget(conn, config, job, "coordinator", COORDINATOR_ACTOR)
    if deferred:
        return deferred
    sources = list_due_sources(conn, utc_now_iso())
    enqueued: list[str] = []
    debounced: list[str] = []
    circuit_open: list[str] = []
    for source in sources:
        if not circuit_breaker.is_available(conn, source.id, config.breaker):
            circuit_open.append(source.id)
            continue
        if has_pending_job(conn, "fetch_source", source_id=source.id):
            debounced.append(source.id)
            continue
        enqueue_job(conn, "fetch_source", {"source_id": source.id})
        enqueued.append(source.id)
    log_event(
        logger,
        logging.INFO,
        "fetch_source_enqueued",
        count=len(enqueued),
        debounced=len(debounced),
        circuit_open=len(circuit_open),
    )
    return {
        "enqueued_count": len(enqueued),
        "source_ids": enqueued,
        "debounced": debounced,
        "circuit_open": circuit_open,
    }


def handle_fetch_source(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    source = _require_source(conn, job.payload)
    started_at = utc_now_iso()
    if not source.enabled:
        _record_run(conn, source, started_at, "skipped", error=source.disabled_reason or "source_disabled")
        return {"source_id": source.id, "status": "skipped"}
    deferred = _defer_if_over_budget(conn, config, job, "fetch", source.id)
    if deferred:
        return deferred
    if not circuit_breaker.can_attempt(conn, source.id, config.breaker):
        _record_run(conn, source, started_at, "circuit_open", error="circuit_open")
        log_event(logger, logging.INFO, "fetch_skipped", source_id=source.id, reason="circuit_open")
        return {"source_id": source.id, "status": "circuit_open"}

    rate_limiter.pace(source, deps.sleep)
    result = deps.fetcher(
        source.url,
        headers=source_headers(source),
        timeout_seconds=config.http.timeout_seconds,
        user_agent=config.http.user_agent,
    )
    if not result.ok:
        status = "rate_limited" if result.is_rate_limited else "error"
        if result.is_rate_limited:
            rate_limiter.record_rate_limited(conn, source.id, int(result.status or 0), config.adaptive)
        circuit_breaker.record_failure(
            conn,
            source.id,
            f"fetch:{result.status or result.error}",
            config.breaker,
            notifier=deps.notifier,
        )
        _record_run(conn, source, started_at, status, http_status=result.status, error=result.error)
        return {"source_id": source.id, "status": status, "http_status": result.status}

    items = split_listing(source, result.body or "", result.url)
    staged = 0
    for item in items:
        staging.enqueue(conn, source.id, item["source_url"], item["payload"])
        staged += 1
    circuit_breaker.record_success(conn, source.id)
    rate_limiter.record_request_success(conn, source.id, config.adaptive)
    _record_run(
        conn,
        source,
        started_at,
        "ok",
        http_status=result.status,
        items_found=len(items),
        items_staged=staged,
        notes={"elapsed_ms": result.elapsed_ms},
    )
    if staged:
        enqueue_job(conn, "process_staging", None, debounce=True)
    log_event(
        logger,
        logging.INFO,
        "source_fetched",
        source_id=source.id,
        http_status=result.status,
        items=len(items),
        elapsed_ms=result.elapsed_ms,
    )
    return {"source_id": source.id, "status": "ok", "items_found": len(items), "items_staged": staged}


def handle_process_staging(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    deferred = _defer_if_over_budget(conn, config, job, "process_worker", worker_id)
    if deferred:
        return deferred
    # Claims are per job so concurrent threads of one worker never share ownership.
    claimer = f"{worker_id}/{job.id}"
    records = staging.claim_batch(
        conn, claimer, config.staging.batch_size, config.staging.lease_seconds
    )
    outcomes: dict[str, int] = {}
    sources: dict[str, Source | None] = {}
    for record in records:
        if record.source_id not in sources:
            sources[record.source_id] = get_source(conn, record.source_id)
        outcome = process_staged_item(conn, config, record, sources[record.source_id], deps, claimer)
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
    if len(records) >= config.staging.batch_size and not has_pending_job(
        conn, "process_staging", exclude_job_id=job.id
    ):
        enqueue_job(conn, "process_staging", None)
    if outcomes.get("failed") or outcomes.get("dead"):
        dlq.check_alert_threshold(conn, config.dlq, deps.notifier)
    return {"claimed": len(records), "outcomes": outcomes}


def process_staged_item(
    conn,
    config: Config,
    record: StagingRecord,
    source: Source | None,
    deps: Collaborators,
    worker_id: str,
) -> str:
    """Run one claimed row through extract, normalize and persist.

    Returns the outcome: ``completed``, ``released``, ``failed`` or ``dead``.
    Store outages propagate; every other error is recorded against the row.
    """
    if source is None:
        staging.mark_dead(
            conn,
            record.id,
            "source_missing",
            error_type="source_missing",
            stage="extract",
            dlq_config=config.dlq,
        )
        return "dead"
    breaker = circuit_breaker.get_breaker(conn, record.source_id)
    if breaker.state == CircuitState.OPEN:
        delay = _seconds_until(breaker.cooldown_until)
        staging.release(conn, record.id, worker_id, delay_seconds=delay)
        log_event(
            logger,
            logging.INFO,
            "staging_deferred",
            staging_id=record.id,
            source_id=record.source_id,
            reason="circuit_open",
            delay_seconds=delay,
        )
        return "released"

    stage = "extract"
    try:
        result = run_waterfall(
            record,
            source,
            conn=conn,
            config=config,
            fetcher=deps.fetcher,
            ai_parser=deps.ai_parser,
            sleep=deps.sleep,
        )
        stage = "normalize"
        event = build_event_record(record, source, result, config=config, geocoder=deps.geocoder)
        stage = "persist"
        outcome = persist_event(conn, source, event)
        staging.complete(conn, record.id, worker_id, parsing_method=result.method.value)
    except StoreUnavailableError:
        raise
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "staging_item_failed",
            source_id=record.source_id,
            staging_id=record.id,
            stage=stage,
            reason=str(exc),
        )
        status = staging.fail_and_reschedule(
            conn,
            record.id,
            str(exc),
            error_type=type(exc).__name__,
            stage=stage,
            config=config.staging,
            dlq_config=config.dlq,
            worker_id=worker_id,
        )
        return "dead" if status == StagingStatus.DEAD else "failed"
    log_event(
        logger,
        logging.DEBUG,
        "staging_item_processed",
        staging_id=record.id,
        event_id=outcome.event_id,
        inserted=outcome.inserted,
        parsing_method=result.method.value,
    )
    return "completed"


def handle_retry_dead_letters(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    entries = dlq.get_ready_for_retry(conn, limit=config.dlq.retry_batch_size)
    redriven: list[int] = []
    exhausted: list[int] = []
    failed: list[int] = []
    for entry in entries:
        if entry.retry_count >= entry.max_retries:
            if dlq.mark_permanently_failed(conn, entry.id):
                exhausted.append(entry.id)
            continue
        if not dlq.mark_retrying(conn, entry.id):
            continue
        try:
            redrive_dead_letter(conn, entry, notes="automatic retry")
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            dlq.reschedule(conn, entry.id, str(exc), config.dlq)
            log_event(
                logger,
                logging.WARNING,
                "dead_letter_retry_failed",
                dead_letter_id=entry.id,
                source_id=entry.source_id,
                error=str(exc),
            )
            failed.append(entry.id)
            continue
        redriven.append(entry.id)
    if redriven:
        enqueue_job(conn, "process_staging", None, debounce=True)
    log_event(
        logger,
        logging.INFO,
        "dead_letters_retried",
        redriven=len(redriven),
        exhausted=len(exhausted),
        failed=len(failed),
    )
    return {"redriven": redriven, "permanently_failed": exhausted, "failed": failed}


def redrive_dead_letter(
    conn, entry: DeadLetterEntry | int, notes: str | None = None
) -> int:
    """Return a dead-lettered item to staging as pending and resolve the entry.

    The original staging row is revived when it still exists; otherwise the
    item is staged again from the payload kept on the entry.
    """
    if isinstance(entry, int):
        found = dlq.get_dead_letter(conn, entry)
        if found is None:
            raise ValueError(f"dead letter {entry} not found")
        entry = found
    if entry.status.value not in ("pending", "retrying"):
        raise ValueError(f"dead letter {entry.id} is {entry.status.value}")
    with conn.transaction():
        staging_id = None
        if entry.staging_id is not None:
            current = staging.get_staged(conn, int(entry.staging_id))
            if current is not None and current.status.value == "dead":
                staging.requeue_from_dead(conn, current.id)
                staging_id = current.id
            elif current is not None:
                # Already back in the pipeline through a fresh fetch.
                staging_id = current.id
        if staging_id is None:
            if not entry.source_id or not entry.source_url:
                raise ValueError(f"dead letter {entry.id} has no staging target")
            staging_id = staging.enqueue(conn, entry.source_id, entry.source_url, entry.payload)
        dlq.mark_resolved(conn, entry.id, notes=notes or "redriven")
    log_event(
        logger,
        logging.INFO,
        "dead_letter_redriven",
        dead_letter_id=entry.id,
        staging_id=staging_id,
        source_id=entry.source_id,
    )
    return staging_id


def handle_review_source_health(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    review = review_source_health(conn, config.health, deps.notifier)
    return {"reviewed": review.reviewed, "disabled": review.disabled}


def handle_maintenance(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    return {
        "rate_limit_events_purged": rate_limiter.purge_rate_limit_events(
            conn, config.rate_limits.purge_after_seconds
        ),
        "staging_purged": staging.purge_completed(conn, config.staging.retention_days),
        "dead_letters_purged": dlq.cleanup(conn, config.dlq.retention_days),
    }


def handle_discover_sources(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    payload = job.payload or {}
    municipality = str(payload.get("municipality") or "").strip()
    if not municipality:
        raise ValueError("discover_sources requires municipality")
    coordinates = None
    if payload.get("lat") is not None and payload.get("lng") is not None:
        coordinates = (float(payload["lat"]), float(payload["lng"]))
    result = discover_for_municipality(
        conn,
        municipality,
        search_fn=deps.search_fn,
        fetcher=deps.fetcher,
        llm=deps.ai_parser,
        config=config,
        notifier=deps.notifier,
        coordinates=coordinates,
        sleep=deps.sleep,
    )
    return {
        "municipality": result.municipality,
        "status": result.status,
        "queries_run": result.queries_run,
        "sources_found": result.sources_found,
        "sources_added": result.sources_added,
        "sources_enabled": result.sources_enabled,
        "errors": result.errors,
    }


JobHandler = Callable[[Any, Config, Job, Collaborators, str], dict[str, object]]

JOB_HANDLERS: dict[str, JobHandler] = {
    "ingest_due_sources": handle_ingest_due_sources,
    "fetch_source": handle_fetch_source,
    "process_staging": handle_process_staging,
    "retry_dead_letters": handle_retry_dead_letters,
    "review_source_health": handle_review_source_health,
    "maintenance": handle_maintenance,
    "discover_sources": handle_discover_sources,
}


def run_claimed_job(
    conn, config: Config, job: Job, deps: Collaborators, worker_id: str
) -> dict[str, object]:
    handler = JOB_HANDLERS.get(job.job_type)
    if handler is None:
        raise ValueError(f"unsupported job type {job.job_type}")
    return handler(conn, config, job, deps, worker_id)


def _defer_if_over_budget(
    conn, config: Config, job: Job, stage: str, actor: str
) -> dict[str, object] | None:
    decision = rate_limiter.check_stage_budget(conn, stage, actor, config.rate_limits)
    if decision.allowed:
        return None
    not_before = to_iso(utc_now() + timedelta(seconds=decision.retry_after_seconds))
    requeue_job(conn, job.id, not_before, f"rate_limited:{stage}")
    log_event(
        logger,
        logging.INFO,
        "stage_budget_exhausted",
        stage=stage,
        actor=actor,
        job_id=job.id,
        retry_after=round(decision.retry_after_seconds, 3),
    )
    return {"requeued": True, "reason": f"rate_limited:{stage}", "not_before": not_before}


def _require_source(conn, payload: dict[str, object] | None) -> Source:
    source_id = (payload or {}).get("source_id")
    if not source_id:
        raise ValueError("job requires source_id")
    source = get_source(conn, str(source_id))
    if source is None:
        raise ValueError(f"Source not found: {source_id}")
    return source


def _record_run(
    conn,
    source: Source,
    started_at: str,
    status: str,
    *,
    http_status: int | None = None,
    items_found: int = 0,
    items_staged: int = 0,
    error: str | None = None,
    notes: dict[str, object] | None = None,
) -> None:
    record_source_run(
        conn,
        source_id=source.id,
        started_at=started_at,
        finished_at=utc_now_iso(),
        status=status,
        http_status=http_status,
        items_found=items_found,
        items_staged=items_staged,
        error=error,
        notes=notes,
    )


def _seconds_until(value: str | None) -> int:
    if not value:
        return 0
    remaining = (parse_iso(value) - utc_now()).total_seconds()
    return max(int(remaining) + 1, 1)
