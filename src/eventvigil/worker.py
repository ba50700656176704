from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import timedelta

from .config import Config, ConfigError, load_runtime_config
from .db import StoreUnavailableError
from .models import Job
from .pipeline import Collaborators, build_collaborators, run_claimed_job
from .staging import staging_counts
from .storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_setting,
    has_pending_job,
    init_db,
    list_due_sources,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now_iso

WORKER_JOB_TYPES = [
    "ingest_due_sources",
    "fetch_source",
    "process_staging",
    "retry_dead_letters",
    "review_source_health",
    "maintenance",
    "discover_sources",
]

# job type -> (settings key, interval seconds)
PERIODIC_JOBS = {
    "retry_dead_letters": ("dlq.last_retry_enqueued_at", 900),
    "review_source_health": ("health.last_review_enqueued_at", 3600),
    "maintenance": ("maintenance.last_enqueued_at", 3600),
}


def _setup_logging() -> logging.Logger:
    return configure_logging("eventvigil.worker")


def _open_runtime(logger: logging.Logger):
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None, None
    return conn, config


def run_once(
    worker_id: str,
    allowed_types: list[str] | None = None,
    deps: Collaborators | None = None,
) -> int:
    logger = _setup_logging()
    conn, config = _open_runtime(logger)
    if conn is None:
        return 1
    try:
        _tick_schedules(conn, allowed_types, logger)
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=allowed_types or WORKER_JOB_TYPES,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        deps = deps or build_collaborators(config)
        return _process_claimed_job(conn, config, job, deps, worker_id, logger)
    finally:
        conn.close()


def _process_claimed_job(
    conn,
    config: Config,
    job: Job,
    deps: Collaborators,
    worker_id: str,
    logger: logging.Logger,
) -> int:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type, **_job_context_fields(job))
    try:
        result = run_claimed_job(conn, config, job, deps, worker_id)
    except StoreUnavailableError:
        # The lock expires and another worker recovers the job.
        log_event(logger, logging.CRITICAL, "store_unavailable", job_id=job.id, job_type=job.job_type)
        raise
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
            **_job_context_fields(job),
        )
        return 1

    if result.get("requeued"):
        log_event(
            logger,
            logging.INFO,
            "job_requeued",
            job_id=job.id,
            job_type=job.job_type,
            reason=result.get("reason"),
            **_job_context_fields(job),
        )
        return 0

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type, **_job_context_fields(job))
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(worker_id: str, job: Job, deps: Collaborators | None) -> int:
    logger = _setup_logging()
    conn, config = _open_runtime(logger)
    if conn is None:
        return 1
    try:
        return _process_claimed_job(conn, config, job, deps or build_collaborators(config), worker_id, logger)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
    deps: Collaborators | None = None,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types, deps)
            time.sleep(sleep_seconds)
        return 0

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                conn, config = _open_runtime(logger)
                if conn is None:
                    break
                try:
                    _tick_schedules(conn, allowed_types, logger)
                    job = claim_next_job(
                        conn,
                        worker_id,
                        allowed_types=allowed_types or WORKER_JOB_TYPES,
                        lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                    )
                finally:
                    conn.close()
                if not job:
                    break
                # Each thread opens its own connection; a DBConn is never shared.
                futures.add(executor.submit(_process_claimed_job_thread, worker_id, job, deps))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    future.result()
            else:
                time.sleep(sleep_seconds)


def _tick_schedules(conn, allowed_types: list[str] | None, logger: logging.Logger) -> None:
    if _allows(allowed_types, "ingest_due_sources"):
        _maybe_enqueue_ingest_due_sources(conn, logger)
    if _allows(allowed_types, "process_staging"):
        _maybe_enqueue_process_staging(conn, logger)
    for job_type, (setting_key, interval) in PERIODIC_JOBS.items():
        if _allows(allowed_types, job_type):
            _maybe_enqueue_periodic(conn, job_type, setting_key, interval, logger)


def _allows(allowed_types: list[str] | None, job_type: str) -> bool:
    return not allowed_types or job_type in allowed_types


def _maybe_enqueue_ingest_due_sources(conn, logger: logging.Logger) -> None:
    if has_pending_job(conn, "ingest_due_sources"):
        return
    debounce_seconds = int(os.environ.get("EV_INGEST_DUE_DEBOUNCE_SECONDS", "60"))
    if not _interval_elapsed(conn, "ingest_due.last_enqueued_at", debounce_seconds):
        return
    now = utc_now_iso()
    due = list_due_sources(conn, now)
    if not due:
        return
    enqueue_job(conn, "ingest_due_sources", None, debounce=True)
    set_setting(conn, "ingest_due.last_enqueued_at", now)
    log_event(logger, logging.INFO, "ingest_due_sources_enqueued", due_count=len(due))


def _maybe_enqueue_process_staging(conn, logger: logging.Logger) -> None:
    # Picks up rows whose backoff or lease ran out while no job was queued.
    if has_pending_job(conn, "process_staging"):
        return
    counts = staging_counts(conn)
    waiting = sum(counts.get(status, 0) for status in ("pending", "pending_with_backoff", "claimed"))
    if not waiting:
        return
    if not _interval_elapsed(conn, "staging.last_enqueued_at", 30):
        return
    enqueue_job(conn, "process_staging", None, debounce=True)
    set_setting(conn, "staging.last_enqueued_at", utc_now_iso())
    log_event(logger, logging.DEBUG, "process_staging_enqueued", waiting=waiting)


def _maybe_enqueue_periodic(
    conn, job_type: str, setting_key: str, interval_seconds: int, logger: logging.Logger
) -> None:
    if has_pending_job(conn, job_type):
        return
    if not _interval_elapsed(conn, setting_key, interval_seconds):
        return
    enqueue_job(conn, job_type, None, debounce=True)
    set_setting(conn, setting_key, utc_now_iso())
    log_event(logger, logging.INFO, "periodic_job_enqueued", job_type=job_type)


def _interval_elapsed(conn, setting_key: str, interval_seconds: int) -> bool:
    last = get_setting(conn, setting_key, None)
    if not isinstance(last, str):
        return True
    return parse_iso(last) + timedelta(seconds=interval_seconds) <= parse_iso(utc_now_iso())


def _job_context_fields(job: Job) -> dict[str, object]:
    payload = job.payload or {}
    fields: dict[str, object] = {}
    if payload.get("source_id"):
        fields["source_id"] = str(payload["source_id"])
    if payload.get("municipality"):
        fields["municipality"] = str(payload["municipality"])
    return fields


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eventvigil-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("EV_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("EV_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    try:
        if args.once:
            return run_once(args.worker_id, allowed_types)
        return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)
    except StoreUnavailableError as exc:
        log_event(_setup_logging(), logging.CRITICAL, "worker_halted", error=str(exc))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
