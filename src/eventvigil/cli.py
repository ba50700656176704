from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os

from . import circuit_breaker, dlq
from .config import ConfigError, load_runtime_config, load_sources_file
from .dedup import count_events, list_events
from .discovery import discover_for_municipality, list_discovery_runs
from .models import CircuitBreakerState
from .pipeline import build_collaborators, redrive_dead_letter
from .staging import staging_counts
from .storage import (
    enqueue_job,
    get_last_source_run,
    get_source,
    init_db,
    list_health_alerts,
    list_jobs,
    list_sources,
    set_source_enabled,
    upsert_source,
)
from .utils import configure_logging, log_event
from .worker import WORKER_JOB_TYPES


def _setup_logging() -> logging.Logger:
    return configure_logging("eventvigil.cli")


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    sources_path = args.path
    if sources_path is None:
        if os.path.exists("/config/sources.yml"):
            sources_path = "/config/sources.yml"
        else:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                error="no sources.yml found",
                hint="Pass a path: `eventvigil sources import sources.yml`",
            )
            return 1
    log_event(logger, logging.INFO, "sources_import_path", path=sources_path)
    try:
        sources = load_sources_file(sources_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    if not sources:
        log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
        return 1

    for source in sources:
        config = dict(source.get("config") or {})
        if source.get("headers"):
            config["headers"] = source["headers"]
        if source.get("trusted") is not None:
            config["trusted"] = bool(source["trusted"])
        source_dict = {
            "id": source.get("id"),
            "name": source.get("name") or source.get("id"),
            "url": source.get("url"),
            "kind": source.get("kind", "html"),
            "enabled": source.get("enabled", True),
            "category_hint": source.get("category_hint"),
            "municipality": source.get("municipality"),
            "default_lat": source.get("lat"),
            "default_lng": source.get("lng"),
            "default_frequency_minutes": int(source.get("frequency_minutes", 360)),
            "config": config,
        }
        try:
            upsert_source(conn, source_dict)
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                source_id=source.get("id"),
                error=str(exc),
            )
            return 1

    log_event(logger, logging.INFO, "sources_imported", count=len(sources))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    sources = list_sources(conn, enabled_only=False)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `eventvigil sources import sources.yml`",
        )
        return 1

    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            enabled=source.enabled,
            kind=source.kind,
            url=source.url,
            municipality=source.municipality,
            confidence=source.confidence_score,
            disabled_reason=source.disabled_reason,
            rate_limit_ms=source.dynamic_rate_limit_ms,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    source_dict = {
        "id": args.id,
        "name": args.name,
        "url": args.url,
        "kind": args.kind,
        "enabled": args.enabled,
        "category_hint": args.category_hint,
        "municipality": args.municipality,
        "default_frequency_minutes": args.frequency_minutes,
    }
    try:
        upsert_source(conn, source_dict)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "source_added", source_id=args.id)
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    source = get_source(conn, args.source_id)
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    details = {
        "source": dataclasses.asdict(source),
        "breaker": _breaker_dict(circuit_breaker.get_breaker(conn, source.id)),
        "last_run": get_last_source_run(conn, source.id),
        "alerts": list_health_alerts(conn, source.id, limit=5),
    }
    logger.info(json.dumps(details, indent=2, sort_keys=True, default=str))
    return 0


def _cmd_sources_enable(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    if not set_source_enabled(conn, args.source_id, True):
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    if args.reset_breaker:
        circuit_breaker.reset_breaker(conn, args.source_id)
    log_event(logger, logging.INFO, "source_enabled", source_id=args.source_id)
    return 0


def _cmd_sources_disable(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    if not set_source_enabled(conn, args.source_id, False, args.reason):
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    log_event(logger, logging.INFO, "source_disabled", source_id=args.source_id, reason=args.reason)
    return 0


def _cmd_breakers_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    for state in circuit_breaker.list_open_circuits(conn):
        log_event(
            logger,
            logging.INFO,
            "breaker",
            source_id=state.source_id,
            state=state.state.value,
            failure_count=state.failure_count,
            consecutive_opens=state.consecutive_opens,
            cooldown_until=state.cooldown_until,
            last_failure_reason=state.last_failure_reason,
        )
    log_event(logger, logging.INFO, "breaker_summary", **circuit_breaker.breaker_summary(conn))
    return 0


def _cmd_breakers_reset(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    if get_source(conn, args.source_id) is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    circuit_breaker.reset_breaker(conn, args.source_id)
    return 0


def _cmd_dlq_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    entries = dlq.list_dead_letters(conn, status=args.status, source_id=args.source_id, limit=args.limit)
    for entry in entries:
        log_event(
            logger,
            logging.INFO,
            "dead_letter",
            dead_letter_id=entry.id,
            status=entry.status.value,
            source_id=entry.source_id,
            stage=entry.stage,
            error_type=entry.error_type,
            error=entry.error_message,
            retry_count=entry.retry_count,
            next_retry_at=entry.next_retry_at,
            source_url=entry.source_url,
        )
    log_event(logger, logging.INFO, "dead_letters_listed", count=len(entries))
    return 0


def _cmd_dlq_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    logger.info(json.dumps(dlq.dlq_stats(conn), indent=2, sort_keys=True))
    return 0


def _cmd_dlq_redrive(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        staging_id = redrive_dead_letter(conn, args.dead_letter_id, notes=args.notes)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "dlq_redrive_error", dead_letter_id=args.dead_letter_id, error=str(exc))
        return 1
    enqueue_job(conn, "process_staging", None, debounce=True)
    log_event(logger, logging.INFO, "dlq_redriven", dead_letter_id=args.dead_letter_id, staging_id=staging_id)
    return 0


def _cmd_dlq_discard(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        discarded = dlq.mark_discarded(conn, args.dead_letter_id, args.notes)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "dlq_discard_error", error=str(exc))
        return 1
    if not discarded:
        log_event(logger, logging.ERROR, "dlq_discard_error", dead_letter_id=args.dead_letter_id, error="not open")
        return 1
    log_event(logger, logging.INFO, "dlq_discarded", dead_letter_id=args.dead_letter_id)
    return 0


def _cmd_dlq_reset(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    if not dlq.reset_to_pending(conn, args.dead_letter_id):
        log_event(logger, logging.ERROR, "dlq_reset_error", dead_letter_id=args.dead_letter_id, error="not open")
        return 1
    log_event(logger, logging.INFO, "dlq_reset", dead_letter_id=args.dead_letter_id)
    return 0


def _cmd_staging_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    log_event(logger, logging.INFO, "staging_stats", **staging_counts(conn))
    return 0


def _cmd_events_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    for event in list_events(conn, source_id=args.source_id, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "event",
            event_id=event.get("id"),
            title=event.get("title"),
            starts_at=event.get("starts_at"),
            category=event.get("category"),
            incomplete=event.get("extraction_incomplete"),
            source_id=event.get("source_id"),
        )
    log_event(logger, logging.INFO, "events_total", count=count_events(conn))
    return 0


def _cmd_discover(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    payload: dict[str, object] = {"municipality": args.municipality}
    if args.lat is not None and args.lng is not None:
        payload["lat"] = args.lat
        payload["lng"] = args.lng
    if not args.now:
        job_id = enqueue_job(conn, "discover_sources", payload)
        log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type="discover_sources")
        return 0
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    deps = build_collaborators(config)
    result = discover_for_municipality(
        conn,
        args.municipality,
        search_fn=deps.search_fn,
        llm=deps.ai_parser,
        config=config,
        notifier=deps.notifier,
        coordinates=(args.lat, args.lng) if args.lat is not None and args.lng is not None else None,
    )
    logger.info(json.dumps(dataclasses.asdict(result), indent=2, sort_keys=True))
    return 0 if result.status in {"completed", "saturated"} else 1


def _cmd_discover_runs(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    for run in list_discovery_runs(conn, limit=args.limit):
        log_event(logger, logging.INFO, "discovery_run", **run)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "db_migrated", backend=conn.backend)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    payload: dict[str, object] = {}
    if args.source_id:
        payload["source_id"] = args.source_id
    conn = init_db(args.db)
    job_id = enqueue_job(conn, args.job_type, payload, debounce=args.debounce)
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    for job in list_jobs(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
            result=job.result,
        )
    return 0


def _breaker_dict(state: CircuitBreakerState) -> dict[str, object]:
    data = dataclasses.asdict(state)
    data["state"] = state.state.value
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eventvigil", description="EventVigil operator CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state database (defaults to EV_DB_URL or EV_DATA_DIR)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_subparsers.add_parser("add", help="Add or update a source")
    sources_add.add_argument("--id", required=True, help="Source id")
    sources_add.add_argument("--name", required=True, help="Source name")
    sources_add.add_argument("--kind", default="html", choices=["html", "feed"], help="Source kind")
    sources_add.add_argument("--url", required=True, help="Agenda page or feed URL")
    sources_add.add_argument("--municipality", default=None)
    sources_add.add_argument("--category-hint", default=None)
    sources_add.add_argument(
        "--enabled",
        dest="enabled",
        action="store_true",
        default=True,
        help="Enable the source",
    )
    sources_add.add_argument(
        "--disabled",
        dest="enabled",
        action="store_false",
        help="Disable the source",
    )
    sources_add.add_argument(
        "--frequency-minutes",
        type=int,
        default=360,
        help="Fetch interval in minutes",
    )
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_show = sources_subparsers.add_parser("show", help="Show a source with breaker state")
    sources_show.add_argument("source_id", help="Source id")
    sources_show.set_defaults(func=_cmd_sources_show)

    sources_enable = sources_subparsers.add_parser("enable", help="Re-enable a source")
    sources_enable.add_argument("source_id", help="Source id")
    sources_enable.add_argument(
        "--reset-breaker",
        action="store_true",
        help="Also close the source's circuit breaker",
    )
    sources_enable.set_defaults(func=_cmd_sources_enable)

    sources_disable = sources_subparsers.add_parser("disable", help="Disable a source")
    sources_disable.add_argument("source_id", help="Source id")
    sources_disable.add_argument("--reason", default="manual", help="Disabled reason")
    sources_disable.set_defaults(func=_cmd_sources_disable)

    breakers_parser = subparsers.add_parser("breakers", help="Circuit breaker commands")
    breakers_subparsers = breakers_parser.add_subparsers(dest="breakers_command", required=True)

    breakers_list = breakers_subparsers.add_parser("list", help="List open and half-open circuits")
    breakers_list.set_defaults(func=_cmd_breakers_list)

    breakers_reset = breakers_subparsers.add_parser("reset", help="Close a circuit")
    breakers_reset.add_argument("source_id", help="Source id")
    breakers_reset.set_defaults(func=_cmd_breakers_reset)

    dlq_parser = subparsers.add_parser("dlq", help="Dead letter queue commands")
    dlq_subparsers = dlq_parser.add_subparsers(dest="dlq_command", required=True)

    dlq_list = dlq_subparsers.add_parser("list", help="List dead letters")
    dlq_list.add_argument(
        "--status",
        choices=["pending", "retrying", "resolved", "discarded"],
        default=None,
    )
    dlq_list.add_argument("--source-id", default=None)
    dlq_list.add_argument("--limit", type=int, default=50)
    dlq_list.set_defaults(func=_cmd_dlq_list)

    dlq_stats_parser = dlq_subparsers.add_parser("stats", help="Dead letter counts")
    dlq_stats_parser.set_defaults(func=_cmd_dlq_stats)

    dlq_redrive = dlq_subparsers.add_parser("redrive", help="Return a dead letter to staging")
    dlq_redrive.add_argument("dead_letter_id", type=int)
    dlq_redrive.add_argument("--notes", default="manual redrive")
    dlq_redrive.set_defaults(func=_cmd_dlq_redrive)

    dlq_discard = dlq_subparsers.add_parser("discard", help="Close a dead letter without retrying")
    dlq_discard.add_argument("dead_letter_id", type=int)
    dlq_discard.add_argument("--notes", required=True, help="Why the entry is discarded")
    dlq_discard.set_defaults(func=_cmd_dlq_discard)

    dlq_reset = dlq_subparsers.add_parser("reset", help="Give a dead letter a fresh retry budget")
    dlq_reset.add_argument("dead_letter_id", type=int)
    dlq_reset.set_defaults(func=_cmd_dlq_reset)

    staging_parser = subparsers.add_parser("staging", help="Staging queue commands")
    staging_subparsers = staging_parser.add_subparsers(dest="staging_command", required=True)

    staging_stats = staging_subparsers.add_parser("stats", help="Staging counts by status")
    staging_stats.set_defaults(func=_cmd_staging_stats)

    events_parser = subparsers.add_parser("events", help="Stored events")
    events_subparsers = events_parser.add_subparsers(dest="events_command", required=True)

    events_list = events_subparsers.add_parser("list", help="List recent events")
    events_list.add_argument("--source-id", default=None)
    events_list.add_argument("--limit", type=int, default=20)
    events_list.set_defaults(func=_cmd_events_list)

    discover_parser = subparsers.add_parser("discover", help="Discover agenda sources")
    discover_subparsers = discover_parser.add_subparsers(dest="discover_command", required=True)

    discover_run = discover_subparsers.add_parser("run", help="Discover sources for a municipality")
    discover_run.add_argument("municipality")
    discover_run.add_argument("--lat", type=float, default=None)
    discover_run.add_argument("--lng", type=float, default=None)
    discover_run.add_argument(
        "--now",
        action="store_true",
        help="Run inline instead of enqueuing a discover_sources job",
    )
    discover_run.set_defaults(func=_cmd_discover)

    discover_runs = discover_subparsers.add_parser("runs", help="List recent discovery runs")
    discover_runs.add_argument("--limit", type=int, default=20)
    discover_runs.set_defaults(func=_cmd_discover_runs)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=WORKER_JOB_TYPES, help="Job type to enqueue")
    jobs_enqueue.add_argument("--source-id", help="Source id for source-scoped jobs")
    jobs_enqueue.add_argument(
        "--debounce",
        action="store_true",
        help="Avoid enqueuing if a job of the same type is queued/running",
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
