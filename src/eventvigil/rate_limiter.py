from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import AdaptiveConfig, RateLimitsConfig, StageBudget, default_config
from .models import RateLimitDecision, Source
from .utils import log_event, parse_iso, to_iso, utc_now

logger = logging.getLogger("eventvigil.rate_limiter")

_FALLBACK_BUDGET = StageBudget(limit=20, window_seconds=60)


def check_and_consume(
    conn: Any,
    actor_key: str,
    limit: int,
    window_seconds: int,
    now: datetime | None = None,
) -> RateLimitDecision:
    now = now or utc_now()
    now_iso = to_iso(now)
    window_start = to_iso(now - timedelta(seconds=window_seconds))
    with conn.transaction():
        if conn.is_postgres:
            # SQLite serializes writers via BEGIN IMMEDIATE; PostgreSQL needs
            # an explicit per-actor lock so the count and insert stay paired.
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (actor_key,))
        cursor = conn.execute(
            """
            SELECT COUNT(*), MIN(consumed_at)
            FROM rate_limit_events
            WHERE actor_key = ? AND consumed_at > ?
            """,
            (actor_key, window_start),
        )
        count, oldest = cursor.fetchone()
        count = int(count or 0)
        if count >= limit:
            retry_after = float(window_seconds)
            if oldest:
                retry_after = (
                    parse_iso(oldest) + timedelta(seconds=window_seconds) - now
                ).total_seconds()
            retry_after = max(retry_after, 0.001)
            log_event(
                logger,
                logging.DEBUG,
                "rate_limit_denied",
                actor_key=actor_key,
                limit=limit,
                retry_after=round(retry_after, 3),
            )
            return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)
        conn.execute(
            "INSERT INTO rate_limit_events (actor_key, consumed_at) VALUES (?, ?)",
            (actor_key, now_iso),
        )
    return RateLimitDecision(allowed=True, remaining=limit - count - 1, retry_after_seconds=0.0)


def stage_budget(stage: str, config: RateLimitsConfig | None = None) -> StageBudget:
    config = config or default_config().rate_limits
    return config.stages.get(stage) or config.stages.get("default") or _FALLBACK_BUDGET


def check_stage_budget(
    conn: Any,
    stage: str,
    actor: str,
    config: RateLimitsConfig | None = None,
    now: datetime | None = None,
) -> RateLimitDecision:
    budget = stage_budget(stage, config)
    return check_and_consume(conn, f"{stage}:{actor}", budget.limit, budget.window_seconds, now=now)


def purge_rate_limit_events(conn: Any, older_than_seconds: int, now: datetime | None = None) -> int:
    cutoff = to_iso((now or utc_now()) - timedelta(seconds=older_than_seconds))
    cursor = conn.execute("DELETE FROM rate_limit_events WHERE consumed_at < ?", (cutoff,))
    conn.commit()
    removed = cursor.rowcount or 0
    if removed:
        log_event(logger, logging.INFO, "rate_limit_events_purged", removed=removed)
    return removed


def record_rate_limited(
    conn: Any,
    source_id: str,
    http_status: int,
    config: AdaptiveConfig | None = None,
    now: datetime | None = None,
) -> int | None:
    config = config or default_config().adaptive
    now_iso = to_iso(now or utc_now())
    doubled_base = min(config.base_interval_ms * 2, config.max_interval_ms)
    cursor = conn.execute(
        """
        UPDATE sources
        SET dynamic_rate_limit_ms = CASE
                WHEN dynamic_rate_limit_ms < ? THEN ?
                WHEN dynamic_rate_limit_ms * 2 > ? THEN ?
                ELSE dynamic_rate_limit_ms * 2
            END,
            rate_limit_increased_at = ?,
            rate_limit_increase_count = rate_limit_increase_count + 1,
            last_403_429_at = ?,
            updated_at = ?
        WHERE id = ?
        RETURNING dynamic_rate_limit_ms, rate_limit_increase_count
        """,
        (
            config.base_interval_ms,
            doubled_base,
            config.max_interval_ms,
            config.max_interval_ms,
            now_iso,
            now_iso,
            now_iso,
            source_id,
        ),
    )
    rows = cursor.fetchall()
    conn.commit()
    if not rows:
        return None
    interval_ms, increase_count = rows[0]
    log_event(
        logger,
        logging.WARNING,
        "rate_limit_increased",
        source_id=source_id,
        http_status=http_status,
        interval_ms=interval_ms,
        increase_count=increase_count,
    )
    return int(interval_ms)


def record_request_success(
    conn: Any,
    source_id: str,
    config: AdaptiveConfig | None = None,
    now: datetime | None = None,
) -> None:
    config = config or default_config().adaptive
    now = now or utc_now()
    now_iso = to_iso(now)
    decay_cutoff = to_iso(now - timedelta(hours=config.decay_after_hours))
    base = config.base_interval_ms
    with conn.transaction():
        conn.execute(
            "UPDATE sources SET last_success_at = ? WHERE id = ?",
            (now_iso, source_id),
        )
        # Each quiet period halves the interval; reaching the base clears
        # the adaptive state entirely.
        cursor = conn.execute(
            """
            UPDATE sources
            SET dynamic_rate_limit_ms = CASE
                    WHEN dynamic_rate_limit_ms / 2 <= ? THEN ?
                    ELSE dynamic_rate_limit_ms / 2
                END,
                rate_limit_increased_at = CASE
                    WHEN dynamic_rate_limit_ms / 2 <= ? THEN NULL
                    ELSE ?
                END,
                rate_limit_increase_count = CASE
                    WHEN dynamic_rate_limit_ms / 2 <= ? THEN 0
                    ELSE rate_limit_increase_count
                END,
                updated_at = ?
            WHERE id = ?
              AND rate_limit_increased_at IS NOT NULL
              AND rate_limit_increased_at <= ?
            RETURNING dynamic_rate_limit_ms
            """,
            (base, base, base, now_iso, base, now_iso, source_id, decay_cutoff),
        )
        rows = cursor.fetchall()
    if rows:
        log_event(
            logger,
            logging.INFO,
            "rate_limit_decayed",
            source_id=source_id,
            interval_ms=rows[0][0],
        )


def effective_interval_ms(source: Source) -> int:
    configured = source.config.get("rate_limit_ms") if source.config else None
    try:
        floor = int(configured) if configured is not None else 0
    except (TypeError, ValueError):
        floor = 0
    return max(int(source.dynamic_rate_limit_ms or 0), floor)


def pace(source: Source, sleep: Callable[[float], None] = time.sleep) -> float:
    seconds = effective_interval_ms(source) / 1000.0
    if seconds > 0:
        sleep(seconds)
    return seconds
