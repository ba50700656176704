"""Per-source circuit breaker persisted in ``circuit_breakers``.

Every transition happens inside one store transaction so concurrent workers
agree on the state, and a restarted worker resumes from the stored row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .config import BreakerConfig, default_config
from .models import CircuitBreakerState, CircuitState
from .notify import safe_notify
from .storage import record_health_alert
from .utils import log_event, to_iso, utc_now

logger = logging.getLogger("eventvigil.circuit_breaker")

_BREAKER_COLUMNS = """
    source_id, state, failure_count, consecutive_opens, last_failure_at,
    last_failure_reason, last_success_at, opened_at, cooldown_until, probe_started_at
"""


def compute_cooldown_seconds(consecutive_opens: int, min_cooldown: int, max_cooldown: int) -> int:
    cooldown = min_cooldown * (2 ** max(consecutive_opens, 0))
    return int(min(max(cooldown, min_cooldown), max_cooldown))


def get_breaker(conn: Any, source_id: str) -> CircuitBreakerState:
    cursor = conn.execute(
        f"SELECT {_BREAKER_COLUMNS} FROM circuit_breakers WHERE source_id = ?",
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return _closed_state(source_id)
    return _row_to_breaker(row)


def can_attempt(
    conn: Any,
    source_id: str,
    config: BreakerConfig | None = None,
    now: datetime | None = None,
) -> bool:
    config = config or default_config().breaker
    now = now or utc_now()
    now_iso = to_iso(now)
    with conn.transaction():
        breaker = get_breaker(conn, source_id)
        if breaker.state == CircuitState.CLOSED:
            return True
        if breaker.state == CircuitState.OPEN:
            if not breaker.cooldown_until or breaker.cooldown_until > now_iso:
                return False
            cursor = conn.execute(
                """
                UPDATE circuit_breakers
                SET state = 'HALF_OPEN', probe_started_at = ?, updated_at = ?
                WHERE source_id = ? AND state = 'OPEN' AND cooldown_until <= ?
                """,
                (now_iso, now_iso, source_id, now_iso),
            )
            allowed = cursor.rowcount == 1
            if allowed:
                log_event(logger, logging.INFO, "circuit_half_open", source_id=source_id)
            return allowed
        # HALF_OPEN: one probe at a time; a probe that never reported back
        # is given up after probe_timeout_seconds.
        probe_cutoff = to_iso(now - timedelta(seconds=config.probe_timeout_seconds))
        cursor = conn.execute(
            """
            UPDATE circuit_breakers
            SET probe_started_at = ?, updated_at = ?
            WHERE source_id = ? AND state = 'HALF_OPEN'
              AND (probe_started_at IS NULL OR probe_started_at <= ?)
            """,
            (now_iso, now_iso, source_id, probe_cutoff),
        )
        return cursor.rowcount == 1


def is_available(
    conn: Any,
    source_id: str,
    config: BreakerConfig | None = None,
    now: datetime | None = None,
) -> bool:
    """Read-only twin of :func:`can_attempt` that never takes the probe slot."""
    config = config or default_config().breaker
    now = now or utc_now()
    now_iso = to_iso(now)
    breaker = get_breaker(conn, source_id)
    if breaker.state == CircuitState.CLOSED:
        return True
    if breaker.state == CircuitState.OPEN:
        return bool(breaker.cooldown_until) and breaker.cooldown_until <= now_iso
    probe_cutoff = to_iso(now - timedelta(seconds=config.probe_timeout_seconds))
    return breaker.probe_started_at is None or breaker.probe_started_at <= probe_cutoff


def record_success(conn: Any, source_id: str, now: datetime | None = None) -> CircuitBreakerState:
    now_iso = to_iso(now or utc_now())
    with conn.transaction():
        previous = _lock_breaker(conn, source_id, now_iso)
        conn.execute(
            """
            UPDATE circuit_breakers
            SET state = 'CLOSED',
                failure_count = 0,
                consecutive_opens = 0,
                opened_at = NULL,
                cooldown_until = NULL,
                probe_started_at = NULL,
                last_success_at = ?,
                updated_at = ?
            WHERE source_id = ?
            """,
            (now_iso, now_iso, source_id),
        )
    if previous.state != CircuitState.CLOSED:
        log_event(
            logger,
            logging.INFO,
            "circuit_closed",
            source_id=source_id,
            previous_state=previous.state.value,
        )
    return get_breaker(conn, source_id)


def record_failure(
    conn: Any,
    source_id: str,
    reason: str,
    config: BreakerConfig | None = None,
    now: datetime | None = None,
    notifier: Any = None,
) -> CircuitBreakerState:
    config = config or default_config().breaker
    now = now or utc_now()
    now_iso = to_iso(now)
    opened = False
    with conn.transaction():
        current = _lock_breaker(conn, source_id, now_iso)
        failure_count = current.failure_count + 1
        should_open = current.state == CircuitState.HALF_OPEN or (
            current.state == CircuitState.CLOSED and failure_count >= config.failure_threshold
        )
        if should_open:
            cooldown = compute_cooldown_seconds(
                current.consecutive_opens,
                config.min_cooldown_seconds,
                config.max_cooldown_seconds,
            )
            cooldown_until = to_iso(now + timedelta(seconds=cooldown))
            conn.execute(
                """
                UPDATE circuit_breakers
                SET state = 'OPEN',
                    failure_count = ?,
                    consecutive_opens = consecutive_opens + 1,
                    opened_at = ?,
                    cooldown_until = ?,
                    probe_started_at = NULL,
                    last_failure_at = ?,
                    last_failure_reason = ?,
                    updated_at = ?
                WHERE source_id = ?
                """,
                (failure_count, now_iso, cooldown_until, now_iso, reason, now_iso, source_id),
            )
            opened = True
        else:
            conn.execute(
                """
                UPDATE circuit_breakers
                SET failure_count = ?,
                    last_failure_at = ?,
                    last_failure_reason = ?,
                    updated_at = ?
                WHERE source_id = ?
                """,
                (failure_count, now_iso, reason, now_iso, source_id),
            )
    state = get_breaker(conn, source_id)
    if opened:
        log_event(
            logger,
            logging.WARNING,
            "circuit_opened",
            source_id=source_id,
            failure_count=state.failure_count,
            consecutive_opens=state.consecutive_opens,
            cooldown_until=state.cooldown_until,
            reason=reason,
        )
        record_health_alert(
            conn,
            source_id,
            "circuit_opened",
            f"{reason} (cooldown until {state.cooldown_until})",
        )
        safe_notify(
            notifier,
            "circuit_opened",
            {
                "source_id": source_id,
                "reason": reason,
                "failure_count": state.failure_count,
                "cooldown_until": state.cooldown_until,
            },
        )
    else:
        log_event(
            logger,
            logging.DEBUG,
            "circuit_failure_recorded",
            source_id=source_id,
            failure_count=state.failure_count,
            state=state.state.value,
        )
    return state


def reset_breaker(conn: Any, source_id: str) -> CircuitBreakerState:
    state = record_success(conn, source_id)
    log_event(logger, logging.INFO, "circuit_reset", source_id=source_id)
    return state


def list_open_circuits(conn: Any) -> list[CircuitBreakerState]:
    cursor = conn.execute(
        f"""
        SELECT {_BREAKER_COLUMNS}
        FROM circuit_breakers
        WHERE state <> 'CLOSED'
        ORDER BY cooldown_until ASC
        """
    )
    return [_row_to_breaker(row) for row in cursor.fetchall()]


def breaker_summary(conn: Any) -> dict[str, int]:
    cursor = conn.execute(
        """
        SELECT COALESCE(cb.state, 'CLOSED'), COUNT(*)
        FROM sources s
        LEFT JOIN circuit_breakers cb ON cb.source_id = s.id
        GROUP BY COALESCE(cb.state, 'CLOSED')
        """
    )
    summary = {state.value: 0 for state in CircuitState}
    for state, count in cursor.fetchall():
        summary[state] = int(count)
    return summary


def _lock_breaker(conn: Any, source_id: str, now_iso: str) -> CircuitBreakerState:
    conn.execute(
        """
        INSERT OR IGNORE INTO circuit_breakers (source_id, state, updated_at)
        VALUES (?, 'CLOSED', ?)
        """,
        (source_id, now_iso),
    )
    lock_clause = " FOR UPDATE" if conn.is_postgres else ""
    cursor = conn.execute(
        f"SELECT {_BREAKER_COLUMNS} FROM circuit_breakers WHERE source_id = ?{lock_clause}",
        (source_id,),
    )
    return _row_to_breaker(cursor.fetchone())


def _closed_state(source_id: str) -> CircuitBreakerState:
    return CircuitBreakerState(
        source_id=source_id,
        state=CircuitState.CLOSED,
        failure_count=0,
        consecutive_opens=0,
        last_failure_at=None,
        last_failure_reason=None,
        last_success_at=None,
        opened_at=None,
        cooldown_until=None,
        probe_started_at=None,
    )


def _row_to_breaker(row: tuple) -> CircuitBreakerState:
    (
        source_id,
        state,
        failure_count,
        consecutive_opens,
        last_failure_at,
        last_failure_reason,
        last_success_at,
        opened_at,
        cooldown_until,
        probe_started_at,
    ) = row
    return CircuitBreakerState(
        source_id=source_id,
        state=CircuitState(state),
        failure_count=int(failure_count),
        consecutive_opens=int(consecutive_opens),
        last_failure_at=last_failure_at,
        last_failure_reason=last_failure_reason,
        last_success_at=last_success_at,
        opened_at=opened_at,
        cooldown_until=cooldown_until,
        probe_started_at=probe_started_at,
    )
