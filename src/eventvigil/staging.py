"""Durable claim-based staging queue.

Rows are keyed by ``source_url``. Workers take rows with :func:`claim_batch`,
which leases them for ``lease_seconds``; a lease that runs out without
:func:`complete` makes the row claimable again. Every status change is
checked against :data:`ALLOWED_TRANSITIONS`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from . import dlq
from .config import DlqConfig, StagingConfig, default_config
from .models import StagingRecord, StagingStatus
from .utils import json_dumps, json_loads_or, log_event, to_iso, utc_now

logger = logging.getLogger("eventvigil.staging")

ALLOWED_TRANSITIONS: dict[StagingStatus, frozenset[StagingStatus]] = {
    StagingStatus.PENDING: frozenset(
        {StagingStatus.PENDING, StagingStatus.CLAIMED, StagingStatus.DEAD}
    ),
    StagingStatus.CLAIMED: frozenset(
        {
            StagingStatus.CLAIMED,
            StagingStatus.COMPLETED,
            StagingStatus.PENDING,
            StagingStatus.PENDING_WITH_BACKOFF,
            StagingStatus.DEAD,
        }
    ),
    StagingStatus.PENDING_WITH_BACKOFF: frozenset(
        {StagingStatus.PENDING, StagingStatus.CLAIMED, StagingStatus.DEAD}
    ),
    StagingStatus.COMPLETED: frozenset({StagingStatus.PENDING}),
    StagingStatus.DEAD: frozenset({StagingStatus.PENDING}),
}

_STAGING_COLUMNS = """
    id, source_id, source_url, payload_json, status, retry_count, next_eligible_at,
    claimed_by, claimed_at, lease_expires_at, last_error, parsing_method, created_at, updated_at
"""


def is_allowed_transition(current: StagingStatus, target: StagingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def enqueue(
    conn: Any,
    source_id: str,
    source_url: str,
    payload: dict[str, object],
    now: datetime | None = None,
) -> int:
    now = now or utc_now()
    now_iso = to_iso(now)
    payload_json = json_dumps(payload)
    with conn.transaction():
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO staging_events
                (source_id, source_url, payload_json, status, retry_count, created_at, updated_at)
            VALUES (?, ?, ?, 'pending', 0, ?, ?)
            """,
            (source_id, source_url, payload_json, now_iso, now_iso),
        )
        inserted = cursor.rowcount == 1
        current = _lock_by_url(conn, source_url)
        if current is None:
            raise RuntimeError(f"staging row for {source_url} vanished during enqueue")
        if not inserted:
            _refresh_existing(conn, current, source_id, payload_json, now_iso)
    log_event(
        logger,
        logging.DEBUG,
        "staging_enqueued",
        staging_id=current.id,
        source_id=source_id,
        inserted=inserted,
    )
    return current.id


def _refresh_existing(
    conn: Any, current: StagingRecord, source_id: str, payload_json: str, now_iso: str
) -> None:
    status = current.status
    if status == StagingStatus.DEAD:
        # Quarantined rows leave the dead state only through requeue_from_dead.
        _reject(current, StagingStatus.PENDING, "enqueue")
        return
    live_claim = (
        status == StagingStatus.CLAIMED
        and current.lease_expires_at is not None
        and current.lease_expires_at > now_iso
    )
    if live_claim:
        conn.execute(
            "UPDATE staging_events SET payload_json = ?, updated_at = ? WHERE id = ?",
            (payload_json, now_iso, current.id),
        )
        return
    if status == StagingStatus.COMPLETED and json_dumps(current.payload) == payload_json:
        # Unchanged listing item; nothing to reprocess.
        return
    if not _check_transition(current, StagingStatus.PENDING, "enqueue"):
        return
    conn.execute(
        """
        UPDATE staging_events
        SET source_id = ?, payload_json = ?, status = 'pending', retry_count = 0,
            next_eligible_at = NULL, claimed_by = NULL, claimed_at = NULL,
            lease_expires_at = NULL, last_error = NULL, updated_at = ?
        WHERE id = ?
        """,
        (source_id, payload_json, now_iso, current.id),
    )


def claim_batch(
    conn: Any,
    worker_id: str,
    limit: int,
    lease_seconds: int,
    now: datetime | None = None,
) -> list[StagingRecord]:
    now = now or utc_now()
    now_iso = to_iso(now)
    lease_expires_at = to_iso(now + timedelta(seconds=lease_seconds))
    skip_locked = " FOR UPDATE SKIP LOCKED" if conn.is_postgres else ""
    with conn.transaction():
        cursor = conn.execute(
            f"""
            UPDATE staging_events
            SET status = 'claimed',
                claimed_by = ?,
                claimed_at = ?,
                lease_expires_at = ?,
                updated_at = ?
            WHERE id IN (
                SELECT id FROM staging_events
                WHERE status = 'pending'
                   OR (status = 'pending_with_backoff' AND next_eligible_at <= ?)
                   OR (status = 'claimed' AND lease_expires_at <= ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?{skip_locked}
            )
            RETURNING {_STAGING_COLUMNS}
            """,
            (worker_id, now_iso, lease_expires_at, now_iso, now_iso, now_iso, limit),
        )
        rows = cursor.fetchall()
    records = sorted((_row_to_record(row) for row in rows), key=lambda record: record.id)
    if records:
        log_event(
            logger,
            logging.INFO,
            "staging_claimed",
            count=len(records),
            worker_id=worker_id,
            lease_expires_at=lease_expires_at,
        )
    return records


def complete(
    conn: Any,
    staging_id: int,
    worker_id: str | None = None,
    parsing_method: str | None = None,
    now: datetime | None = None,
) -> bool:
    now_iso = to_iso(now or utc_now())
    with conn.transaction():
        current = _lock_by_id(conn, staging_id)
        if current is None:
            return False
        if not _check_transition(current, StagingStatus.COMPLETED, "complete"):
            return False
        if not _owned_by(current, worker_id, "complete"):
            return False
        conn.execute(
            """
            UPDATE staging_events
            SET status = 'completed',
                parsing_method = COALESCE(?, parsing_method),
                lease_expires_at = NULL,
                next_eligible_at = NULL,
                last_error = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (parsing_method, now_iso, staging_id),
        )
    log_event(
        logger,
        logging.DEBUG,
        "staging_completed",
        staging_id=staging_id,
        parsing_method=parsing_method,
    )
    return True


def fail_and_reschedule(
    conn: Any,
    staging_id: int,
    reason: str,
    error_type: str = "processing_error",
    stage: str = "process",
    now: datetime | None = None,
    config: StagingConfig | None = None,
    dlq_config: DlqConfig | None = None,
    worker_id: str | None = None,
) -> StagingStatus | None:
    config = config or default_config().staging
    now = now or utc_now()
    now_iso = to_iso(now)
    with conn.transaction():
        current = _lock_by_id(conn, staging_id)
        if current is None:
            return None
        if not _owned_by(current, worker_id, "fail_and_reschedule"):
            return current.status
        retry_count = current.retry_count + 1
        if retry_count < config.max_retries:
            if not _check_transition(current, StagingStatus.PENDING_WITH_BACKOFF, "fail_and_reschedule"):
                return current.status
            delay = config.base_delay_seconds * (2 ** retry_count)
            next_eligible_at = to_iso(now + timedelta(seconds=delay))
            conn.execute(
                """
                UPDATE staging_events
                SET status = 'pending_with_backoff',
                    retry_count = ?,
                    next_eligible_at = ?,
                    claimed_by = NULL,
                    claimed_at = NULL,
                    lease_expires_at = NULL,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (retry_count, next_eligible_at, reason, now_iso, staging_id),
            )
            result = StagingStatus.PENDING_WITH_BACKOFF
        else:
            if not _check_transition(current, StagingStatus.DEAD, "fail_and_reschedule"):
                return current.status
            _move_to_dead(conn, current, retry_count, reason, error_type, stage, now, dlq_config)
            result = StagingStatus.DEAD
    log_event(
        logger,
        logging.WARNING,
        "staging_failed",
        staging_id=staging_id,
        source_id=current.source_id,
        stage=stage,
        retry_count=retry_count,
        status=result.value,
        reason=reason,
    )
    return result


def release(
    conn: Any,
    staging_id: int,
    worker_id: str,
    delay_seconds: int = 0,
    now: datetime | None = None,
) -> bool:
    """Hand a claim back without spending a retry.

    With ``delay_seconds`` the row waits in pending_with_backoff, so a row
    deferred by an open circuit is not immediately reclaimed.
    """
    now = now or utc_now()
    now_iso = to_iso(now)
    target = StagingStatus.PENDING_WITH_BACKOFF if delay_seconds > 0 else StagingStatus.PENDING
    with conn.transaction():
        current = _lock_by_id(conn, staging_id)
        if current is None:
            return False
        if current.status != StagingStatus.CLAIMED:
            _reject(current, target, "release")
            return False
        if not _owned_by(current, worker_id, "release"):
            return False
        next_eligible_at = to_iso(now + timedelta(seconds=delay_seconds)) if delay_seconds > 0 else None
        conn.execute(
            """
            UPDATE staging_events
            SET status = ?,
                next_eligible_at = ?,
                claimed_by = NULL,
                claimed_at = NULL,
                lease_expires_at = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (target.value, next_eligible_at, now_iso, staging_id),
        )
    log_event(
        logger,
        logging.DEBUG,
        "staging_released",
        staging_id=staging_id,
        worker_id=worker_id,
        delay_seconds=delay_seconds,
    )
    return True


def mark_dead(
    conn: Any,
    staging_id: int,
    reason: str,
    error_type: str = "manual",
    stage: str = "process",
    now: datetime | None = None,
    dlq_config: DlqConfig | None = None,
) -> bool:
    now = now or utc_now()
    with conn.transaction():
        current = _lock_by_id(conn, staging_id)
        if current is None:
            return False
        if not _check_transition(current, StagingStatus.DEAD, "mark_dead"):
            return False
        _move_to_dead(conn, current, current.retry_count, reason, error_type, stage, now, dlq_config)
    log_event(logger, logging.WARNING, "staging_marked_dead", staging_id=staging_id, reason=reason)
    return True


def requeue_from_dead(conn: Any, staging_id: int, now: datetime | None = None) -> bool:
    now_iso = to_iso(now or utc_now())
    with conn.transaction():
        current = _lock_by_id(conn, staging_id)
        if current is None:
            return False
        if current.status != StagingStatus.DEAD:
            _reject(current, StagingStatus.PENDING, "requeue_from_dead")
            return False
        conn.execute(
            """
            UPDATE staging_events
            SET status = 'pending', retry_count = 0, next_eligible_at = NULL,
                claimed_by = NULL, claimed_at = NULL, lease_expires_at = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (now_iso, staging_id),
        )
    log_event(logger, logging.INFO, "staging_requeued", staging_id=staging_id)
    return True


def get_staged(conn: Any, staging_id: int) -> StagingRecord | None:
    cursor = conn.execute(
        f"SELECT {_STAGING_COLUMNS} FROM staging_events WHERE id = ?", (staging_id,)
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_record(row)


def get_staged_by_url(conn: Any, source_url: str) -> StagingRecord | None:
    cursor = conn.execute(
        f"SELECT {_STAGING_COLUMNS} FROM staging_events WHERE source_url = ?", (source_url,)
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_record(row)


def staging_counts(conn: Any) -> dict[str, int]:
    counts = {status.value: 0 for status in StagingStatus}
    cursor = conn.execute("SELECT status, COUNT(*) FROM staging_events GROUP BY status")
    for status, count in cursor.fetchall():
        counts[status] = int(count)
    return counts


def purge_completed(conn: Any, older_than_days: int, now: datetime | None = None) -> int:
    cutoff = to_iso((now or utc_now()) - timedelta(days=older_than_days))
    cursor = conn.execute(
        "DELETE FROM staging_events WHERE status = 'completed' AND updated_at < ?",
        (cutoff,),
    )
    conn.commit()
    removed = cursor.rowcount or 0
    if removed:
        log_event(logger, logging.INFO, "staging_purged", removed=removed)
    return removed


def _move_to_dead(
    conn: Any,
    current: StagingRecord,
    retry_count: int,
    reason: str,
    error_type: str,
    stage: str,
    now: datetime,
    dlq_config: DlqConfig | None,
) -> None:
    now_iso = to_iso(now)
    conn.execute(
        """
        UPDATE staging_events
        SET status = 'dead',
            retry_count = ?,
            next_eligible_at = NULL,
            claimed_by = NULL,
            claimed_at = NULL,
            lease_expires_at = NULL,
            last_error = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (retry_count, reason, now_iso, current.id),
    )
    dlq.add_dead_letter(
        conn,
        stage=stage,
        error_type=error_type,
        error_message=reason,
        payload=current.payload,
        staging_id=current.id,
        source_id=current.source_id,
        source_url=current.source_url,
        config=dlq_config,
        now=now,
    )


def _check_transition(current: StagingRecord, target: StagingStatus, operation: str) -> bool:
    if is_allowed_transition(current.status, target):
        return True
    _reject(current, target, operation)
    return False


def _reject(current: StagingRecord, target: StagingStatus, operation: str) -> None:
    log_event(
        logger,
        logging.WARNING,
        "staging_transition_rejected",
        staging_id=current.id,
        operation=operation,
        current=current.status.value,
        target=target.value,
    )


def _owned_by(current: StagingRecord, worker_id: str | None, operation: str) -> bool:
    if worker_id is None or current.claimed_by == worker_id:
        return True
    log_event(
        logger,
        logging.WARNING,
        "staging_owner_mismatch",
        staging_id=current.id,
        operation=operation,
        worker_id=worker_id,
        claimed_by=current.claimed_by,
    )
    return False


def _lock_by_id(conn: Any, staging_id: int) -> StagingRecord | None:
    lock_clause = " FOR UPDATE" if conn.is_postgres else ""
    cursor = conn.execute(
        f"SELECT {_STAGING_COLUMNS} FROM staging_events WHERE id = ?{lock_clause}",
        (staging_id,),
    )
    row = cursor.fetchone()
    return _row_to_record(row) if row else None


def _lock_by_url(conn: Any, source_url: str) -> StagingRecord | None:
    lock_clause = " FOR UPDATE" if conn.is_postgres else ""
    cursor = conn.execute(
        f"SELECT {_STAGING_COLUMNS} FROM staging_events WHERE source_url = ?{lock_clause}",
        (source_url,),
    )
    row = cursor.fetchone()
    return _row_to_record(row) if row else None


def _row_to_record(row: tuple) -> StagingRecord:
    return StagingRecord(
        id=int(row[0]),
        source_id=row[1],
        source_url=row[2],
        payload=json_loads_or(row[3], {}),
        status=StagingStatus(row[4]),
        retry_count=int(row[5]),
        next_eligible_at=row[6],
        claimed_by=row[7],
        claimed_at=row[8],
        lease_expires_at=row[9],
        last_error=row[10],
        parsing_method=row[11],
        created_at=row[12],
        updated_at=row[13],
    )
