from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .config import DlqConfig, default_config
from .models import DeadLetterEntry, DeadLetterStatus
from .notify import safe_notify
from .utils import json_dumps, json_loads_or, log_event, to_iso, utc_now

logger = logging.getLogger("eventvigil.dlq")

_DLQ_COLUMNS = """
    id, staging_id, source_id, source_url, stage, error_type, error_message, payload_json,
    retry_count, max_retries, next_retry_at, status, permanently_failed, resolution_notes,
    created_at, updated_at
"""


def add_dead_letter(
    conn: Any,
    *,
    stage: str,
    error_type: str,
    error_message: str | None,
    payload: dict[str, object] | None = None,
    staging_id: int | None = None,
    source_id: str | None = None,
    source_url: str | None = None,
    config: DlqConfig | None = None,
    now: datetime | None = None,
) -> int:
    """Quarantine a failed item and schedule its first automatic retry.

    A staging row that dies again after a re-drive reuses its existing entry,
    so the entry's retry_count keeps counting across re-drives and the
    schedule keeps backing off.
    """
    config = config or default_config().dlq
    now = now or utc_now()
    now_iso = to_iso(now)
    payload_json = json_dumps(payload or {})
    with conn.transaction():
        existing = None
        if staging_id is not None:
            cursor = conn.execute(
                """
                SELECT id, retry_count FROM dead_letters
                WHERE staging_id = ? AND status IN ('pending', 'retrying', 'resolved')
                ORDER BY id DESC
                LIMIT 1
                """,
                (staging_id,),
            )
            existing = cursor.fetchone()
        if existing:
            entry_id, retry_count = existing
            next_retry_at = to_iso(now + timedelta(seconds=_retry_delay(config, int(retry_count))))
            conn.execute(
                """
                UPDATE dead_letters
                SET stage = ?, error_type = ?, error_message = ?, payload_json = ?,
                    status = 'pending', next_retry_at = ?, resolution_notes = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (stage, error_type, error_message, payload_json, next_retry_at, now_iso, entry_id),
            )
        else:
            next_retry_at = to_iso(now + timedelta(seconds=_retry_delay(config, 0)))
            cursor = conn.execute(
                """
                INSERT INTO dead_letters
                    (staging_id, source_id, source_url, stage, error_type, error_message,
                     payload_json, retry_count, max_retries, next_retry_at, status,
                     permanently_failed, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, 'pending', 0, ?, ?)
                RETURNING id
                """,
                (
                    staging_id,
                    source_id,
                    source_url,
                    stage,
                    error_type,
                    error_message,
                    payload_json,
                    config.max_retries,
                    next_retry_at,
                    now_iso,
                    now_iso,
                ),
            )
            entry_id = cursor.fetchall()[0][0]
    log_event(
        logger,
        logging.WARNING,
        "dead_letter_added",
        dead_letter_id=entry_id,
        staging_id=staging_id,
        source_id=source_id,
        stage=stage,
        error_type=error_type,
        next_retry_at=next_retry_at,
    )
    return int(entry_id)


def get_dead_letter(conn: Any, entry_id: int) -> DeadLetterEntry | None:
    cursor = conn.execute(f"SELECT {_DLQ_COLUMNS} FROM dead_letters WHERE id = ?", (entry_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_entry(row)


def list_dead_letters(
    conn: Any,
    status: str | None = None,
    source_id: str | None = None,
    limit: int = 50,
) -> list[DeadLetterEntry]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if source_id:
        clauses.append("source_id = ?")
        params.append(source_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_DLQ_COLUMNS}
        FROM dead_letters
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_entry(row) for row in cursor.fetchall()]


def get_ready_for_retry(
    conn: Any, limit: int = 20, now: datetime | None = None
) -> list[DeadLetterEntry]:
    cursor = conn.execute(
        f"""
        SELECT {_DLQ_COLUMNS}
        FROM dead_letters
        WHERE status = 'pending'
          AND permanently_failed = 0
          AND next_retry_at <= ?
        ORDER BY next_retry_at ASC, id ASC
        LIMIT ?
        """,
        (to_iso(now or utc_now()), limit),
    )
    return [_row_to_entry(row) for row in cursor.fetchall()]


def mark_retrying(conn: Any, entry_id: int) -> bool:
    # Conditional on pending so two retry jobs never re-drive one entry.
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET status = 'retrying', retry_count = retry_count + 1, updated_at = ?
        WHERE id = ? AND status = 'pending' AND permanently_failed = 0
        """,
        (to_iso(utc_now()), entry_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_resolved(conn: Any, entry_id: int, notes: str | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET status = 'resolved', resolution_notes = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'retrying')
        """,
        (notes, to_iso(utc_now()), entry_id),
    )
    conn.commit()
    resolved = cursor.rowcount == 1
    if resolved:
        log_event(logger, logging.INFO, "dead_letter_resolved", dead_letter_id=entry_id)
    return resolved


def mark_discarded(conn: Any, entry_id: int, notes: str) -> bool:
    if not notes or not notes.strip():
        raise ValueError("discarding a dead letter requires resolution notes")
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET status = 'discarded', resolution_notes = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'retrying')
        """,
        (notes.strip(), to_iso(utc_now()), entry_id),
    )
    conn.commit()
    discarded = cursor.rowcount == 1
    if discarded:
        log_event(logger, logging.INFO, "dead_letter_discarded", dead_letter_id=entry_id)
    return discarded


def mark_permanently_failed(conn: Any, entry_id: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET permanently_failed = 1, status = 'pending', updated_at = ?
        WHERE id = ? AND status IN ('pending', 'retrying')
        """,
        (to_iso(utc_now()), entry_id),
    )
    conn.commit()
    changed = cursor.rowcount == 1
    if changed:
        log_event(logger, logging.WARNING, "dead_letter_permanently_failed", dead_letter_id=entry_id)
    return changed


def reschedule(
    conn: Any,
    entry_id: int,
    error: str,
    config: DlqConfig | None = None,
    now: datetime | None = None,
) -> bool:
    config = config or default_config().dlq
    now = now or utc_now()
    entry = get_dead_letter(conn, entry_id)
    if entry is None:
        return False
    next_retry_at = to_iso(now + timedelta(seconds=_retry_delay(config, entry.retry_count)))
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET status = 'pending', error_message = ?, next_retry_at = ?, updated_at = ?
        WHERE id = ? AND status = 'retrying'
        """,
        (error, next_retry_at, to_iso(now), entry_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def reset_to_pending(conn: Any, entry_id: int) -> bool:
    """Give an open entry a fresh retry budget, due immediately."""
    now_iso = to_iso(utc_now())
    cursor = conn.execute(
        """
        UPDATE dead_letters
        SET status = 'pending', permanently_failed = 0, retry_count = 0,
            next_retry_at = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'retrying')
        """,
        (now_iso, now_iso, entry_id),
    )
    conn.commit()
    changed = cursor.rowcount == 1
    if changed:
        log_event(logger, logging.INFO, "dead_letter_reset", dead_letter_id=entry_id)
    return changed


def dlq_stats(conn: Any) -> dict[str, object]:
    by_status = {status.value: 0 for status in DeadLetterStatus}
    for status, count in conn.execute(
        "SELECT status, COUNT(*) FROM dead_letters GROUP BY status"
    ).fetchall():
        by_status[status] = int(count)
    by_stage = {
        stage: int(count)
        for stage, count in conn.execute(
            """
            SELECT stage, COUNT(*) FROM dead_letters
            WHERE status IN ('pending', 'retrying')
            GROUP BY stage
            """
        ).fetchall()
    }
    row = conn.execute(
        "SELECT COUNT(*) FROM dead_letters WHERE permanently_failed = 1 AND status = 'pending'"
    ).fetchone()
    oldest = conn.execute(
        "SELECT MIN(created_at) FROM dead_letters WHERE status = 'pending'"
    ).fetchone()
    return {
        "by_status": by_status,
        "by_stage": by_stage,
        "permanently_failed": int(row[0] or 0),
        "oldest_pending_at": oldest[0] if oldest else None,
    }


def count_pending(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM dead_letters WHERE status = 'pending'").fetchone()
    return int(row[0] or 0)


def check_alert_threshold(
    conn: Any, config: DlqConfig | None = None, notifier: Any = None
) -> bool:
    config = config or default_config().dlq
    pending = count_pending(conn)
    if pending < config.alert_threshold:
        return False
    log_event(
        logger,
        logging.WARNING,
        "dlq_threshold_exceeded",
        pending=pending,
        threshold=config.alert_threshold,
    )
    safe_notify(notifier, "dlq_threshold", {"pending": pending, "threshold": config.alert_threshold})
    return True


def cleanup(conn: Any, retention_days: int, now: datetime | None = None) -> int:
    cutoff = to_iso((now or utc_now()) - timedelta(days=retention_days))
    with conn.transaction():
        # Dead staging rows are only released once their entry is closed.
        conn.execute(
            """
            DELETE FROM staging_events
            WHERE status = 'dead'
              AND id IN (
                SELECT staging_id FROM dead_letters
                WHERE status IN ('resolved', 'discarded')
                  AND staging_id IS NOT NULL
                  AND updated_at < ?
              )
            """,
            (cutoff,),
        )
        cursor = conn.execute(
            """
            DELETE FROM dead_letters
            WHERE status IN ('resolved', 'discarded') AND updated_at < ?
            """,
            (cutoff,),
        )
        removed = cursor.rowcount or 0
    if removed:
        log_event(logger, logging.INFO, "dead_letters_purged", removed=removed)
    return removed


def _retry_delay(config: DlqConfig, retry_count: int) -> int:
    return config.base_delay_seconds * (2 ** max(retry_count, 0))


def _row_to_entry(row: tuple) -> DeadLetterEntry:
    return DeadLetterEntry(
        id=int(row[0]),
        staging_id=row[1],
        source_id=row[2],
        source_url=row[3],
        stage=row[4],
        error_type=row[5],
        error_message=row[6],
        payload=json_loads_or(row[7], {}),
        retry_count=int(row[8]),
        max_retries=int(row[9]),
        next_retry_at=row[10],
        status=DeadLetterStatus(row[11]),
        permanently_failed=bool(row[12]),
        resolution_notes=row[13],
        created_at=row[14],
        updated_at=row[15],
    )
