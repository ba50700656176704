from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Any

from .db import connect_db
from .models import Job, Source
from .utils import json_dumps, json_loads_or, parse_iso, utc_now_iso, utc_now_iso_offset

_SOURCE_SELECT = """
    SELECT s.id, s.name, s.url, s.kind, s.enabled, s.auto_discovered, s.confidence_score,
           s.category_hint, s.municipality, s.default_lat, s.default_lng, s.config_json,
           s.default_frequency_minutes, s.disabled_reason, s.dynamic_rate_limit_ms,
           s.rate_limit_increased_at, s.rate_limit_increase_count, s.last_403_429_at,
           s.last_success_at, COALESCE(cb.failure_count, 0)
    FROM sources s
    LEFT JOIN circuit_breakers cb ON cb.source_id = s.id
"""

_JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, requested_at, started_at,
    finished_at, locked_by, locked_at, error
"""


def init_db(path: str | None = None):
    return connect_db(path)


def upsert_source(conn: Any, source_dict: dict[str, object]) -> Source:
    source_id = str(source_dict.get("id") or "").strip()
    url = str(source_dict.get("url") or "").strip()
    if not source_id or not url:
        raise ValueError("source id and url are required")
    kind = str(source_dict.get("kind") or "html")
    if kind not in {"html", "feed"}:
        raise ValueError(f"unsupported source kind {kind}")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, url, kind, enabled, auto_discovered, confidence_score, category_hint,
             municipality, default_lat, default_lng, config_json, default_frequency_minutes,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            url=excluded.url,
            kind=excluded.kind,
            enabled=excluded.enabled,
            category_hint=excluded.category_hint,
            municipality=excluded.municipality,
            default_lat=excluded.default_lat,
            default_lng=excluded.default_lng,
            config_json=excluded.config_json,
            default_frequency_minutes=excluded.default_frequency_minutes,
            updated_at=excluded.updated_at
        """,
        _source_params(source_id, url, kind, source_dict, now),
    )
    conn.commit()
    source = get_source(conn, source_id)
    if source is None:
        raise ValueError(f"source {source_id} not stored")
    return source


def insert_source_if_new(conn: Any, source_dict: dict[str, object]) -> bool:
    source_id = str(source_dict.get("id") or "").strip()
    url = str(source_dict.get("url") or "").strip()
    if not source_id or not url:
        raise ValueError("source id and url are required")
    kind = str(source_dict.get("kind") or "html")
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO sources
            (id, name, url, kind, enabled, auto_discovered, confidence_score, category_hint,
             municipality, default_lat, default_lng, config_json, default_frequency_minutes,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        _source_params(source_id, url, kind, source_dict, now),
    )
    conn.commit()
    return cursor.rowcount == 1


def _source_params(
    source_id: str, url: str, kind: str, source_dict: dict[str, object], now: str
) -> tuple:
    config = source_dict.get("config") or {}
    return (
        source_id,
        str(source_dict.get("name") or source_id),
        url,
        kind,
        1 if source_dict.get("enabled", True) else 0,
        1 if source_dict.get("auto_discovered") else 0,
        source_dict.get("confidence_score"),
        source_dict.get("category_hint"),
        source_dict.get("municipality"),
        _float_or_none(source_dict.get("default_lat")),
        _float_or_none(source_dict.get("default_lng")),
        json_dumps(config) if config else None,
        int(source_dict.get("default_frequency_minutes") or 360),
        now,
        now,
    )


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(_SOURCE_SELECT + " WHERE s.id = ?", (source_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def get_source_by_url(conn: Any, url: str) -> Source | None:
    cursor = conn.execute(_SOURCE_SELECT + " WHERE s.url = ?", (url,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(conn: Any, enabled_only: bool = True) -> list[Source]:
    if enabled_only:
        cursor = conn.execute(_SOURCE_SELECT + " WHERE s.enabled = 1 ORDER BY s.id")
    else:
        cursor = conn.execute(_SOURCE_SELECT + " ORDER BY s.id")
    return [_row_to_source(row) for row in cursor.fetchall()]


def list_source_urls(conn: Any) -> set[str]:
    cursor = conn.execute("SELECT url FROM sources")
    return {row[0] for row in cursor.fetchall()}


def count_sources_for_municipality(conn: Any, municipality: str) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM sources WHERE LOWER(municipality) = LOWER(?)",
        (municipality,),
    )
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def set_source_enabled(
    conn: Any, source_id: str, enabled: bool, reason: str | None = None
) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET enabled = ?, disabled_reason = ?, updated_at = ? WHERE id = ?",
        (1 if enabled else 0, None if enabled else reason, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_due_sources(conn: Any, now_iso: str) -> list[Source]:
    sources = list_sources(conn, enabled_only=True)
    due: list[Source] = []
    last_runs = _last_run_map(conn)
    now_dt = parse_iso(now_iso)
    for source in sources:
        last_run = last_runs.get(source.id)
        if not last_run:
            due.append(source)
            continue
        last_dt = parse_iso(last_run)
        if last_dt + timedelta(minutes=source.default_frequency_minutes) <= now_dt:
            due.append(source)
    return due


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def record_source_run(
    conn: Any,
    source_id: str,
    started_at: str,
    finished_at: str | None,
    status: str,
    http_status: int | None,
    items_found: int,
    items_staged: int,
    error: str | None,
    notes: dict[str, object] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO source_runs
            (source_id, started_at, finished_at, status, http_status, items_found,
             items_staged, error, notes_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            started_at,
            finished_at,
            status,
            http_status,
            items_found,
            items_staged,
            error,
            json_dumps(notes) if notes else None,
            started_at,
        ),
    )
    conn.commit()


def get_last_source_run(conn: Any, source_id: str) -> dict[str, object] | None:
    cursor = conn.execute(
        """
        SELECT started_at, finished_at, status, http_status, items_found, items_staged, error
        FROM source_runs
        WHERE source_id = ?
        ORDER BY started_at DESC
        LIMIT 1
        """,
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    keys = ["started_at", "finished_at", "status", "http_status", "items_found", "items_staged", "error"]
    return dict(zip(keys, row))


def record_health_alert(conn: Any, source_id: str, alert_type: str, message: str) -> None:
    conn.execute(
        """
        INSERT INTO health_alerts (source_id, alert_type, message, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (source_id, alert_type, message, utc_now_iso()),
    )
    conn.commit()


def list_health_alerts(conn: Any, source_id: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    if source_id:
        cursor = conn.execute(
            """
            SELECT source_id, alert_type, message, created_at FROM health_alerts
            WHERE source_id = ? ORDER BY created_at DESC LIMIT ?
            """,
            (source_id, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT source_id, alert_type, message, created_at FROM health_alerts
            ORDER BY created_at DESC LIMIT ?
            """,
            (limit,),
        )
    keys = ["source_id", "alert_type", "message", "created_at"]
    return [dict(zip(keys, row)) for row in cursor.fetchall()]


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    debounce: bool = False,
) -> str:
    source_id = (payload or {}).get("source_id")
    if debounce:
        existing = get_pending_job_id(conn, job_type, source_id=source_id)
        if existing:
            return existing
    job_id = _new_job_id()
    conn.execute(
        f"""
        INSERT INTO jobs ({_JOB_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            utc_now_iso(),
            None,
            None,
            None,
            None,
            None,
        ),
    )
    conn.commit()
    return job_id


def get_pending_job_id(
    conn: Any,
    job_type: str,
    source_id: object | None = None,
    exclude_job_id: str | None = None,
) -> str | None:
    cursor = conn.execute(
        """
        SELECT id, payload_json FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        ORDER BY requested_at ASC
        """,
        (job_type,),
    )
    for job_id, payload_json in cursor.fetchall():
        if exclude_job_id and job_id == exclude_job_id:
            continue
        if source_id is not None:
            payload = json_loads_or(payload_json, {})
            if payload.get("source_id") != source_id:
                continue
        return job_id
    return None


def has_pending_job(
    conn: Any,
    job_type: str,
    source_id: object | None = None,
    exclude_job_id: str | None = None,
) -> bool:
    return get_pending_job_id(conn, job_type, source_id, exclude_job_id) is not None


def list_jobs(conn: Any, limit: int = 50) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = [utc_now_iso()]
        type_clause = ""
        if allowed_types:
            placeholders = ",".join(["?"] * len(allowed_types))
            type_clause = f" AND job_type IN ({placeholders})"
            params.extend(allowed_types)
        lock_clause = "FOR UPDATE SKIP LOCKED" if conn.is_postgres else ""
        cursor = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL AND requested_at <= ? {type_clause}
            ORDER BY requested_at ASC
            LIMIT 1
            {lock_clause}
            """,
            tuple(params),
        )
        row = cursor.fetchone()
        if not row:
            return None
        now = utc_now_iso()
        cursor = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            RETURNING {_JOB_COLUMNS}
            """,
            (now, worker_id, now, row[0]),
        )
        rows = cursor.fetchall()
    if not rows:
        return None
    return _row_to_job(rows[0])


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_job(conn: Any, job_id: str, not_before: str, reason: str) -> bool:
    # requested_at doubles as the not-before time for queued jobs.
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            requested_at = ?,
            started_at = NULL,
            finished_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = 'running'
        """,
        (not_before, reason, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        name,
        url,
        kind,
        enabled,
        auto_discovered,
        confidence_score,
        category_hint,
        municipality,
        default_lat,
        default_lng,
        config_json,
        default_frequency_minutes,
        disabled_reason,
        dynamic_rate_limit_ms,
        rate_limit_increased_at,
        rate_limit_increase_count,
        last_403_429_at,
        last_success_at,
        failure_count,
    ) = row
    return Source(
        id=source_id,
        name=name,
        url=url,
        kind=kind,
        enabled=bool(enabled),
        auto_discovered=bool(auto_discovered),
        confidence_score=int(confidence_score) if confidence_score is not None else None,
        category_hint=category_hint,
        municipality=municipality,
        default_lat=_float_or_none(default_lat),
        default_lng=_float_or_none(default_lng),
        config=json_loads_or(config_json, {}),
        default_frequency_minutes=int(default_frequency_minutes),
        disabled_reason=disabled_reason,
        dynamic_rate_limit_ms=int(dynamic_rate_limit_ms),
        rate_limit_increased_at=rate_limit_increased_at,
        rate_limit_increase_count=int(rate_limit_increase_count),
        last_403_429_at=last_403_429_at,
        last_success_at=last_success_at,
        consecutive_failures=int(failure_count),
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=json_loads_or(payload_json, {}),
        result=json_loads_or(result_json, None),
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _last_run_map(conn: Any) -> dict[str, str]:
    cursor = conn.execute(
        "SELECT source_id, MAX(started_at) FROM source_runs GROUP BY source_id"
    )
    return {row[0]: row[1] for row in cursor.fetchall() if row[1]}


def _float_or_none(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
