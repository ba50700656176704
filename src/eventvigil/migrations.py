from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]

# Statements are written for SQLite; migrations_pg translates the few
# dialect differences.
SCHEMA_VERSIONS: list[tuple[str, list[str]]] = [
    (
        "001_initial_schema",
        [
            """
            CREATE TABLE IF NOT EXISTS sources (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL DEFAULT 'html',
                enabled INTEGER NOT NULL DEFAULT 1,
                auto_discovered INTEGER NOT NULL DEFAULT 0,
                confidence_score INTEGER NULL,
                category_hint TEXT NULL,
                municipality TEXT NULL,
                default_lat REAL NULL,
                default_lng REAL NULL,
                config_json TEXT NULL,
                default_frequency_minutes INTEGER NOT NULL DEFAULT 360,
                disabled_reason TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_sources_municipality ON sources(municipality)",
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL,
                payload_json TEXT NULL,
                result_json TEXT NULL,
                requested_at TEXT NOT NULL,
                started_at TEXT NULL,
                finished_at TEXT NULL,
                locked_by TEXT NULL,
                locked_at TEXT NULL,
                error TEXT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, requested_at)",
            """
            CREATE TABLE IF NOT EXISTS source_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NULL,
                status TEXT NOT NULL,
                http_status INTEGER NULL,
                items_found INTEGER NOT NULL DEFAULT 0,
                items_staged INTEGER NOT NULL DEFAULT 0,
                error TEXT NULL,
                notes_json TEXT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_source_runs_source ON source_runs(source_id, started_at)",
            """
            CREATE TABLE IF NOT EXISTS health_alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                alert_type TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
        ],
    ),
    (
        "002_breakers_and_rate_limits",
        [
            """
            CREATE TABLE IF NOT EXISTS circuit_breakers (
                source_id TEXT PRIMARY KEY,
                state TEXT NOT NULL DEFAULT 'CLOSED',
                failure_count INTEGER NOT NULL DEFAULT 0,
                consecutive_opens INTEGER NOT NULL DEFAULT 0,
                last_failure_at TEXT NULL,
                last_failure_reason TEXT NULL,
                last_success_at TEXT NULL,
                opened_at TEXT NULL,
                cooldown_until TEXT NULL,
                probe_started_at TEXT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_circuit_breakers_state ON circuit_breakers(state)",
            """
            CREATE TABLE IF NOT EXISTS rate_limit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_key TEXT NOT NULL,
                consumed_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_rate_limit_events_actor ON rate_limit_events(actor_key, consumed_at)",
            "ALTER TABLE sources ADD COLUMN dynamic_rate_limit_ms INTEGER NOT NULL DEFAULT 200",
            "ALTER TABLE sources ADD COLUMN rate_limit_increased_at TEXT NULL",
            "ALTER TABLE sources ADD COLUMN rate_limit_increase_count INTEGER NOT NULL DEFAULT 0",
            "ALTER TABLE sources ADD COLUMN last_403_429_at TEXT NULL",
            "ALTER TABLE sources ADD COLUMN last_success_at TEXT NULL",
        ],
    ),
    (
        "003_staging_and_dead_letters",
        [
            """
            CREATE TABLE IF NOT EXISTS staging_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                source_url TEXT NOT NULL UNIQUE,
                payload_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_eligible_at TEXT NULL,
                claimed_by TEXT NULL,
                claimed_at TEXT NULL,
                lease_expires_at TEXT NULL,
                last_error TEXT NULL,
                parsing_method TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_staging_events_status ON staging_events(status, next_eligible_at)",
            "CREATE INDEX IF NOT EXISTS idx_staging_events_lease ON staging_events(status, lease_expires_at)",
            """
            CREATE TABLE IF NOT EXISTS dead_letters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                staging_id INTEGER NULL,
                source_id TEXT NULL,
                source_url TEXT NULL,
                stage TEXT NOT NULL,
                error_type TEXT NOT NULL,
                error_message TEXT NULL,
                payload_json TEXT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                next_retry_at TEXT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                permanently_failed INTEGER NOT NULL DEFAULT 0,
                resolution_notes TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_dead_letters_status ON dead_letters(status, next_retry_at)",
            "CREATE INDEX IF NOT EXISTS idx_dead_letters_source ON dead_letters(source_id)",
        ],
    ),
    (
        "004_events",
        [
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                source_url TEXT NOT NULL UNIQUE,
                fingerprint TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                description TEXT NULL,
                category TEXT NOT NULL,
                venue_name TEXT NULL,
                venue_address TEXT NULL,
                starts_at TEXT NULL,
                ends_at TEXT NULL,
                event_date TEXT NULL,
                event_time TEXT NULL,
                lat REAL NULL,
                lng REAL NULL,
                image_url TEXT NULL,
                ticket_url TEXT NULL,
                price TEXT NULL,
                organizer TEXT NULL,
                parsing_method TEXT NOT NULL,
                extraction_incomplete INTEGER NOT NULL DEFAULT 0,
                completeness REAL NOT NULL DEFAULT 0,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_events_date ON events(event_date)",
        ],
    ),
    (
        "005_discovery_runs",
        [
            """
            CREATE TABLE IF NOT EXISTS discovery_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                municipality TEXT NOT NULL,
                status TEXT NOT NULL,
                queries_run INTEGER NOT NULL DEFAULT 0,
                sources_found INTEGER NOT NULL DEFAULT 0,
                sources_added INTEGER NOT NULL DEFAULT 0,
                error TEXT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NULL
            )
            """,
        ],
    ),
    (
        "006_event_url",
        [
            "ALTER TABLE events ADD COLUMN event_url TEXT NULL",
        ],
    ),
]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("eventvigil.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _statements_migration(statements: list[str]) -> Migration:
    def _apply(conn: sqlite3.Connection) -> None:
        for statement in statements:
            if _is_redundant_add_column(conn, statement):
                continue
            conn.execute(statement)

    return _apply


def _is_redundant_add_column(conn: sqlite3.Connection, statement: str) -> bool:
    parts = statement.split()
    if len(parts) < 6 or parts[0].upper() != "ALTER" or parts[3].upper() != "ADD":
        return False
    table = parts[2]
    column = parts[5]
    return column in _table_columns(conn, table)


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        (version, _statements_migration(statements))
        for version, statements in SCHEMA_VERSIONS
    ]
