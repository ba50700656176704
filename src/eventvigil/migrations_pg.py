from __future__ import annotations

import logging
import re

from .migrations import SCHEMA_VERSIONS
from .utils import utc_now_iso

_ADD_COLUMN_RE = re.compile(r"ALTER TABLE (\w+) ADD COLUMN (\w+)", re.IGNORECASE)


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("eventvigil.migrations")
    with conn.transaction():
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
        for version, statements in SCHEMA_VERSIONS:
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            for statement in statements:
                conn.execute(to_postgres_ddl(statement))
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


def to_postgres_ddl(statement: str) -> str:
    ddl = statement.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    ddl = re.sub(r"\bREAL\b", "DOUBLE PRECISION", ddl)
    ddl = _ADD_COLUMN_RE.sub(r"ALTER TABLE \1 ADD COLUMN IF NOT EXISTS \2", ddl)
    return ddl
