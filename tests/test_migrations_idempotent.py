import sqlite3

from eventvigil.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_pipeline_tables_exist(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)

    tables = {
        row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {
        "sources",
        "circuit_breakers",
        "rate_limit_events",
        "staging_events",
        "dead_letters",
        "events",
        "jobs",
        "settings",
        "health_alerts",
        "discovery_runs",
        "source_runs",
    } <= tables
