from dataclasses import replace
from datetime import timedelta

import pytest

from eventvigil import dlq, staging
from eventvigil.config import default_config
from eventvigil.models import DeadLetterStatus, StagingStatus
from eventvigil.pipeline import redrive_dead_letter
from eventvigil.storage import init_db
from eventvigil.utils import parse_iso, utc_now

URL = "https://example.nl/agenda/concert"


def _dead_row(conn, now=None) -> int:
    staging_id = staging.enqueue(conn, "src", URL, {"title": "Concert"}, now=now)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)
    staging.mark_dead(conn, staging_id, "poison payload", error_type="ExtractionError", now=now)
    return staging_id


def test_dead_letter_schedules_first_retry_an_hour_out(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    now = utc_now()
    staging_id = _dead_row(conn, now=now)

    entry = dlq.list_dead_letters(conn)[0]
    assert entry.staging_id == staging_id
    assert entry.status == DeadLetterStatus.PENDING
    assert entry.error_type == "ExtractionError"
    assert entry.source_url == URL
    assert parse_iso(entry.next_retry_at) == now + timedelta(seconds=3600)

    assert dlq.get_ready_for_retry(conn, now=now) == []
    ready = dlq.get_ready_for_retry(conn, now=now + timedelta(seconds=3600))
    assert [item.id for item in ready] == [entry.id]


def test_redrive_returns_row_to_pending_and_resolves_entry(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]

    returned = redrive_dead_letter(conn, entry.id, notes="fixed upstream")

    assert returned == staging_id
    row = staging.get_staged(conn, staging_id)
    assert row.status == StagingStatus.PENDING
    assert row.retry_count == 0
    resolved = dlq.get_dead_letter(conn, entry.id)
    assert resolved.status == DeadLetterStatus.RESOLVED
    assert resolved.resolution_notes == "fixed upstream"
    assert [record.id for record in staging.claim_batch(conn, "worker-2", 5, 60)] == [staging_id]


def test_redrive_restages_from_payload_when_row_is_gone(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    entry_id = dlq.add_dead_letter(
        conn,
        stage="persist",
        error_type="IntegrityError",
        error_message="constraint",
        payload={"title": "Markt"},
        source_id="src",
        source_url="https://example.nl/agenda/markt",
    )

    staging_id = redrive_dead_letter(conn, entry_id)

    row = staging.get_staged(conn, staging_id)
    assert row.source_url == "https://example.nl/agenda/markt"
    assert row.payload == {"title": "Markt"}
    assert row.status == StagingStatus.PENDING


def test_redrive_rejects_closed_entries(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]
    assert dlq.mark_discarded(conn, entry.id, "duplicate of another listing")

    with pytest.raises(ValueError):
        redrive_dead_letter(conn, entry.id)
    with pytest.raises(ValueError):
        redrive_dead_letter(conn, 9999)
    assert staging.get_staged(conn, entry.staging_id).status == StagingStatus.DEAD


def test_discard_requires_notes(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]

    with pytest.raises(ValueError):
        dlq.mark_discarded(conn, entry.id, "  ")
    assert dlq.get_dead_letter(conn, entry.id).status == DeadLetterStatus.PENDING


def test_retrying_is_claimed_by_one_caller_only(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]

    assert dlq.mark_retrying(conn, entry.id) is True
    assert dlq.mark_retrying(conn, entry.id) is False
    assert dlq.get_dead_letter(conn, entry.id).retry_count == 1


def test_reschedule_backs_off_by_retry_count(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]
    dlq.mark_retrying(conn, entry.id)
    now = utc_now()

    assert dlq.reschedule(conn, entry.id, "still failing", now=now) is True

    updated = dlq.get_dead_letter(conn, entry.id)
    assert updated.status == DeadLetterStatus.PENDING
    assert updated.error_message == "still failing"
    assert parse_iso(updated.next_retry_at) == now + timedelta(seconds=7200)


def test_second_death_reuses_entry_and_keeps_counting(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]
    dlq.mark_retrying(conn, entry.id)
    redrive_dead_letter(conn, entry.id)

    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60)
    staging.mark_dead(conn, staging_id, "poison payload again", error_type="ExtractionError")

    entries = dlq.list_dead_letters(conn)
    assert len(entries) == 1
    assert entries[0].status == DeadLetterStatus.PENDING
    assert entries[0].retry_count == 1


def test_permanently_failed_entries_are_not_ready(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]

    assert dlq.mark_permanently_failed(conn, entry.id) is True

    later = utc_now() + timedelta(days=2)
    assert dlq.get_ready_for_retry(conn, now=later) == []
    stats = dlq.dlq_stats(conn)
    assert stats["permanently_failed"] == 1
    assert stats["by_status"]["pending"] == 1
    assert stats["by_stage"] == {"process": 1}


def test_alert_threshold_notifies(tmp_path, notifier):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = replace(default_config().dlq, alert_threshold=1)
    assert dlq.check_alert_threshold(conn, config, notifier) is False

    _dead_row(conn)

    assert dlq.check_alert_threshold(conn, config, notifier) is True
    assert notifier.sent == [("dlq_threshold", {"pending": 1, "threshold": 1})]


def test_cleanup_removes_old_closed_entries_and_their_rows(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _dead_row(conn)
    entry = dlq.list_dead_letters(conn)[0]
    dlq.mark_discarded(conn, entry.id, "source retired")

    assert dlq.cleanup(conn, retention_days=30) == 0
    removed = dlq.cleanup(conn, retention_days=30, now=utc_now() + timedelta(days=31))

    assert removed == 1
    assert dlq.get_dead_letter(conn, entry.id) is None
    assert staging.get_staged(conn, staging_id) is None
