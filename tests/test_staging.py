import threading
from dataclasses import replace
from datetime import timedelta

from eventvigil import dlq, staging
from eventvigil.config import default_config
from eventvigil.models import StagingStatus
from eventvigil.storage import init_db
from eventvigil.utils import parse_iso, utc_now


def _stage(conn, index: int, now=None) -> int:
    return staging.enqueue(
        conn,
        "src",
        f"https://example.nl/agenda/item-{index}",
        {"title": f"Item {index}"},
        now=now,
    )


def test_enqueue_is_idempotent_per_source_url(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    first = _stage(conn, 1)
    second = _stage(conn, 1)

    assert first == second
    assert staging.staging_counts(conn)["pending"] == 1


def test_concurrent_claims_never_share_a_row(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    for index in range(30):
        _stage(conn, index)

    claimed: list[int] = []
    lock = threading.Lock()
    errors: list[Exception] = []

    def worker(worker_id: str) -> None:
        local = init_db(db_path)
        try:
            while True:
                batch = staging.claim_batch(local, worker_id, limit=3, lease_seconds=300)
                if not batch:
                    return
                with lock:
                    claimed.extend(record.id for record in batch)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=worker, args=(f"worker-{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(claimed) == 30
    assert len(set(claimed)) == 30


def test_live_lease_blocks_reclaim_until_expiry(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    now = utc_now()
    staging_id = _stage(conn, 1, now=now)

    first = staging.claim_batch(conn, "worker-1", limit=5, lease_seconds=60, now=now)
    assert [record.id for record in first] == [staging_id]

    during = staging.claim_batch(
        conn, "worker-2", limit=5, lease_seconds=60, now=now + timedelta(seconds=30)
    )
    assert during == []

    after = staging.claim_batch(
        conn, "worker-2", limit=5, lease_seconds=60, now=now + timedelta(seconds=61)
    )
    assert [record.id for record in after] == [staging_id]
    assert after[0].claimed_by == "worker-2"

    # The first worker lost its lease and may no longer finish the row.
    assert staging.complete(conn, staging_id, "worker-1") is False
    assert staging.complete(conn, staging_id, "worker-2", parsing_method="json_ld") is True
    assert staging.get_staged(conn, staging_id).status == StagingStatus.COMPLETED


def test_backoff_grows_with_each_failure_then_dead_letters(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = replace(default_config().staging, max_retries=5)
    now = utc_now()
    staging_id = _stage(conn, 1, now=now)

    delays = []
    for _ in range(4):
        claimed = staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)
        assert [record.id for record in claimed] == [staging_id]
        status = staging.fail_and_reschedule(
            conn, staging_id, "boom", error_type="RuntimeError", now=now, config=config
        )
        assert status == StagingStatus.PENDING_WITH_BACKOFF
        row = staging.get_staged(conn, staging_id)
        eligible = parse_iso(row.next_eligible_at)
        delays.append((eligible - now).total_seconds())
        # Not claimable before its backoff runs out.
        assert staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now) == []
        now = eligible

    assert delays == [120, 240, 480, 960]

    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)
    status = staging.fail_and_reschedule(
        conn, staging_id, "still broken", error_type="RuntimeError", now=now, config=config
    )
    assert status == StagingStatus.DEAD
    row = staging.get_staged(conn, staging_id)
    assert row.retry_count == 5
    entries = dlq.list_dead_letters(conn)
    assert len(entries) == 1
    assert entries[0].staging_id == staging_id
    assert entries[0].error_type == "RuntimeError"
    assert entries[0].payload == {"title": "Item 1"}


def test_default_retries_dead_letter_on_third_failure(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    now = utc_now()
    staging_id = _stage(conn, 1, now=now)

    statuses = []
    for _ in range(3):
        staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)
        statuses.append(staging.fail_and_reschedule(conn, staging_id, "boom", now=now))
        now = now + timedelta(hours=1)

    assert statuses == [
        StagingStatus.PENDING_WITH_BACKOFF,
        StagingStatus.PENDING_WITH_BACKOFF,
        StagingStatus.DEAD,
    ]


def test_enqueue_does_not_revive_dead_rows(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _stage(conn, 1)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60)
    assert staging.mark_dead(conn, staging_id, "poison", error_type="manual")

    _stage(conn, 1)

    assert staging.get_staged(conn, staging_id).status == StagingStatus.DEAD
    assert staging.requeue_from_dead(conn, staging_id) is True
    row = staging.get_staged(conn, staging_id)
    assert row.status == StagingStatus.PENDING
    assert row.retry_count == 0


def test_completed_row_is_reprocessed_only_when_payload_changes(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _stage(conn, 1)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60)
    staging.complete(conn, staging_id, "worker-1")

    _stage(conn, 1)
    assert staging.get_staged(conn, staging_id).status == StagingStatus.COMPLETED

    staging.enqueue(conn, "src", "https://example.nl/agenda/item-1", {"title": "Item 1 (moved)"})
    row = staging.get_staged(conn, staging_id)
    assert row.status == StagingStatus.PENDING
    assert row.payload == {"title": "Item 1 (moved)"}


def test_enqueue_during_live_claim_only_refreshes_payload(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _stage(conn, 1)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=300)

    staging.enqueue(conn, "src", "https://example.nl/agenda/item-1", {"title": "Updated"})

    row = staging.get_staged(conn, staging_id)
    assert row.status == StagingStatus.CLAIMED
    assert row.claimed_by == "worker-1"
    assert row.payload == {"title": "Updated"}


def test_illegal_transitions_are_rejected(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    staging_id = _stage(conn, 1)

    # Pending rows were never claimed, so they cannot complete or be released.
    assert staging.complete(conn, staging_id) is False
    assert staging.release(conn, staging_id, "worker-1") is False
    assert staging.requeue_from_dead(conn, staging_id) is False
    assert staging.get_staged(conn, staging_id).status == StagingStatus.PENDING

    assert staging.is_allowed_transition(StagingStatus.COMPLETED, StagingStatus.CLAIMED) is False
    assert staging.is_allowed_transition(StagingStatus.DEAD, StagingStatus.PENDING) is True


def test_release_with_delay_waits_in_backoff(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    now = utc_now()
    staging_id = _stage(conn, 1, now=now)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)

    assert staging.release(conn, staging_id, "worker-1", delay_seconds=120, now=now) is True

    row = staging.get_staged(conn, staging_id)
    assert row.status == StagingStatus.PENDING_WITH_BACKOFF
    assert row.retry_count == 0
    assert staging.claim_batch(conn, "worker-2", limit=1, lease_seconds=60, now=now) == []
    later = staging.claim_batch(
        conn, "worker-2", limit=1, lease_seconds=60, now=now + timedelta(seconds=121)
    )
    assert [record.id for record in later] == [staging_id]


def test_purge_completed_keeps_recent_rows(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    old = utc_now() - timedelta(days=10)
    old_id = _stage(conn, 1, now=old)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=old)
    staging.complete(conn, old_id, "worker-1", now=old)
    fresh_id = _stage(conn, 2)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60)
    staging.complete(conn, fresh_id, "worker-1")

    assert staging.purge_completed(conn, older_than_days=7) == 1
    assert staging.get_staged(conn, old_id) is None
    assert staging.get_staged(conn, fresh_id) is not None


def test_failure_report_from_expired_holder_is_ignored(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    now = utc_now()
    staging_id = _stage(conn, 1, now=now)
    staging.claim_batch(conn, "worker-1", limit=1, lease_seconds=60, now=now)
    later = now + timedelta(seconds=61)
    staging.claim_batch(conn, "worker-2", limit=1, lease_seconds=60, now=later)

    status = staging.fail_and_reschedule(conn, staging_id, "late failure", now=later, worker_id="worker-1")

    row = staging.get_staged(conn, staging_id)
    assert status == StagingStatus.CLAIMED
    assert row.claimed_by == "worker-2"
    assert row.retry_count == 0
    assert row.last_error is None
    assert staging.fail_and_reschedule(conn, staging_id, "boom", now=later, worker_id="worker-2") == (
        StagingStatus.PENDING_WITH_BACKOFF
    )
