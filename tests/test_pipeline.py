from datetime import date, timedelta

import pytest

from eventvigil import circuit_breaker, dlq, rate_limiter, staging
from eventvigil.config import default_config
from eventvigil.dedup import count_events, list_events
from eventvigil.pipeline import Collaborators, redrive_dead_letter, run_claimed_job
from eventvigil.storage import (
    claim_next_job,
    enqueue_job,
    get_job,
    get_last_source_run,
    get_source,
    has_pending_job,
    init_db,
    upsert_source,
)
from eventvigil.utils import utc_now

YEAR = date.today().year

FEED = f"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Agenda</title>
<item>
  <title>Zomerconcert in het park</title>
  <link>https://example.nl/agenda/zomerconcert</link>
  <description>Zomerconcert op 12 juli {YEAR}, aanvang 20.00 uur</description>
</item>
<item>
  <title>Boekenmarkt</title>
  <link>https://example.nl/agenda/boekenmarkt</link>
  <description>Boekenmarkt op 14 juni {YEAR} vanaf 10.00 uur</description>
</item>
</channel></rss>
"""


def _no_sleep(seconds):
    return None


def _seed_source(conn, source_id="feed-source", kind="feed", enabled=True):
    return upsert_source(
        conn,
        {
            "id": source_id,
            "name": "Gemeente Agenda",
            "url": f"https://example.nl/{source_id}.xml",
            "kind": kind,
            "enabled": enabled,
            "municipality": "Utrecht",
        },
    )


def _claim(conn, job_type, payload=None):
    enqueue_job(conn, job_type, payload)
    job = claim_next_job(conn, "worker-1", [job_type])
    assert job is not None
    return job


def _run(conn, job, fetcher, config=None, notifier=None):
    deps = Collaborators(fetcher=fetcher, notifier=notifier, sleep=_no_sleep)
    return run_claimed_job(conn, config or default_config(), job, deps, "worker-1")


def test_fetch_stages_items_and_schedules_processing(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    fake_fetcher.pages[source.url] = FEED

    result = _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    assert result == {"source_id": source.id, "status": "ok", "items_found": 2, "items_staged": 2}
    assert staging.staging_counts(conn)["pending"] == 2
    assert has_pending_job(conn, "process_staging")
    assert get_last_source_run(conn, source.id)["status"] == "ok"
    assert circuit_breaker.get_breaker(conn, source.id).state.value == "CLOSED"


def test_processing_persists_staged_events(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    fake_fetcher.pages[source.url] = FEED
    _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    job = claim_next_job(conn, "worker-1", ["process_staging"])
    result = _run(conn, job, fake_fetcher)

    assert result == {"claimed": 2, "outcomes": {"completed": 2}}
    assert staging.staging_counts(conn)["completed"] == 2
    assert count_events(conn) == 2
    titles = sorted(event["title"] for event in list_events(conn))
    assert titles == ["Boekenmarkt", "Zomerconcert in het park"]
    assert staging.get_staged_by_url(conn, "https://example.nl/agenda/boekenmarkt").parsing_method == "trusted_feed"


def test_item_without_title_is_rescheduled(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn, kind="html")
    staging_id = staging.enqueue(conn, source.id, "https://example.nl/agenda#item-1", {"text": ""})

    result = _run(conn, _claim(conn, "process_staging"), fake_fetcher)

    assert result["outcomes"] == {"failed": 1}
    record = staging.get_staged(conn, staging_id)
    assert record.status.value == "pending_with_backoff"
    assert record.retry_count == 1
    assert "no title" in record.last_error


def test_open_circuit_releases_staged_rows(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    staging_id = staging.enqueue(
        conn, source.id, "https://example.nl/agenda/x", {"structured": {"title": "Markt"}}
    )
    for _ in range(5):
        circuit_breaker.record_failure(conn, source.id, "HTTP 500")

    result = _run(conn, _claim(conn, "process_staging"), fake_fetcher)

    assert result["outcomes"] == {"released": 1}
    record = staging.get_staged(conn, staging_id)
    assert record.status.value == "pending_with_backoff"
    assert record.retry_count == 0
    assert count_events(conn) == 0


def test_failed_fetch_counts_against_the_breaker(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    fake_fetcher.pages[source.url] = 500

    result = _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    assert result["status"] == "error"
    assert circuit_breaker.get_breaker(conn, source.id).failure_count == 1
    assert get_last_source_run(conn, source.id)["status"] == "error"
    assert staging.staging_counts(conn)["pending"] == 0


def test_rate_limited_fetch_slows_the_source_down(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    fake_fetcher.pages[source.url] = 429

    result = _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    assert result["status"] == "rate_limited"
    updated = get_source(conn, source.id)
    assert updated.dynamic_rate_limit_ms == 400
    assert updated.last_403_429_at is not None


def test_open_circuit_skips_fetch(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    for _ in range(5):
        circuit_breaker.record_failure(conn, source.id, "HTTP 500")

    result = _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    assert result == {"source_id": source.id, "status": "circuit_open"}
    assert fake_fetcher.calls == []


def test_disabled_source_is_skipped(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn, enabled=False)

    result = _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    assert result == {"source_id": source.id, "status": "skipped"}
    assert fake_fetcher.calls == []


def test_missing_source_raises(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ValueError, match="Source not found"):
        _run(conn, _claim(conn, "fetch_source", {"source_id": "ghost"}), fake_fetcher)


def test_coordinator_enqueues_due_sources_once(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed_source(conn, "alpha")
    _seed_source(conn, "beta")
    enqueue_job(conn, "fetch_source", {"source_id": "beta"})

    result = _run(conn, _claim(conn, "ingest_due_sources"), fake_fetcher)

    assert result["source_ids"] == ["alpha"]
    assert result["debounced"] == ["beta"]
    assert has_pending_job(conn, "fetch_source", source_id="alpha")


def test_coordinator_over_budget_requeues_itself(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = default_config()
    _seed_source(conn)
    for _ in range(10):
        rate_limiter.check_stage_budget(conn, "coordinator", "global", config.rate_limits)
    job = _claim(conn, "ingest_due_sources")

    result = _run(conn, job, fake_fetcher, config=config)

    assert result["requeued"] is True
    assert result["reason"] == "rate_limited:coordinator"
    stored = get_job(conn, job.id)
    assert stored.status == "queued"
    assert stored.error == "rate_limited:coordinator"
    assert not has_pending_job(conn, "fetch_source")


def test_retry_dead_letters_redrives_and_gives_up(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    past = utc_now() - timedelta(hours=2)
    retry_id = staging.enqueue(conn, source.id, "https://example.nl/agenda/a", {"title": "A"})
    staging.mark_dead(conn, retry_id, "boom", now=past)
    exhausted_entry = dlq.add_dead_letter(
        conn,
        stage="extract",
        error_type="ExtractionError",
        error_message="no title",
        payload={"text": ""},
        source_id=source.id,
        source_url="https://example.nl/agenda/b",
        now=past,
    )
    conn.execute("UPDATE dead_letters SET retry_count = max_retries WHERE id = ?", (exhausted_entry,))
    conn.commit()

    result = _run(conn, _claim(conn, "retry_dead_letters"), fake_fetcher)

    assert result["permanently_failed"] == [exhausted_entry]
    assert len(result["redriven"]) == 1
    assert staging.get_staged(conn, retry_id).status.value == "pending"
    assert dlq.get_dead_letter(conn, result["redriven"][0]).status.value == "resolved"
    assert dlq.get_dead_letter(conn, exhausted_entry).permanently_failed is True
    assert has_pending_job(conn, "process_staging")


def test_manual_redrive_restages_missing_row(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn)
    entry_id = dlq.add_dead_letter(
        conn,
        stage="persist",
        error_type="OperationalError",
        error_message="database is locked",
        payload={"structured": {"title": "Markt"}},
        source_id=source.id,
        source_url="https://example.nl/agenda/markt",
    )

    staging_id = redrive_dead_letter(conn, entry_id, notes="store recovered")

    record = staging.get_staged(conn, staging_id)
    assert record.status.value == "pending"
    assert record.payload == {"structured": {"title": "Markt"}}
    with pytest.raises(ValueError):
        redrive_dead_letter(conn, entry_id)


def test_maintenance_reports_purges(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    result = _run(conn, _claim(conn, "maintenance"), fake_fetcher)

    assert result == {
        "rate_limit_events_purged": 0,
        "staging_purged": 0,
        "dead_letters_purged": 0,
    }


def test_discovery_job_requires_municipality(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ValueError, match="municipality"):
        _run(conn, _claim(conn, "discover_sources", {"municipality": " "}), fake_fetcher)


def test_discovery_job_without_search_backend(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    result = _run(conn, _claim(conn, "discover_sources", {"municipality": "Utrecht"}), fake_fetcher)
    assert result["status"] == "search_unconfigured"


def test_unknown_job_type_raises(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ValueError, match="unsupported job type"):
        _run(conn, _claim(conn, "build_site"), fake_fetcher)


def test_listing_events_sharing_the_page_url_stay_distinct(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    source = _seed_source(conn, source_id="agenda", kind="html")
    fake_fetcher.pages[source.url] = f"""
    <html><head><script type="application/ld+json">
    [{{"@context": "https://schema.org", "@type": "Event", "name": "Jazz avond",
       "startDate": "{YEAR}-07-12T20:00", "url": "{source.url}"}},
     {{"@context": "https://schema.org", "@type": "Event", "name": "Boekenmarkt",
       "startDate": "{YEAR}-08-14T10:00", "url": "{source.url}"}}]
    </script></head><body></body></html>
    """
    _run(conn, _claim(conn, "fetch_source", {"source_id": source.id}), fake_fetcher)

    result = _run(conn, claim_next_job(conn, "worker-1", ["process_staging"]), fake_fetcher)

    assert result["outcomes"] == {"completed": 2}
    events = list_events(conn)
    assert sorted(event["title"] for event in events) == ["Boekenmarkt", "Jazz avond"]
    assert len({event["source_url"] for event in events}) == 2
    assert {event["event_url"] for event in events} == {source.url}
