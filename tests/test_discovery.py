from dataclasses import replace

from eventvigil.config import default_config
from eventvigil.discovery import (
    canonicalize_url,
    discover_for_municipality,
    is_noise_domain,
    list_discovery_runs,
    score_page,
    validate_candidate,
)
from eventvigil.search import SearchAuthError
from eventvigil.storage import get_source_by_url, init_db, list_sources

FILLER = "<p>" + "Kom langs en ontdek wat er te beleven is in de stad. " * 12 + "</p>"

AGENDA_BODY = f"""
<h1>Agenda</h1>
<p>Het programma van de kalender in Utrecht.</p>
<ul>
  <li>12 juni concert</li><li>14 juni markt</li><li>20 juni lezing</li>
  <li>3 juli film</li><li>9 juli toneel</li>
</ul>
{FILLER}
"""

MID_PAGE = f"""
<html><head><title>Evenementen en activiteiten</title></head>
<body>{AGENDA_BODY}</body></html>
"""

HIGH_PAGE = f"""
<html><head><title>Evenementen en activiteiten</title>
<script type="application/ld+json">
{{"@context": "https://schema.org", "@type": "Event", "name": "Concert", "startDate": "2026-06-12T20:00"}}
</script></head>
<body>{AGENDA_BODY}</body></html>
"""

THIN_PAGE = "<html><head><title>Agenda</title></head><body><p>Agenda: 12 juni</p></body></html>"


class FakeLLM:
    available = True

    def __init__(self, rating):
        self.rating = rating
        self.calls = 0

    def rate_agenda(self, content, municipality, timeout_seconds=None):
        self.calls += 1
        return dict(self.rating)


def _no_sleep(seconds):
    return None


def test_canonicalize_url_strips_noise():
    url = "HTTPS://WWW.Example.nl:443/agenda/?utm_source=x&b=2&a=1&fbclid=abc#top"
    assert canonicalize_url(url) == "https://example.nl/agenda?a=1&b=2"
    assert canonicalize_url("http://example.nl:80/") == "http://example.nl"


def test_noise_domains_are_filtered():
    assert is_noise_domain("https://www.tripadvisor.nl/Attractions")
    assert is_noise_domain("https://m.facebook.com/events/1")
    assert is_noise_domain("not a url")
    assert not is_noise_domain("https://notfacebook.com/agenda")
    assert not is_noise_domain("https://www.utrecht.nl/agenda")


def test_score_requires_agenda_words_and_dates():
    score, reasons = score_page("<html><body>" + FILLER + "</body></html>", "https://x.nl", "Utrecht")
    assert score == 0
    assert "missing_agenda_or_dates" in reasons


def test_score_rewards_agenda_signals():
    mid, _ = score_page(MID_PAGE, "https://stadsnieuws.nl/evenementen", "Utrecht")
    high, reasons = score_page(HIGH_PAGE, "https://utrecht-agenda.nl/agenda", "Utrecht")
    thin, _ = score_page(THIN_PAGE, "https://x.nl/agenda", "Utrecht")

    assert mid == 80
    assert high == 100
    assert reasons["jsonld_events"] == 25
    assert thin < 60


def test_llm_rating_is_blended_and_capped(fake_fetcher):
    url = "https://stadsnieuws.nl/evenementen"
    fake_fetcher.pages[url] = MID_PAGE

    agreeing = validate_candidate(url, "Utrecht", fake_fetcher, FakeLLM({"confidence": 40, "is_event_agenda": True}))
    doubtful = validate_candidate(url, "Utrecht", fake_fetcher, FakeLLM({"confidence": 95, "is_event_agenda": False}))

    assert agreeing.confidence == 60
    assert doubtful.confidence == 55


def test_failed_fetch_scores_zero(fake_fetcher):
    candidate = validate_candidate("https://kapot.nl/agenda", "Utrecht", fake_fetcher)
    assert candidate.confidence == 0
    assert candidate.reasons == {"fetch_failed": 0}


def test_discovery_registers_enables_and_isolates_errors(tmp_path, fake_fetcher, notifier):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    fake_fetcher.pages["https://utrecht-agenda.nl/agenda"] = HIGH_PAGE
    fake_fetcher.pages["https://stadsnieuws.nl/evenementen"] = MID_PAGE
    fake_fetcher.pages["https://kapot.nl/agenda"] = 500

    def fetcher(url, **kwargs):
        if "boom" in url:
            raise RuntimeError("connection reset")
        return fake_fetcher(url, **kwargs)

    queries = []

    def search_fn(query):
        queries.append(query)
        return [
            {"url": "https://www.utrecht-agenda.nl/agenda/?utm_source=x", "title": "Uitagenda"},
            {"url": "https://www.facebook.com/events/1", "title": "Facebook"},
            {"url": "https://stadsnieuws.nl/evenementen", "title": "Stadsnieuws"},
            {"url": "https://kapot.nl/agenda", "title": "Kapot"},
            {"url": "https://boom.nl/agenda", "title": "Boom"},
        ]

    result = discover_for_municipality(
        conn,
        "Utrecht",
        search_fn=search_fn,
        fetcher=fetcher,
        notifier=notifier,
        sleep=_no_sleep,
    )

    assert result.status == "completed"
    assert result.queries_run == 5
    assert len(queries) == 5
    assert result.sources_found == 4
    assert result.sources_added == 2
    assert result.sources_enabled == 1
    assert len(result.errors) == 1
    assert "boom.nl" in result.errors[0]

    enabled = get_source_by_url(conn, "https://utrecht-agenda.nl/agenda")
    assert enabled.enabled is True
    assert enabled.auto_discovered is True
    assert enabled.confidence_score == 100
    review = get_source_by_url(conn, "https://stadsnieuws.nl/evenementen")
    assert review.enabled is False
    assert review.disabled_reason == "pending_review"
    assert [event for event, _ in notifier.sent] == ["source_discovered"]
    assert list_discovery_runs(conn)[0]["status"] == "completed"

    again = discover_for_municipality(
        conn, "Utrecht", search_fn=search_fn, fetcher=fetcher, sleep=_no_sleep
    )
    assert again.sources_added == 0
    assert len(list_sources(conn, enabled_only=False)) == 2


def test_auth_error_stops_discovery_without_retry(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    calls = []

    def search_fn(query):
        calls.append(query)
        raise SearchAuthError("Serper rejected credentials (401)", 401)

    result = discover_for_municipality(
        conn, "Utrecht", search_fn=search_fn, fetcher=fake_fetcher, sleep=_no_sleep
    )

    assert result.status == "failed"
    assert len(calls) == 1
    assert fake_fetcher.calls == []


def test_unconfigured_search_and_saturation(tmp_path, fake_fetcher):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    unconfigured = discover_for_municipality(conn, "Utrecht", search_fn=None, fetcher=fake_fetcher)
    assert unconfigured.status == "search_unconfigured"

    base = default_config()
    config = replace(base, discovery=replace(base.discovery, max_sources_per_municipality=0))
    saturated = discover_for_municipality(
        conn, "Utrecht", search_fn=lambda query: [], fetcher=fake_fetcher, config=config
    )
    assert saturated.status == "saturated"
    assert [run["status"] for run in list_discovery_runs(conn)] == ["saturated", "search_unconfigured"]
