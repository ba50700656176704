import io
import json

import pytest

from eventvigil import search
from eventvigil.search import SearchAuthError, SearchError, build_search_fn, search_with_retry


def test_auth_error_is_not_retried():
    calls = []
    slept = []

    def search_fn(query):
        calls.append(query)
        raise SearchAuthError("Serper rejected credentials (403)", 403)

    with pytest.raises(SearchAuthError):
        search_with_retry("evenementen Utrecht", search_fn, sleep=slept.append)

    assert calls == ["evenementen Utrecht"]
    assert slept == []


def test_transient_errors_back_off_exponentially():
    attempts = []
    slept = []

    def search_fn(query):
        attempts.append(query)
        if len(attempts) < 3:
            raise SearchError("Serper HTTP error 502", 502)
        return [{"url": "https://example.nl/agenda", "title": "Agenda", "snippet": ""}]

    results = search_with_retry("agenda Utrecht", search_fn, sleep=slept.append)

    assert len(attempts) == 3
    assert slept == [1, 2]
    assert results[0]["url"] == "https://example.nl/agenda"


def test_last_error_raised_when_attempts_run_out():
    slept = []

    def search_fn(query):
        raise SearchError("Searxng connection error: timed out")

    with pytest.raises(SearchError, match="timed out"):
        search_with_retry("agenda Utrecht", search_fn, attempts=2, sleep=slept.append)
    assert slept == [1]


def test_no_backend_configured():
    assert build_search_fn() is None


def test_serper_results_are_normalized(monkeypatch):
    captured = {}

    class FakeResponse(io.BytesIO):
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    def fake_urlopen(request, timeout):
        captured["headers"] = dict(request.header_items())
        captured["body"] = json.loads(request.data)
        payload = {
            "organic": [
                {"link": "https://utrecht.nl/agenda", "title": "Agenda", "snippet": "Alle evenementen"},
                {"link": "https://example.nl/uit", "title": None},
            ]
        }
        return FakeResponse(json.dumps(payload).encode("utf-8"))

    monkeypatch.setenv("EV_SERPER_API_KEY", "secret")
    monkeypatch.setattr(search, "urlopen", fake_urlopen)

    search_fn = build_search_fn(max_results=5)
    results = search_fn("uitagenda Utrecht")

    assert captured["body"] == {"q": "uitagenda Utrecht", "gl": "nl", "hl": "nl", "num": 5}
    assert captured["headers"]["X-api-key"] == "secret"
    assert results == [
        {"url": "https://utrecht.nl/agenda", "title": "Agenda", "snippet": "Alle evenementen"},
        {"url": "https://example.nl/uit", "title": "", "snippet": ""},
    ]


def test_missing_serper_key_is_an_auth_error():
    with pytest.raises(SearchAuthError):
        search.serper_search("agenda", api_key="")
