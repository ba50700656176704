from __future__ import annotations

import pytest

from eventvigil.fetch import FetchResult


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Tests always run against a throwaway SQLite file, never EV_DB_URL.
    for name in (
        "EV_DB_URL",
        "EV_SERPER_API_KEY",
        "EV_SEARXNG_URL",
        "EV_NOTIFY_WEBHOOK_URL",
        "EV_GEOCODER_URL",
        "EV_AI_PROVIDER",
        "EV_AI_MODEL",
        "EV_AI_BASE_URL",
        "EV_AI_API_KEY",
        "EV_LOG_FILE",
        "EV_LOG_LEVELS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EV_DATA_DIR", str(tmp_path / "data"))


class FakeFetcher:
    """Serves canned responses by URL and records every request."""

    def __init__(self, pages: dict[str, object] | None = None, default_status: int = 404) -> None:
        self.pages = dict(pages or {})
        self.default_status = default_status
        self.calls: list[str] = []

    def __call__(self, url, *, headers=None, timeout_seconds=10, user_agent=None):
        self.calls.append(url)
        page = self.pages.get(url)
        if isinstance(page, FetchResult):
            return page
        if isinstance(page, int):
            return FetchResult(url=url, status=page, body=None, elapsed_ms=1, error=f"HTTP {page}")
        if page is None:
            return FetchResult(
                url=url,
                status=self.default_status,
                body=None,
                elapsed_ms=1,
                error=f"HTTP {self.default_status}",
            )
        return FetchResult(url=url, status=200, body=str(page), elapsed_ms=1)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    def send(self, event_type, payload):
        self.sent.append((event_type, payload))


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()
