from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .utils import log_event

logger = logging.getLogger("eventvigil.fetch")

DEFAULT_USER_AGENT = "EventVigil/0.1 (+https://example.invalid/bot)"
RATE_LIMIT_STATUSES = frozenset({403, 429})
MAX_BODY_BYTES = 5 * 1024 * 1024


class FetchError(RuntimeError):
    def __init__(self, url: str, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int | None
    body: str | None
    elapsed_ms: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 400

    @property
    def is_rate_limited(self) -> bool:
        return self.status in RATE_LIMIT_STATUSES

    @property
    def is_failure(self) -> bool:
        return not self.ok and not self.is_rate_limited

    def raise_for_status(self) -> None:
        if self.ok:
            return
        message = self.error or f"HTTP {self.status}"
        raise FetchError(self.url, message, self.status)


Fetcher = Callable[..., FetchResult]


def fetch_url(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout_seconds: int = 10,
    user_agent: str | None = None,
) -> FetchResult:
    request_headers = {
        "User-Agent": user_agent or DEFAULT_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "nl-NL,nl;q=0.9,en;q=0.8",
    }
    request_headers.update(headers or {})
    started = time.monotonic()
    try:
        request = Request(url, headers=request_headers)
        with urlopen(request, timeout=timeout_seconds) as response:
            status = response.getcode()
            charset = response.headers.get_content_charset() or "utf-8"
            raw = response.read(MAX_BODY_BYTES)
        body = raw.decode(charset, errors="replace")
        return FetchResult(url=url, status=status, body=body, elapsed_ms=_elapsed_ms(started))
    except HTTPError as exc:
        result = FetchResult(
            url=url,
            status=exc.code,
            body=_read_error_body(exc),
            elapsed_ms=_elapsed_ms(started),
            error=f"HTTP {exc.code}",
        )
    except (URLError, TimeoutError, OSError, ValueError) as exc:
        result = FetchResult(
            url=url,
            status=None,
            body=None,
            elapsed_ms=_elapsed_ms(started),
            error=str(getattr(exc, "reason", exc)),
        )
    log_event(
        logger,
        logging.WARNING if result.is_failure else logging.INFO,
        "fetch_failed" if result.is_failure else "fetch_rate_limited",
        url=url,
        status=result.status,
        elapsed_ms=result.elapsed_ms,
        error=result.error,
    )
    return result


def _read_error_body(exc: HTTPError) -> str | None:
    try:
        raw = exc.read(MAX_BODY_BYTES)
    except OSError:
        return None
    if not raw:
        return None
    return raw.decode("utf-8", errors="replace")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def source_headers(source: Any) -> dict[str, str]:
    headers = source.config.get("headers") if source is not None and source.config else None
    if not isinstance(headers, dict):
        return {}
    return {str(key): str(value) for key, value in headers.items()}
