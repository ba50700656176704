from __future__ import annotations

import json
import logging
import os
import time
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .utils import log_event

logger = logging.getLogger("eventvigil.search")

SERPER_URL = "https://google.serper.dev/search"
USER_AGENT = "EventVigil/0.1"

SearchFn = Callable[[str], list[dict[str, object]]]


class SearchError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SearchAuthError(SearchError):
    pass


def serper_search(
    query: str,
    *,
    api_key: str,
    timeout_s: int = 15,
    gl: str = "nl",
    hl: str = "nl",
    max_results: int = 10,
) -> list[dict[str, object]]:
    if not api_key:
        raise SearchAuthError("EV_SERPER_API_KEY not set")
    body = json.dumps({"q": query, "gl": gl, "hl": hl, "num": max_results}).encode("utf-8")
    request = Request(
        SERPER_URL,
        data=body,
        method="POST",
        headers={
            "X-API-KEY": api_key,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        },
    )
    data = _read_json(request, timeout_s, "Serper")
    results = []
    for item in (data.get("organic") or [])[: max_results or 10]:
        results.append(
            {
                "url": item.get("link"),
                "title": item.get("title") or "",
                "snippet": item.get("snippet") or "",
            }
        )
    return results


def searxng_search(
    query: str,
    *,
    url: str,
    timeout_s: int = 15,
    language: str | None = "nl-NL",
    safesearch: int = 0,
    max_results: int = 10,
) -> list[dict[str, object]]:
    if not url:
        raise SearchError("EV_SEARXNG_URL not set")
    params = {
        "q": query,
        "format": "json",
        "safesearch": str(safesearch),
    }
    if language:
        params["language"] = language
    req_url = url.rstrip("/") + "/search?" + urlencode(params)
    request = Request(req_url, headers={"User-Agent": USER_AGENT})
    data = _read_json(request, timeout_s, "Searxng")
    results = []
    for item in (data.get("results") or [])[: max_results or 10]:
        results.append(
            {
                "url": item.get("url"),
                "title": item.get("title") or "",
                "snippet": item.get("content") or item.get("snippet") or "",
            }
        )
    return results


def _read_json(request: Request, timeout_s: int, backend: str) -> dict[str, object]:
    try:
        with urlopen(request, timeout=timeout_s) as response:
            body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        if exc.code in (401, 403):
            raise SearchAuthError(f"{backend} rejected credentials ({exc.code})", exc.code) from exc
        raise SearchError(f"{backend} HTTP error {exc.code}", exc.code) from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise SearchError(f"{backend} connection error: {exc}") from exc
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise SearchError(f"{backend} returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise SearchError(f"{backend} returned unexpected payload")
    return data


def search_with_retry(
    query: str,
    search_fn: SearchFn,
    *,
    attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> list[dict[str, object]]:
    """Run ``search_fn`` with exponential backoff (1s, 2s, ...).

    Credential errors are raised on the first attempt; retrying cannot fix them.
    """
    last_error: SearchError | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return search_fn(query)
        except SearchAuthError:
            log_event(logger, logging.ERROR, "search_auth_failed", query=query, attempt=attempt)
            raise
        except SearchError as exc:
            last_error = exc
            log_event(
                logger,
                logging.WARNING,
                "search_attempt_failed",
                query=query,
                attempt=attempt,
                error=exc,
            )
            if attempt < attempts:
                sleep(2 ** (attempt - 1))
    assert last_error is not None
    raise last_error


def build_search_fn(timeout_s: int = 15, max_results: int = 10) -> SearchFn | None:
    serper_key = os.environ.get("EV_SERPER_API_KEY", "").strip()
    if serper_key:
        return lambda query: serper_search(
            query, api_key=serper_key, timeout_s=timeout_s, max_results=max_results
        )
    searxng_url = os.environ.get("EV_SEARXNG_URL", "").strip()
    if searxng_url:
        return lambda query: searxng_search(
            query, url=searxng_url, timeout_s=timeout_s, max_results=max_results
        )
    log_event(logger, logging.WARNING, "search_unconfigured")
    return None
