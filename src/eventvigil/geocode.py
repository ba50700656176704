from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import AppConfig
from .models import Source
from .utils import log_event

logger = logging.getLogger("eventvigil.geocode")

DEFAULT_NOMINATIM_URL = "https://nominatim.openstreetmap.org"


class Geocoder:
    def geocode(self, text: str) -> tuple[float, float] | None:
        raise NotImplementedError


class NullGeocoder(Geocoder):
    def geocode(self, text: str) -> tuple[float, float] | None:
        return None


class NominatimGeocoder(Geocoder):
    """Forward geocoding against a Nominatim instance.

    Failures are logged and reported as "no coordinates"; callers fall back to
    the source defaults.
    """

    def __init__(
        self,
        url: str = DEFAULT_NOMINATIM_URL,
        *,
        timeout_s: int = 10,
        country_codes: str = "nl",
        user_agent: str = "EventVigil/0.1",
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout_s = timeout_s
        self.country_codes = country_codes
        self.user_agent = user_agent
        self._cache: dict[str, tuple[float, float] | None] = {}

    def geocode(self, text: str) -> tuple[float, float] | None:
        query = " ".join((text or "").split())
        if not query:
            return None
        if query in self._cache:
            return self._cache[query]
        params = {
            "q": query,
            "format": "json",
            "limit": "1",
            "countrycodes": self.country_codes,
        }
        request = Request(
            self.url + "/search?" + urlencode(params),
            headers={"User-Agent": self.user_agent},
        )
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8", errors="replace")
            data = json.loads(body)
        except HTTPError as exc:
            log_event(logger, logging.WARNING, "geocode_failed", query=query, status=exc.code)
            return None
        except (URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            log_event(logger, logging.WARNING, "geocode_failed", query=query, error=exc)
            return None
        result = _first_point(data)
        self._cache[query] = result
        return result


def build_geocoder() -> Geocoder:
    url = os.environ.get("EV_GEOCODER_URL")
    if not url:
        return NullGeocoder()
    return NominatimGeocoder(url)


def resolve_coordinates(
    fields: dict[str, Any],
    source: Source | None,
    geocoder: Geocoder | None,
    app_config: AppConfig,
) -> tuple[float, float, str]:
    """Return ``(lat, lng, origin)`` for an extracted event.

    Order: coordinates carried by the event, the geocoder on the venue, the
    source's default point, the application default.
    """
    lat = _coerce(fields.get("lat"))
    lng = _coerce(fields.get("lng"))
    if lat is not None and lng is not None:
        return lat, lng, "event"
    if geocoder is not None:
        query = _venue_query(fields, source)
        if query:
            point = geocoder.geocode(query)
            if point:
                return point[0], point[1], "geocoder"
    if source is not None and source.default_lat is not None and source.default_lng is not None:
        return source.default_lat, source.default_lng, "source_default"
    return app_config.default_lat, app_config.default_lng, "app_default"


def _venue_query(fields: dict[str, Any], source: Source | None) -> str | None:
    parts = [fields.get("venue_address") or fields.get("venue_name")]
    if not parts[0]:
        return None
    if source is not None and source.municipality:
        if source.municipality.lower() not in str(parts[0]).lower():
            parts.append(source.municipality)
    return ", ".join(str(part) for part in parts if part)


def _first_point(data: Any) -> tuple[float, float] | None:
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    lat = _coerce(first.get("lat")) if isinstance(first, dict) else None
    lng = _coerce(first.get("lon")) if isinstance(first, dict) else None
    if lat is None or lng is None:
        return None
    return lat, lng


def _coerce(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
