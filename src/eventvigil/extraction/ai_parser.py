from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

import jsonschema

from ..normalize import CATEGORY_IDS
from ..utils import log_event

logger = logging.getLogger("eventvigil.extraction.ai_parser")

PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")

EVENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "event_date": {
            "anyOf": [{"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"}, {"type": "null"}]
        },
        "event_time": {
            "anyOf": [{"type": "string", "pattern": r"^\d{2}:\d{2}$"}, {"type": "null"}]
        },
        "end_time": {
            "anyOf": [{"type": "string", "pattern": r"^\d{2}:\d{2}$"}, {"type": "null"}]
        },
        "venue_name": {"type": ["string", "null"]},
        "venue_address": {"type": ["string", "null"]},
        "category": {"anyOf": [{"enum": list(CATEGORY_IDS)}, {"type": "null"}]},
        "price": {"type": ["string", "null"]},
        "ticket_url": {"type": ["string", "null"]},
        "image_url": {"type": ["string", "null"]},
        "organizer": {"type": ["string", "null"]},
    },
}

AGENDA_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["confidence"],
    "properties": {
        "confidence": {"type": "integer", "minimum": 0, "maximum": 100},
        "is_event_agenda": {"type": "boolean"},
        "suggested_name": {"type": ["string", "null"]},
    },
}

_EVENT_SYSTEM_PROMPT = (
    "You extract one event from Dutch, English or German web content. "
    "Answer with a single JSON object using the keys title, description, event_date "
    "(YYYY-MM-DD), event_time (HH:MM, 24h), end_time, venue_name, venue_address, "
    f"category (one of {', '.join(CATEGORY_IDS)}), price, ticket_url, image_url, organizer. "
    "Use null for anything the content does not state. Do not invent values."
)

_AGENDA_SYSTEM_PROMPT = (
    "You judge whether a web page is a local event agenda (a listing of upcoming events) "
    "for the given municipality. Answer with a JSON object: "
    '{"confidence": 0-100, "is_event_agenda": true|false, "suggested_name": string|null}.'
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AIParserUnavailable(RuntimeError):
    pass


class AIParserError(RuntimeError):
    pass


class AIParser:
    """Structured extraction through a hosted language model.

    Transport problems (missing credentials, timeouts, non-2xx responses)
    raise :class:`AIParserUnavailable`; a response that is not valid JSON or
    fails the schema raises :class:`AIParserError`.
    """

    def __init__(
        self,
        provider: str,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout_seconds: float = 5,
        params: dict[str, Any] | None = None,
    ) -> None:
        if provider not in PROVIDER_TYPES:
            raise ValueError(f"unsupported_provider_type {provider}")
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.base_url = base_url or _default_base_url(provider)
        self.timeout_seconds = timeout_seconds
        self.params = params or {"temperature": 0, "max_tokens": 800}

    @classmethod
    def from_env(cls, llm_config: dict[str, Any] | None = None, timeout_seconds: float = 5) -> "AIParser":
        llm_config = llm_config or {}
        provider = os.environ.get("EV_AI_PROVIDER") or llm_config.get("provider") or "openai_compatible"
        model = os.environ.get("EV_AI_MODEL") or llm_config.get("model") or ""
        base_url = os.environ.get("EV_AI_BASE_URL") or llm_config.get("base_url") or None
        api_key = os.environ.get("EV_AI_API_KEY") or None
        return cls(
            provider=provider,
            api_key=api_key,
            model=model,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )

    @property
    def available(self) -> bool:
        if not self.model:
            return False
        # Local OpenAI-compatible servers commonly run without a key.
        if self.provider == "openai_compatible" and self.base_url != _default_base_url(self.provider):
            return True
        return bool(self.api_key)

    def parse(
        self,
        content: str,
        schema: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        parsed = self.complete_json(
            _EVENT_SYSTEM_PROMPT,
            content,
            schema or EVENT_SCHEMA,
            timeout_seconds=timeout_seconds,
        )
        return {key: value for key, value in parsed.items() if value not in ("", None)}

    def rate_agenda(self, content: str, municipality: str, timeout_seconds: float | None = None) -> dict[str, Any]:
        user = f"Municipality: {municipality}\n\n{content}"
        return self.complete_json(
            _AGENDA_SYSTEM_PROMPT, user, AGENDA_SCHEMA, timeout_seconds=timeout_seconds
        )

    def complete_json(
        self,
        system: str,
        user: str,
        schema: dict[str, Any],
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        if not self.available:
            raise AIParserUnavailable("ai_parser_not_configured")
        timeout = min(timeout_seconds or self.timeout_seconds, self.timeout_seconds)
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        raw = self._call_provider(messages, timeout)
        parsed = _parse_json(raw)
        try:
            jsonschema.validate(parsed, schema)
        except jsonschema.ValidationError as exc:
            raise AIParserError(f"schema_invalid: {exc.message}") from exc
        log_event(logger, logging.DEBUG, "ai_parse_ok", provider=self.provider, model=self.model)
        return parsed

    def _call_provider(self, messages: list[dict[str, str]], timeout: float) -> str:
        if self.provider == "openai_compatible":
            url = _join_url(self.base_url, "/chat/completions")
            payload = {
                "model": self.model,
                "messages": messages,
                "response_format": {"type": "json_object"},
                **_filter_params(self.params),
            }
            response = _http_request("POST", url, _auth_headers(self.provider, self.api_key), payload, timeout)
            return _read_openai(response)
        if self.provider == "anthropic":
            url = _join_url(self.base_url, "/messages")
            payload = {
                "model": self.model,
                "max_tokens": int(self.params.get("max_tokens", 800)),
                "system": messages[0]["content"],
                "messages": [{"role": "user", "content": messages[1]["content"]}],
            }
            response = _http_request("POST", url, _auth_headers(self.provider, self.api_key), payload, timeout)
            return _read_anthropic(response)
        url = _join_url(
            self.base_url,
            f"/models/{urllib.parse.quote(self.model)}:generateContent",
        )
        url = _append_key(url, self.api_key)
        payload = {
            "systemInstruction": {"parts": [{"text": messages[0]["content"]}]},
            "contents": [{"parts": [{"text": messages[1]["content"]}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                **_filter_params(self.params, google=True),
            },
        }
        response = _http_request("POST", url, {}, payload, timeout)
        return _read_google(response)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise AIParserUnavailable(f"http_error {exc.code}: {body[:300]}") from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise AIParserUnavailable(f"network_error: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AIParserError("provider_response_not_json") from exc
    if not isinstance(data, dict):
        raise AIParserError("provider_response_not_object")
    return data


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise AIParserError("openai_missing_choices")
    return choices[0].get("message", {}).get("content") or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    content = response.get("content") or []
    if not content:
        raise AIParserError("anthropic_missing_content")
    return content[0].get("text") or ""


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise AIParserError("google_missing_candidates")
    parts = candidates[0].get("content", {}).get("parts", [])
    if not parts:
        raise AIParserError("google_missing_parts")
    return parts[0].get("text") or ""


def _parse_json(raw: str) -> dict[str, Any]:
    text = _FENCE.sub("", raw.strip())
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AIParserError("invalid_json") from exc
    if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        raise AIParserError("json_not_object")
    return parsed


def _filter_params(params: dict[str, Any], google: bool = False) -> dict[str, Any]:
    allowed = {"temperature", "max_tokens", "top_p", "seed"}
    filtered = {key: value for key, value in params.items() if key in allowed}
    if google and "max_tokens" in filtered:
        filtered["maxOutputTokens"] = filtered.pop("max_tokens")
    return filtered


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
