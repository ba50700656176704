from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any
from urllib.request import Request, urlopen

from .utils import json_dumps, log_event

logger = logging.getLogger("eventvigil.notify")


class NullNotifier:
    def send(self, event_type: str, payload: dict[str, Any]) -> None:
        log_event(logger, logging.DEBUG, "notify_skipped", event_type=event_type)


class WebhookNotifier:
    """Posts Slack-compatible alert payloads to a webhook.

    Delivery is best effort: ``send`` never raises, and by default the POST
    runs on a daemon thread so a slow webhook cannot hold up a worker.
    """

    def __init__(self, url: str, timeout_seconds: int = 5, background: bool = True) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.background = background

    def send(self, event_type: str, payload: dict[str, Any]) -> None:
        body = {
            "text": _summary_line(event_type, payload),
            "event_type": event_type,
            "payload": json.loads(json_dumps(payload)),
        }
        if self.background:
            thread = threading.Thread(target=self._post, args=(event_type, body), daemon=True)
            thread.start()
            return
        self._post(event_type, body)

    def _post(self, event_type: str, body: dict[str, Any]) -> None:
        request = Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                response.read()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "notify_failed", event_type=event_type, error=str(exc))
            return
        log_event(logger, logging.DEBUG, "notify_sent", event_type=event_type)


def build_notifier() -> NullNotifier | WebhookNotifier:
    url = os.environ.get("EV_NOTIFY_WEBHOOK_URL", "").strip()
    if not url:
        return NullNotifier()
    return WebhookNotifier(url)


def safe_notify(notifier: Any, event_type: str, payload: dict[str, Any]) -> None:
    if notifier is None:
        return
    try:
        notifier.send(event_type, payload)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "notify_failed", event_type=event_type, error=str(exc))


def _summary_line(event_type: str, payload: dict[str, Any]) -> str:
    if event_type == "circuit_opened":
        return (
            f"Circuit opened for {payload.get('source_id')}: "
            f"{payload.get('reason')} (cooldown until {payload.get('cooldown_until')})"
        )
    if event_type == "source_discovered":
        return (
            f"Discovered {payload.get('name')} ({payload.get('url')}) "
            f"confidence {payload.get('confidence')}%"
        )
    if event_type == "dlq_threshold":
        return f"Dead letter queue holds {payload.get('pending')} pending items"
    return f"{event_type}: {json_dumps(payload)}"
