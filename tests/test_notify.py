from eventvigil.notify import NullNotifier, WebhookNotifier, build_notifier, safe_notify


class ExplodingNotifier:
    def send(self, event_type, payload):
        raise RuntimeError("webhook down")


def test_safe_notify_swallows_delivery_errors(notifier):
    safe_notify(ExplodingNotifier(), "circuit_opened", {"source_id": "s"})
    safe_notify(None, "circuit_opened", {"source_id": "s"})
    safe_notify(notifier, "dlq_threshold", {"pending": 51, "threshold": 50})
    assert notifier.sent == [("dlq_threshold", {"pending": 51, "threshold": 50})]


def test_webhook_failures_are_logged_not_raised():
    notifier = WebhookNotifier("http://127.0.0.1:9/hook", timeout_seconds=1, background=False)
    notifier.send("source_auto_disabled", {"source_id": "s", "reason": "auto_disable:circuit_open_streak:5"})


def test_build_notifier_from_env(monkeypatch):
    assert isinstance(build_notifier(), NullNotifier)
    monkeypatch.setenv("EV_NOTIFY_WEBHOOK_URL", "https://hooks.example/abc")
    notifier = build_notifier()
    assert isinstance(notifier, WebhookNotifier)
    assert notifier.url == "https://hooks.example/abc"
