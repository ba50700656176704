from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import HealthConfig, default_config
from .notify import safe_notify
from .storage import record_health_alert, set_source_enabled
from .utils import log_event, to_iso, utc_now

logger = logging.getLogger("eventvigil.health")


@dataclass(frozen=True)
class HealthReview:
    reviewed: int
    disabled: list[str]


def review_source_health(
    conn: Any,
    config: HealthConfig | None = None,
    notifier: Any = None,
    now: datetime | None = None,
) -> HealthReview:
    """Disable sources whose breaker keeps re-opening without any recovery.

    Sources are only disabled, never deleted; an operator re-enables them
    with ``eventvigil sources enable``.
    """
    config = config or default_config().health
    now = now or utc_now()
    stale_cutoff = to_iso(now - timedelta(days=config.stale_days))
    cursor = conn.execute(
        """
        SELECT s.id, cb.consecutive_opens, cb.last_success_at, s.last_success_at
        FROM sources s
        JOIN circuit_breakers cb ON cb.source_id = s.id
        WHERE s.enabled = 1
          AND cb.consecutive_opens >= ?
        ORDER BY s.id
        """,
        (config.disable_after_opens,),
    )
    rows = cursor.fetchall()
    disabled: list[str] = []
    for source_id, opens, breaker_success, request_success in rows:
        last_success_at = max(filter(None, (breaker_success, request_success)), default=None)
        if last_success_at and last_success_at > stale_cutoff:
            continue
        reason = f"auto_disable:circuit_open_streak:{opens}"
        if not set_source_enabled(conn, source_id, False, reason):
            continue
        disabled.append(source_id)
        message = (
            f"circuit opened {opens} times in a row; "
            f"last success {last_success_at or 'never'}"
        )
        record_health_alert(conn, source_id, "auto_disabled", message)
        log_event(
            logger,
            logging.WARNING,
            "source_auto_disabled",
            source_id=source_id,
            consecutive_opens=opens,
            last_success_at=last_success_at,
        )
        safe_notify(
            notifier,
            "source_auto_disabled",
            {"source_id": source_id, "reason": reason, "last_success_at": last_success_at},
        )
    log_event(
        logger,
        logging.INFO,
        "health_review_finished",
        candidates=len(rows),
        disabled=len(disabled),
    )
    return HealthReview(reviewed=len(rows), disabled=disabled)
