from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class StagingStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    PENDING_WITH_BACKOFF = "pending_with_backoff"
    DEAD = "dead"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


class ParsingMethod(str, Enum):
    TRUSTED_FEED = "trusted_feed"
    JSON_LD = "json_ld"
    JSON_LD_DETAIL = "json_ld_detail"
    AI = "ai"
    PARTIAL = "partial"


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    url: str
    kind: str
    enabled: bool
    auto_discovered: bool
    confidence_score: int | None
    category_hint: str | None
    municipality: str | None
    default_lat: float | None
    default_lng: float | None
    config: dict[str, object]
    default_frequency_minutes: int
    disabled_reason: str | None
    dynamic_rate_limit_ms: int
    rate_limit_increased_at: str | None
    rate_limit_increase_count: int
    last_403_429_at: str | None
    last_success_at: str | None
    # Read-only mirror of the breaker's failure_count.
    consecutive_failures: int = 0

    @property
    def is_trusted(self) -> bool:
        return self.kind == "feed" or bool(self.config.get("trusted"))


@dataclass(frozen=True)
class CircuitBreakerState:
    source_id: str
    state: CircuitState
    failure_count: int
    consecutive_opens: int
    last_failure_at: str | None
    last_failure_reason: str | None
    last_success_at: str | None
    opened_at: str | None
    cooldown_until: str | None
    probe_started_at: str | None


@dataclass(frozen=True)
class StagingRecord:
    id: int
    source_id: str
    source_url: str
    payload: dict[str, object]
    status: StagingStatus
    retry_count: int
    next_eligible_at: str | None
    claimed_by: str | None
    claimed_at: str | None
    lease_expires_at: str | None
    last_error: str | None
    parsing_method: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class DeadLetterEntry:
    id: int
    staging_id: int | None
    source_id: str | None
    source_url: str | None
    stage: str
    error_type: str
    error_message: str | None
    payload: dict[str, object]
    retry_count: int
    max_retries: int
    next_retry_at: str | None
    status: DeadLetterStatus
    permanently_failed: bool
    resolution_notes: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: float


@dataclass(frozen=True)
class DiscoveredSourceCandidate:
    url: str
    title: str
    snippet: str
    municipality: str
    confidence: int
    suggested_name: str
    suggested_category: str | None
    reasons: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtractionResult:
    method: ParsingMethod
    fields: dict[str, object]
    extraction_incomplete: bool
    attempts: list[str]


@dataclass(frozen=True)
class EventRecord:
    source_id: str
    source_url: str
    fingerprint: str
    title: str
    description: str | None
    category: str
    venue_name: str | None
    venue_address: str | None
    starts_at: str | None
    ends_at: str | None
    event_date: str | None
    event_time: str | None
    lat: float | None
    lng: float | None
    image_url: str | None
    ticket_url: str | None
    price: str | None
    organizer: str | None
    parsing_method: str
    extraction_incomplete: bool
    completeness: float
    event_url: str | None = None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
