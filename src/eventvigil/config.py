from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str
    default_lat: float
    default_lng: float


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int
    min_cooldown_seconds: int
    max_cooldown_seconds: int
    probe_timeout_seconds: int


@dataclass(frozen=True)
class StageBudget:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitsConfig:
    stages: dict[str, StageBudget]
    purge_after_seconds: int


@dataclass(frozen=True)
class AdaptiveConfig:
    base_interval_ms: int
    max_interval_ms: int
    decay_after_hours: int


@dataclass(frozen=True)
class StagingConfig:
    max_retries: int
    base_delay_seconds: int
    lease_seconds: int
    batch_size: int
    retention_days: int


@dataclass(frozen=True)
class DlqConfig:
    max_retries: int
    base_delay_seconds: int
    retention_days: int
    alert_threshold: int
    retry_batch_size: int


@dataclass(frozen=True)
class ExtractionConfig:
    ai_timeout_seconds: int
    fetch_detail_pages: bool
    max_content_chars: int


@dataclass(frozen=True)
class NormalizeConfig:
    default_category: str
    min_category_confidence: float


@dataclass(frozen=True)
class DiscoveryConfig:
    search_timeout_seconds: int
    fetch_timeout_seconds: int
    search_attempts: int
    min_confidence: int
    auto_enable_confidence: int
    max_sources_per_municipality: int
    max_results_per_query: int
    candidate_delay_seconds: float


@dataclass(frozen=True)
class HealthConfig:
    disable_after_opens: int
    stale_days: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    http: HttpConfig
    jobs: JobsConfig
    breaker: BreakerConfig
    rate_limits: RateLimitsConfig
    adaptive: AdaptiveConfig
    staging: StagingConfig
    dlq: DlqConfig
    extraction: ExtractionConfig
    normalize: NormalizeConfig
    discovery: DiscoveryConfig
    health: HealthConfig
    llm: dict[str, Any]


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "EventVigil",
        "timezone": "Europe/Amsterdam",
        "default_lat": 52.3676,
        "default_lng": 4.9041,
    },
    "http": {
        "timeout_seconds": 10,
        "user_agent": "EventVigil/0.1 (+https://example.invalid/bot)",
    },
    "jobs": {
        "lock_timeout_seconds": 600,
    },
    "breaker": {
        "failure_threshold": 5,
        "min_cooldown_seconds": 1800,
        "max_cooldown_seconds": 86400,
        "probe_timeout_seconds": 600,
    },
    "rate_limits": {
        "stages": {
            "coordinator": {"limit": 10, "window_seconds": 60},
            "process_worker": {"limit": 60, "window_seconds": 60},
            "fetch": {"limit": 30, "window_seconds": 60},
            "discovery": {"limit": 20, "window_seconds": 60},
            "default": {"limit": 20, "window_seconds": 60},
        },
        "purge_after_seconds": 3600,
    },
    "adaptive": {
        "base_interval_ms": 200,
        "max_interval_ms": 30000,
        "decay_after_hours": 24,
    },
    "staging": {
        "max_retries": 3,
        "base_delay_seconds": 60,
        "lease_seconds": 300,
        "batch_size": 10,
        "retention_days": 7,
    },
    "dlq": {
        "max_retries": 3,
        "base_delay_seconds": 3600,
        "retention_days": 30,
        "alert_threshold": 50,
        "retry_batch_size": 20,
    },
    "extraction": {
        "ai_timeout_seconds": 5,
        "fetch_detail_pages": True,
        "max_content_chars": 12000,
    },
    "normalize": {
        "default_category": "community",
        "min_category_confidence": 0.5,
    },
    "discovery": {
        "search_timeout_seconds": 15,
        "fetch_timeout_seconds": 10,
        "search_attempts": 3,
        "min_confidence": 60,
        "auto_enable_confidence": 90,
        "max_sources_per_municipality": 5,
        "max_results_per_query": 10,
        "candidate_delay_seconds": 0.3,
    },
    "health": {
        "disable_after_opens": 5,
        "stale_days": 7,
    },
    "llm": {
        "enabled": False,
        "provider": "openai_compatible",
        "model": "",
        "base_url": "",
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    return errors


def load_sources_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("sources") or []
    if not isinstance(data, list):
        raise ConfigError("sources file must contain a list or a 'sources' key")
    sources: list[dict[str, Any]] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"sources[{index}] must be a mapping")
        if not item.get("id") or not item.get("url"):
            raise ConfigError(f"sources[{index}] requires id and url")
        sources.append(item)
    return sources


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    http_cfg = cfg["http"]
    breaker_cfg = cfg["breaker"]
    limits_cfg = cfg["rate_limits"]
    adaptive_cfg = cfg["adaptive"]
    staging_cfg = cfg["staging"]
    dlq_cfg = cfg["dlq"]
    extraction_cfg = cfg["extraction"]
    normalize_cfg = cfg["normalize"]
    discovery_cfg = cfg["discovery"]
    health_cfg = cfg["health"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        timezone=str(app_cfg["timezone"]),
        default_lat=float(app_cfg["default_lat"]),
        default_lng=float(app_cfg["default_lng"]),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
    )
    breaker = BreakerConfig(
        failure_threshold=int(breaker_cfg["failure_threshold"]),
        min_cooldown_seconds=int(breaker_cfg["min_cooldown_seconds"]),
        max_cooldown_seconds=int(breaker_cfg["max_cooldown_seconds"]),
        probe_timeout_seconds=int(breaker_cfg["probe_timeout_seconds"]),
    )
    stages = {
        name: StageBudget(
            limit=int(budget["limit"]),
            window_seconds=int(budget["window_seconds"]),
        )
        for name, budget in (limits_cfg["stages"] or {}).items()
    }
    rate_limits = RateLimitsConfig(
        stages=stages,
        purge_after_seconds=int(limits_cfg["purge_after_seconds"]),
    )
    adaptive = AdaptiveConfig(
        base_interval_ms=int(adaptive_cfg["base_interval_ms"]),
        max_interval_ms=int(adaptive_cfg["max_interval_ms"]),
        decay_after_hours=int(adaptive_cfg["decay_after_hours"]),
    )
    staging = StagingConfig(
        max_retries=int(staging_cfg["max_retries"]),
        base_delay_seconds=int(staging_cfg["base_delay_seconds"]),
        lease_seconds=int(staging_cfg["lease_seconds"]),
        batch_size=int(staging_cfg["batch_size"]),
        retention_days=int(staging_cfg["retention_days"]),
    )
    dlq = DlqConfig(
        max_retries=int(dlq_cfg["max_retries"]),
        base_delay_seconds=int(dlq_cfg["base_delay_seconds"]),
        retention_days=int(dlq_cfg["retention_days"]),
        alert_threshold=int(dlq_cfg["alert_threshold"]),
        retry_batch_size=int(dlq_cfg["retry_batch_size"]),
    )
    extraction = ExtractionConfig(
        ai_timeout_seconds=int(extraction_cfg["ai_timeout_seconds"]),
        fetch_detail_pages=bool(extraction_cfg["fetch_detail_pages"]),
        max_content_chars=int(extraction_cfg["max_content_chars"]),
    )
    normalize = NormalizeConfig(
        default_category=str(normalize_cfg["default_category"]),
        min_category_confidence=float(normalize_cfg["min_category_confidence"]),
    )
    discovery = DiscoveryConfig(
        search_timeout_seconds=int(discovery_cfg["search_timeout_seconds"]),
        fetch_timeout_seconds=int(discovery_cfg["fetch_timeout_seconds"]),
        search_attempts=int(discovery_cfg["search_attempts"]),
        min_confidence=int(discovery_cfg["min_confidence"]),
        auto_enable_confidence=int(discovery_cfg["auto_enable_confidence"]),
        max_sources_per_municipality=int(discovery_cfg["max_sources_per_municipality"]),
        max_results_per_query=int(discovery_cfg["max_results_per_query"]),
        candidate_delay_seconds=float(discovery_cfg["candidate_delay_seconds"]),
    )
    health = HealthConfig(
        disable_after_opens=int(health_cfg["disable_after_opens"]),
        stale_days=int(health_cfg["stale_days"]),
    )
    return Config(
        app=app,
        http=http,
        jobs=JobsConfig(lock_timeout_seconds=int(cfg["jobs"]["lock_timeout_seconds"])),
        breaker=breaker,
        rate_limits=rate_limits,
        adaptive=adaptive,
        staging=staging,
        dlq=dlq,
        extraction=extraction,
        normalize=normalize,
        discovery=discovery,
        health=health,
        llm=dict(cfg.get("llm") or {}),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
