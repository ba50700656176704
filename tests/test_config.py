import copy

import pytest

from eventvigil.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    load_sources_file,
    set_runtime_config,
)
from eventvigil.storage import init_db


def test_bootstrap_creates_runtime_config(tmp_path):
    conn = init_db()
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(tmp_path):
    conn = init_db()
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    custom["breaker"]["failure_threshold"] = 3
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["app"]["name"] == "Test"
    assert load_runtime_config(conn).breaker.failure_threshold == 3


def test_set_runtime_config_rejects_invalid(tmp_path):
    conn = init_db()
    invalid = {"app": {"name": "Bad"}}
    with pytest.raises(ConfigError, match="Invalid config.runtime"):
        set_runtime_config(conn, invalid)


def test_set_runtime_config_rejects_wrong_types(tmp_path):
    conn = init_db()
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["staging"]["max_retries"] = "three"
    custom["extraction"]["fetch_detail_pages"] = 1
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, custom)
    assert "config.runtime.staging.max_retries must be an integer" in str(excinfo.value)
    assert "config.runtime.extraction.fetch_detail_pages must be a boolean" in str(excinfo.value)


def test_runtime_config_builds_typed_sections(tmp_path):
    config = load_runtime_config(init_db())
    assert config.extraction.ai_timeout_seconds == 5
    assert config.staging.max_retries == 3
    assert config.rate_limits.stages["coordinator"].limit == 10
    assert config.dlq.base_delay_seconds == 3600


def test_load_sources_file(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        """
sources:
  - id: utrecht-uitagenda
    name: Uitagenda Utrecht
    url: https://example.nl/agenda
    kind: html
    municipality: Utrecht
    config:
      selectors:
        item: article.event
  - id: gemeente-feed
    url: https://example.nl/agenda.rss
    kind: feed
""",
        encoding="utf-8",
    )

    sources = load_sources_file(str(path))

    assert [source["id"] for source in sources] == ["utrecht-uitagenda", "gemeente-feed"]
    assert sources[0]["config"]["selectors"]["item"] == "article.event"


def test_load_sources_file_requires_id_and_url(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("- name: No id\n  url: https://example.nl\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="requires id and url"):
        load_sources_file(str(path))


def test_load_sources_file_rejects_bad_yaml(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("sources: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_sources_file(str(path))
