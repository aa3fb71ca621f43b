"""Tests for YAML configuration loading."""

import pytest

from sparql_bridge.config import (
    CONFIG_ENV_VAR,
    DEFAULT_MAX_ROWS,
    ConfigError,
    config_from_mapping,
    get_endpoint,
    load_config,
)


CONFIG_YAML = """
limits:
  max_rows: 25
http:
  timeout_ms: 1500
  headers:
    X-Client: tests
prefixes:
  ex: "http://example.org/"
endpoints:
  - id: local
    sparql_url: "http://localhost:3030/ds/sparql"
"""


def test_defaults_for_empty_mapping():
    config = config_from_mapping({})
    assert config.limits.max_rows == DEFAULT_MAX_ROWS
    assert config.http.timeout_ms == 60_000
    assert config.http.url_length_threshold_for_post == 2000
    assert config.endpoints == []


def test_load_from_env_var(tmp_path, monkeypatch, reset_config_cache):
    path = tmp_path / "bridge.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

    config = load_config(force_reload=True)
    assert config.limits.max_rows == 25
    assert config.http.timeout_ms == 1500
    assert config.http.headers == {"X-Client": "tests"}
    assert config.prefixes == {"ex": "http://example.org/"}
    assert load_config() is config

    endpoint = get_endpoint("local")
    assert endpoint == {"id": "local", "label": "local", "sparql_url": "http://localhost:3030/ds/sparql"}
    assert get_endpoint("missing") is None


def test_explicit_path_is_not_cached(tmp_path, reset_config_cache):
    path = tmp_path / "bridge.yaml"
    path.write_text("limits:\n  max_rows: 7\n", encoding="utf-8")
    assert load_config(path=path).limits.max_rows == 7
    assert load_config(path=path) is not load_config(path=path)


def test_missing_explicit_file(tmp_path, reset_config_cache):
    with pytest.raises(ConfigError):
        load_config(path=tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "raw",
    [
        {"limits": {"max_rows": 0}},
        {"limits": {"max_rows": "many"}},
        {"http": {"timeout_ms": -5}},
        {"http": {"headers": ["X-A: b"]}},
        {"prefixes": {"ex": "http://example.org/thing"}},
        {"endpoints": {"id": "x"}},
        {"endpoints": [{"label": "no id"}]},
    ],
)
def test_invalid_values(raw):
    with pytest.raises(ConfigError):
        config_from_mapping(raw)


def test_non_mapping_yaml(tmp_path, reset_config_cache):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path=path)
