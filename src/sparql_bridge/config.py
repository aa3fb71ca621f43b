from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, TypedDict

import yaml


CONFIG_ENV_VAR = "SPARQL_BRIDGE_CONFIG_PATH"

DEFAULT_MAX_ROWS = 1000
DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_URL_LENGTH_THRESHOLD = 2000
DEFAULT_USER_AGENT = "sparql-bridge/0.1"


class EndpointConfig(TypedDict):
    id: str
    label: str
    sparql_url: str


@dataclass
class LimitsConfig:
    max_rows: int = DEFAULT_MAX_ROWS


@dataclass
class HttpConfig:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    url_length_threshold_for_post: int = DEFAULT_URL_LENGTH_THRESHOLD
    user_agent: str = DEFAULT_USER_AGENT
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class AppConfig:
    raw: Dict[str, Any] = field(default_factory=dict)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    prefixes: Dict[str, str] = field(default_factory=dict)
    endpoints: List[EndpointConfig] = field(default_factory=list)


class ConfigError(RuntimeError):
    """Raised when the sparql-bridge configuration is missing or invalid."""


def _default_config_path() -> Path:
    """
    Determine the default local config path.

    Resolved relative to the repository root (`configs/default.yaml`), so it
    works from a source checkout. Installed copies fall back to defaults.
    """

    here = Path(__file__).resolve()
    repo_root = here.parents[2]
    return repo_root / "configs" / "default.yaml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(
            f"sparql-bridge config file not found at '{path}'. "
            f"Set {CONFIG_ENV_VAR} to a valid YAML config."
        )
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config YAML at '{path}': {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config at '{path}' must be a YAML mapping/object.")
    return data


def _positive_int(section: Dict[str, Any], key: str, default: int, where: str) -> int:
    value = section.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{where}.{key}' must be an integer, got {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"'{where}.{key}' must be greater than zero.")
    return number


def _coerce_limits(section: Any) -> LimitsConfig:
    if not isinstance(section, dict):
        return LimitsConfig()
    return LimitsConfig(max_rows=_positive_int(section, "max_rows", DEFAULT_MAX_ROWS, "limits"))


def _coerce_http(section: Any) -> HttpConfig:
    if not isinstance(section, dict):
        return HttpConfig()
    headers = section.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigError("'http.headers' must be a mapping of header names to values.")
    return HttpConfig(
        timeout_ms=_positive_int(section, "timeout_ms", DEFAULT_TIMEOUT_MS, "http"),
        url_length_threshold_for_post=_positive_int(
            section, "url_length_threshold_for_post", DEFAULT_URL_LENGTH_THRESHOLD, "http"
        ),
        user_agent=str(section.get("user_agent") or DEFAULT_USER_AGENT),
        headers={str(k): str(v) for k, v in headers.items()},
    )


def _coerce_prefixes(section: Any) -> Dict[str, str]:
    if not section:
        return {}
    if not isinstance(section, dict):
        raise ConfigError("'prefixes' must be a mapping of prefix names to namespace IRIs.")
    prefixes: Dict[str, str] = {}
    for name, namespace in section.items():
        namespace = str(namespace)
        if not namespace or namespace[-1].isalnum():
            raise ConfigError(
                f"Namespace for prefix '{name}' must end in a non-alphanumeric character: {namespace!r}."
            )
        prefixes[str(name)] = namespace
    return prefixes


def _coerce_endpoints(endpoints: Any) -> List[EndpointConfig]:
    if endpoints is None:
        return []
    if not isinstance(endpoints, list):
        raise ConfigError("'endpoints' must be a list.")

    coerced: List[EndpointConfig] = []
    for idx, item in enumerate(endpoints):
        if not isinstance(item, dict):
            raise ConfigError(f"Endpoint #{idx} in 'endpoints' must be a mapping.")
        try:
            eid = str(item["id"])
            label = str(item.get("label") or eid)
            url = str(item["sparql_url"])
        except KeyError as exc:
            raise ConfigError(
                f"Endpoint #{idx} in 'endpoints' is missing required key: {exc}."
            ) from exc
        if not url:
            raise ConfigError(f"Endpoint '{eid}' in 'endpoints' has empty sparql_url.")
        coerced.append(EndpointConfig(id=eid, label=label, sparql_url=url))
    return coerced


def config_from_mapping(raw: Dict[str, Any]) -> AppConfig:
    return AppConfig(
        raw=raw,
        limits=_coerce_limits(raw.get("limits") or {}),
        http=_coerce_http(raw.get("http") or {}),
        prefixes=_coerce_prefixes(raw.get("prefixes")),
        endpoints=_coerce_endpoints(raw.get("endpoints")),
    )


_CACHED_CONFIG: Optional[AppConfig] = None


def load_config(force_reload: bool = False, path: Optional[Path] = None) -> AppConfig:
    """
    Load and validate the sparql-bridge configuration.

    Precedence:
    1. An explicit `path` argument.
    2. The path in SPARQL_BRIDGE_CONFIG_PATH, if set.
    3. `configs/default.yaml`; when that file is absent the built-in defaults apply.

    Explicitly named files must exist.
    """

    global _CACHED_CONFIG
    if path is None and _CACHED_CONFIG is not None and not force_reload:
        return _CACHED_CONFIG

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if path is not None:
        raw = _load_yaml(Path(path).expanduser())
    elif env_path:
        raw = _load_yaml(Path(env_path).expanduser())
    else:
        default_path = _default_config_path()
        raw = _load_yaml(default_path) if default_path.exists() else {}

    config = config_from_mapping(raw)
    if path is None:
        _CACHED_CONFIG = config
    return config


def get_endpoint(endpoint_id: str) -> Optional[EndpointConfig]:
    """Look up a configured endpoint by id."""

    for endpoint in load_config().endpoints:
        if endpoint["id"] == endpoint_id:
            return endpoint
    return None


__all__ = [
    "AppConfig",
    "LimitsConfig",
    "HttpConfig",
    "EndpointConfig",
    "ConfigError",
    "CONFIG_ENV_VAR",
    "config_from_mapping",
    "load_config",
    "get_endpoint",
]
