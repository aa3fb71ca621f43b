from typing import Any

import pytest

from sparql_bridge import config as config_module
from sparql_bridge.client import ProtocolClient
from sparql_bridge.config import config_from_mapping
from sparql_bridge.prefixes import COMMON_PREFIXES, PrefixTable

from fakes import FakeSession


@pytest.fixture
def prefixes() -> PrefixTable:
    return PrefixTable(COMMON_PREFIXES)


@pytest.fixture
def app_config():
    return config_from_mapping({"limits": {"max_rows": 100}, "http": {"timeout_ms": 5000}})


@pytest.fixture
def make_client(app_config, prefixes):
    def factory(*outcomes: Any, config=None) -> ProtocolClient:
        return ProtocolClient(
            config=config or app_config,
            session=FakeSession(*outcomes),
            prefixes=prefixes,
        )

    return factory


@pytest.fixture
def reset_config_cache(monkeypatch):
    monkeypatch.setattr(config_module, "_CACHED_CONFIG", None)
    monkeypatch.delenv(config_module.CONFIG_ENV_VAR, raising=False)
    yield
