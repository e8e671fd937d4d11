"""
Shared test fixtures for pytest.

Provides:
- settings: Test configuration pointing the three tiers at fake hosts
- backends: FakeBackends recording every forwarded request
- http_client: httpx.AsyncClient wired to the fake backends
- proxy: HelixProxy built from settings around http_client
"""

from __future__ import annotations

import httpx
import pytest

from helix_router.config import Settings, get_settings
from helix_router.routing.proxy import HelixProxy
from tests.fakes import FakeBackends


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings with per-tier fake hosts and a temporary log dir."""
    return Settings(
        environment="test",
        pro_url="http://pro.test/v1",
        pro_key="sk-pro",
        pro_model="backend-pro",
        mid_url="http://mid.test/v1",
        mid_key="sk-mid",
        mid_model="backend-mid",
        low_url="http://low.test/v1",
        low_key="",
        low_model="backend-low",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def backends() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def http_client(backends) -> httpx.AsyncClient:
    return backends.client()


@pytest.fixture
def proxy(settings, http_client) -> HelixProxy:
    return HelixProxy.from_settings(settings, http_client)
