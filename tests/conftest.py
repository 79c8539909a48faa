"""
Pytest configuration and shared fixtures.

Default environment variables are set before any relay import so the
module-level settings load; each test then builds its own Settings with a
SQLite file under tmp_path.
"""

import os

os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import Settings, get_settings
get_settings.cache_clear()

from relay.storage import DurableStore
from relay.tenants import TenantRegistry, date_prefix


TEST_TENANTS = ["1234", "5678", "9999"]


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
def offline_url(tmp_path) -> str:
    # Parent directory is never created, so SQLite cannot open the file
    return f"sqlite:///{tmp_path / 'missing' / 'relay.db'}"


@pytest.fixture
def take_offline(offline_url):
    """Simulate the database going away: drop the engine and point at a dead URL."""
    def _take_offline(store: DurableStore) -> None:
        store.mark_disconnected("test outage")
        store._dispose_engine()
        store.url = offline_url
    return _take_offline


@pytest.fixture
def passcode():
    def _passcode(tenant: str) -> str:
        return date_prefix() + tenant
    return _passcode


@pytest.fixture
def registry() -> TenantRegistry:
    return TenantRegistry(TEST_TENANTS, id_length=4)


@pytest.fixture
def store(registry, db_url):
    store = DurableStore(db_url, registry, timeout=5.0)
    yield store
    store._dispose_engine()


@pytest.fixture
def make_settings(db_url):
    def _make(**overrides) -> Settings:
        values = {
            "SESSION_SECRET": "test-session-secret",
            "DATABASE_URL": db_url,
            "LOG_LEVEL": "WARNING",
            "TENANTS": TEST_TENANTS,
            # The monitor is driven by hand in tests
            "RECONNECT_INTERVAL_SECONDS": 3600,
            "STORE_TIMEOUT_SECONDS": 5,
        }
        values.update(overrides)
        return Settings(**values)
    return _make
