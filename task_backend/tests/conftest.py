# tests/conftest.py

from typing import List

import pytest

from src.api import db, tenants
from src.api.db import DatabaseSettings, PoolManager
from src.api.tenants import TenantRegistry

from tests.fakes import TENANT_RECORDS, FakeDatabase, FakePool


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-jwt-secret")
    monkeypatch.delenv("TENANT_CONFIG_FILE", raising=False)


@pytest.fixture
def registry() -> TenantRegistry:
    return TenantRegistry.from_records(TENANT_RECORDS)


@pytest.fixture(autouse=True)
def _process_registry(monkeypatch, registry):
    monkeypatch.setattr(tenants, "_REGISTRY", registry)


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def settings() -> DatabaseSettings:
    return DatabaseSettings(pool_min=0, pool_max=3, connection_timeout_ms=200, ssl=False)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def manager(monkeypatch, fake_db, settings, sleeps) -> PoolManager:
    """PoolManager over the fake pool, installed as the process-wide manager."""

    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    pool_manager = PoolManager(settings, pool_factory=lambda s: FakePool(fake_db, s), sleep=_record_sleep)
    monkeypatch.setattr(db, "_MANAGER", pool_manager)
    return pool_manager
