"""Tests for assembling the access core from settings."""

import pytest

from accessmeter.auth.permissions import Permission
from accessmeter.auth.principal import Principal
from accessmeter.bootstrap import build_access_core, build_tenant_repository, build_usage_store
from accessmeter.quota.redis_store import RedisUsageStore
from accessmeter.quota.sql_store import SQLAlchemyUsageStore
from accessmeter.quota.stores import InMemoryUsageStore
from accessmeter.redis_client import RedisClientManager
from accessmeter.settings import Settings, StoreBackend
from accessmeter.tenant.models import Account
from accessmeter.tenant.repository import InMemoryTenantRepository
from accessmeter.tenant.sql_repository import SQLAlchemyTenantRepository


def settings_with(quota: StoreBackend, tenant: StoreBackend) -> Settings:
    return Settings(
        environment="test",
        quota=Settings.QuotaSettings(backend=quota),
        tenant=Settings.TenantSettings(backend=tenant),
    )


@pytest.mark.unit
async def test_memory_backends_end_to_end(clock):
    settings = settings_with(StoreBackend.MEMORY, StoreBackend.MEMORY)
    core = await build_access_core(settings, clock=clock)

    assert isinstance(core.tenants, InMemoryTenantRepository)
    assert isinstance(core.ledger.store, InMemoryUsageStore)
    assert core.gate.ledger is core.ledger

    await core.tenants.save_account(Account(principal_id="u1", plan_id="starter", role="analyst"))
    principal = Principal(id="u1", role="analyst", plan_id="starter")
    decision = await core.gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)
    assert decision.allowed

    breakdown = await core.analytics.quota_breakdown()
    assert breakdown.summary.total_used == 1


@pytest.mark.integration
async def test_database_backends(session_maker):
    settings = settings_with(StoreBackend.DATABASE, StoreBackend.DATABASE)
    core = await build_access_core(settings, session_maker=session_maker)
    assert isinstance(core.tenants, SQLAlchemyTenantRepository)
    assert isinstance(core.ledger.store, SQLAlchemyUsageStore)


@pytest.mark.integration
async def test_redis_usage_backend(redis_client):
    settings = settings_with(StoreBackend.REDIS, StoreBackend.MEMORY)
    store = await build_usage_store(settings, redis=redis_client)
    assert isinstance(store, RedisUsageStore)


@pytest.mark.unit
def test_redis_tenant_backend_unsupported():
    settings = settings_with(StoreBackend.MEMORY, StoreBackend.REDIS)
    with pytest.raises(ValueError, match="Unsupported tenant backend"):
        build_tenant_repository(settings)


@pytest.mark.integration
async def test_redis_manager_health(redis_client):
    manager = RedisClientManager()
    assert not manager.initialized
    assert await manager.is_healthy() is False

    manager.attach(redis_client)
    assert await manager.initialize() is redis_client
    assert await manager.is_healthy() is True

    await manager.close()
    assert not manager.initialized
