"""
Global pytest configuration and fixtures for accessmeter tests.

Every component takes an injected clock and settings; fixtures wire them with
a fixed clock and zero-wait retries so tests stay deterministic.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest

# Keep the global settings away from any developer .env or database
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")

import fakeredis  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from accessmeter.access.gate import AccessGate  # noqa: E402
from accessmeter.auth.principal import Principal  # noqa: E402
from accessmeter.auth.resolver import RoleCapabilityResolver  # noqa: E402
from accessmeter.billing.plans import PlanPolicyEngine  # noqa: E402
from accessmeter.db import create_all_tables_async  # noqa: E402
from accessmeter.quota.ledger import QuotaLedger  # noqa: E402
from accessmeter.quota.stores import InMemoryUsageStore  # noqa: E402
from accessmeter.settings import Settings  # noqa: E402
from accessmeter.tenant.models import Account, Organization  # noqa: E402
from accessmeter.tenant.repository import InMemoryTenantRepository  # noqa: E402

START = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime) -> None:
        self.start = now
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        quota=Settings.QuotaSettings(
            retry_attempts=3,
            retry_min_wait=0.0,
            retry_max_wait=0.0,
            storage_timeout_seconds=5.0,
        ),
    )


@pytest.fixture
def plans() -> PlanPolicyEngine:
    return PlanPolicyEngine()


@pytest.fixture
def resolver() -> RoleCapabilityResolver:
    return RoleCapabilityResolver()


@pytest.fixture
def tenants() -> InMemoryTenantRepository:
    return InMemoryTenantRepository()


@pytest.fixture
def usage_store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def ledger(usage_store, plans, tenants, clock, test_settings) -> QuotaLedger:
    return QuotaLedger(usage_store, plans, tenants, clock=clock, settings=test_settings)


@pytest.fixture
def gate(resolver, ledger, tenants, plans, clock, test_settings) -> AccessGate:
    return AccessGate(resolver, ledger, tenants, plans=plans, clock=clock, settings=test_settings)


@pytest.fixture
def make_account(tenants):
    """Store an account and return the matching verified principal."""

    async def _make(
        principal_id: str,
        plan_id: str = "starter",
        role: str | None = "analyst",
        organization_id: str | None = None,
        repository=None,
    ) -> Principal:
        repo = repository or tenants
        await repo.save_account(
            Account(
                principal_id=principal_id,
                plan_id=plan_id,
                role=role,
                email=f"{principal_id}@example.com",
                organization_id=organization_id,
            )
        )
        return Principal(
            id=principal_id,
            role=role,
            plan_id=plan_id,
            organization_id=organization_id,
            email=f"{principal_id}@example.com",
        )

    return _make


@pytest.fixture
def make_organization(tenants):
    async def _make(org_id: str = "org-1", plan_id: str = "enterprise", repository=None):
        repo = repository or tenants
        return await repo.save_organization(Organization(id=org_id, name=org_id, plan_id=plan_id))

    return _make


# ==================== SQL & Redis backends ====================


@pytest.fixture
async def sql_engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'accessmeter.sqlite'}",
        connect_args={"timeout": 30},
    )
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(sql_engine):
    return async_sessionmaker(bind=sql_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.aclose()
