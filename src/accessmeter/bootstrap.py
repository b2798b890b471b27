"""
Assembly of the access-control core from settings.
"""

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessmeter.access.gate import AccessGate
from accessmeter.analytics.aggregator import AdminAnalyticsAggregator
from accessmeter.auth.resolver import RoleCapabilityResolver
from accessmeter.billing.events import BillingEventProcessor
from accessmeter.billing.plans import PlanPolicyEngine
from accessmeter.db import get_async_session_maker
from accessmeter.logging import get_logger
from accessmeter.quota.ledger import QuotaLedger
from accessmeter.quota.periods import Clock, utc_now
from accessmeter.quota.redis_store import RedisUsageStore
from accessmeter.quota.sql_store import SQLAlchemyUsageStore
from accessmeter.quota.stores import InMemoryUsageStore, UsageStore
from accessmeter.redis_client import redis_manager
from accessmeter.settings import Settings, StoreBackend, get_settings
from accessmeter.tenant.repository import InMemoryTenantRepository, TenantRepository
from accessmeter.tenant.sql_repository import SQLAlchemyTenantRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessCore:
    """Wired components sharing one clock, plan catalog and settings."""

    gate: AccessGate
    ledger: QuotaLedger
    tenants: TenantRepository
    billing: BillingEventProcessor
    analytics: AdminAnalyticsAggregator


def build_tenant_repository(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> TenantRepository:
    backend = settings.tenant.backend
    if backend == StoreBackend.MEMORY:
        return InMemoryTenantRepository()
    if backend == StoreBackend.DATABASE:
        return SQLAlchemyTenantRepository(session_maker or get_async_session_maker())
    raise ValueError(f"Unsupported tenant backend: {backend.value}")


async def build_usage_store(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    redis: Redis | None = None,
) -> UsageStore:
    backend = settings.quota.backend
    if backend == StoreBackend.MEMORY:
        return InMemoryUsageStore()
    if backend == StoreBackend.DATABASE:
        return SQLAlchemyUsageStore(session_maker or get_async_session_maker())
    client = redis or await redis_manager.initialize(settings)
    return RedisUsageStore(client, key_prefix=settings.quota.key_prefix)


async def build_access_core(
    settings: Settings | None = None,
    *,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    redis: Redis | None = None,
    plans: PlanPolicyEngine | None = None,
    resolver: RoleCapabilityResolver | None = None,
    clock: Clock = utc_now,
) -> AccessCore:
    """Build every component with the backends selected in settings."""
    settings = settings or get_settings()
    plans = plans or PlanPolicyEngine()
    tenants = build_tenant_repository(settings, session_maker)
    store = await build_usage_store(settings, session_maker, redis)

    ledger = QuotaLedger(store, plans, tenants, clock=clock, settings=settings)
    gate = AccessGate(
        resolver or RoleCapabilityResolver(),
        ledger,
        tenants,
        plans=plans,
        clock=clock,
        settings=settings,
    )
    logger.info(
        "access.core.built",
        quota_backend=settings.quota.backend.value,
        tenant_backend=settings.tenant.backend.value,
    )
    return AccessCore(
        gate=gate,
        ledger=ledger,
        tenants=tenants,
        billing=BillingEventProcessor(plans, tenants, clock=clock),
        analytics=AdminAnalyticsAggregator(ledger, settings=settings),
    )


async def build_access_gate(settings: Settings | None = None, **kwargs) -> AccessGate:
    """Build the access gate alone; see build_access_core for the options."""
    core = await build_access_core(settings, **kwargs)
    return core.gate


__all__ = [
    "AccessCore",
    "build_access_core",
    "build_access_gate",
    "build_tenant_repository",
    "build_usage_store",
]
