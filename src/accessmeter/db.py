"""
Async SQLAlchemy persistence for usage counters and tenant state.

The engine and session factory are built on first use from
``settings.database``; importing the model modules never connects.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from accessmeter.logging import get_logger
from accessmeter.settings import Settings, get_settings

logger = get_logger(__name__)

_DRIVER_PREFIXES = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

DEV_SQLITE_URL = "sqlite+aiosqlite:///./accessmeter_dev.sqlite"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base for the counter and tenant tables."""


class TimestampMixin:
    """Row bookkeeping columns; business timestamps are stored separately."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


def database_url(settings: Settings | None = None) -> str:
    """
    Async driver URL for the configured database.

    A development environment without a configured database password falls
    back to a local SQLite file. Plain ``postgresql://`` and ``sqlite://``
    URLs are rewritten to their async drivers.
    """
    settings = settings or get_settings()
    config = settings.database
    if config.url:
        url = str(config.url)
    elif settings.is_development and not config.password:
        url = DEV_SQLITE_URL
    else:
        url = config.sqlalchemy_url

    for prefix, async_prefix in _DRIVER_PREFIXES.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix) :]
    return url


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    config = (settings or get_settings()).database
    url = database_url(settings)
    if url.startswith("sqlite"):
        # SQLite has no server-side pool to size
        return create_async_engine(url, echo=config.echo)
    return create_async_engine(
        url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=config.pool_pre_ping,
    )


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory over the configured engine."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            bind=get_async_engine(), expire_on_commit=False, autoflush=False
        )
    return _session_maker


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create the counter and tenant tables if they do not exist."""
    from accessmeter.quota import models as _quota_models  # noqa: F401
    from accessmeter.tenant import models as _tenant_models  # noqa: F401

    async with (engine or get_async_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    try:
        async with (session_maker or get_async_session_maker())() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("database.health_check_failed", error=str(exc))
        return False
    return True


__all__ = [
    "Base",
    "TimestampMixin",
    "build_engine",
    "check_database_health",
    "create_all_tables_async",
    "database_url",
    "get_async_engine",
    "get_async_session_maker",
]
