"""Tests for database URL resolution and the health check."""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from accessmeter.db import DEV_SQLITE_URL, check_database_health, database_url
from accessmeter.settings import Settings


@pytest.mark.unit
class TestDatabaseUrl:
    def test_plain_driver_urls_get_async_drivers(self):
        pg = Settings(database=Settings.DatabaseSettings(url="postgresql://u:p@db/app"))
        lite = Settings(database=Settings.DatabaseSettings(url="sqlite:///./x.sqlite"))
        assert database_url(pg) == "postgresql+asyncpg://u:p@db/app"
        assert database_url(lite) == "sqlite+aiosqlite:///./x.sqlite"

    def test_development_without_password_uses_local_sqlite(self):
        settings = Settings(environment="development")
        assert database_url(settings) == DEV_SQLITE_URL

    def test_production_builds_postgres_url(self):
        settings = Settings(
            environment="PRODUCTION",
            database=Settings.DatabaseSettings(host="db", password="secret"),
        )
        assert database_url(settings) == (
            "postgresql+asyncpg://accessmeter:secret@db:5432/accessmeter"
        )


@pytest.mark.integration
async def test_health_check_reports_reachable_database(session_maker):
    assert await check_database_health(session_maker) is True


@pytest.mark.integration
async def test_health_check_reports_unreachable_database(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    try:
        assert await check_database_health(async_sessionmaker(bind=engine)) is False
    finally:
        await engine.dispose()
