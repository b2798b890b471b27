"""
SQLAlchemy usage store.

The ceiling check and the increment are one conditional UPDATE, so the
database serializes concurrent consumers across every service instance.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessmeter.db import get_async_session_maker
from accessmeter.exceptions import StorageUnavailableError
from accessmeter.logging import get_logger
from accessmeter.quota.models import CounterState, UsageCounterRecord
from accessmeter.quota.periods import as_utc

logger = get_logger(__name__)

_COLUMNS = (
    UsageCounterRecord.principal_id,
    UsageCounterRecord.used,
    UsageCounterRecord.period_start,
)


def _state(row: tuple[str, int, datetime]) -> CounterState:
    principal_id, used, period_start = row
    return CounterState(principal_id, used, as_utc(period_start))


class SQLAlchemyUsageStore:
    """Usage counters in the ``usage_counters`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or get_async_session_maker()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("quota.store.sql_error", operation=operation, error=str(exc))
            raise StorageUnavailableError(operation=operation) from exc

    async def read(self, principal_id: str) -> CounterState | None:
        async with self._transaction("read") as session:
            result = await session.execute(
                select(*_COLUMNS).where(UsageCounterRecord.principal_id == principal_id)
            )
            row = result.one_or_none()
        return _state(row) if row is not None else None

    async def create(self, principal_id: str, period_start: datetime) -> CounterState:
        try:
            async with self._transaction("create") as session:
                session.add(
                    UsageCounterRecord(principal_id=principal_id, used=0, period_start=period_start)
                )
        except IntegrityError:
            # Another instance created it first
            logger.debug("quota.store.create_race", principal_id=principal_id)

        state = await self.read(principal_id)
        if state is None:
            raise StorageUnavailableError("Counter missing after insert", operation="create")
        return state

    async def advance_period(
        self, principal_id: str, expected_start: datetime, new_start: datetime
    ) -> bool:
        stmt = (
            update(UsageCounterRecord)
            .where(
                UsageCounterRecord.principal_id == principal_id,
                UsageCounterRecord.period_start == expected_start,
            )
            .values(used=0, period_start=new_start)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("advance_period") as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def increment_if_below(
        self,
        principal_id: str,
        period_start: datetime,
        amount: int,
        ceiling: int | None,
    ) -> CounterState | None:
        stmt = update(UsageCounterRecord).where(
            UsageCounterRecord.principal_id == principal_id,
            UsageCounterRecord.period_start == period_start,
        )
        if ceiling is not None:
            stmt = stmt.where(UsageCounterRecord.used + amount <= ceiling)
        stmt = stmt.values(used=UsageCounterRecord.used + amount).execution_options(
            synchronize_session=False
        )

        async with self._transaction("increment_if_below") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            # Still inside the writing transaction, so this reads our own update
            row = (
                await session.execute(
                    select(*_COLUMNS).where(UsageCounterRecord.principal_id == principal_id)
                )
            ).one()
        return _state(row)

    async def set_used(self, principal_id: str, used: int) -> CounterState | None:
        stmt = (
            update(UsageCounterRecord)
            .where(UsageCounterRecord.principal_id == principal_id)
            .values(used=used)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("set_used") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = (
                await session.execute(
                    select(*_COLUMNS).where(UsageCounterRecord.principal_id == principal_id)
                )
            ).one()
        return _state(row)

    async def list_counters(self) -> list[CounterState]:
        async with self._transaction("list_counters") as session:
            result = await session.execute(select(*_COLUMNS))
            rows = result.all()
        return [_state(row) for row in rows]


__all__ = ["SQLAlchemyUsageStore"]
