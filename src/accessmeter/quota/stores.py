"""
Usage counter storage.

A store exposes the atomic primitives the ledger builds on. Atomicity must
hold across processes for production stores (SQL conditional UPDATE, Redis
Lua scripts); the in-memory store is for single-process use and tests.
"""

import asyncio
from datetime import datetime
from typing import Protocol, runtime_checkable

from accessmeter.quota.models import CounterState


@runtime_checkable
class UsageStore(Protocol):
    """Atomic counter primitives keyed by principal."""

    async def read(self, principal_id: str) -> CounterState | None:
        """Read the counter, or None if it was never created."""
        ...

    async def create(self, principal_id: str, period_start: datetime) -> CounterState:
        """Insert a zeroed counter unless one exists; return the stored counter."""
        ...

    async def advance_period(
        self, principal_id: str, expected_start: datetime, new_start: datetime
    ) -> bool:
        """Reset ``used`` and move ``period_start`` iff it still equals ``expected_start``."""
        ...

    async def increment_if_below(
        self,
        principal_id: str,
        period_start: datetime,
        amount: int,
        ceiling: int | None,
    ) -> CounterState | None:
        """Add ``amount`` iff the period matches and ``used + amount <= ceiling``.

        A ``ceiling`` of None never refuses. Returns the updated counter, or
        None when nothing was written.
        """
        ...

    async def set_used(self, principal_id: str, used: int) -> CounterState | None:
        """Overwrite ``used`` (administrative correction)."""
        ...

    async def list_counters(self) -> list[CounterState]:
        ...


class InMemoryUsageStore:
    """Process-local store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._counters: dict[str, CounterState] = {}
        self._lock = asyncio.Lock()

    async def read(self, principal_id: str) -> CounterState | None:
        return self._counters.get(principal_id)

    async def create(self, principal_id: str, period_start: datetime) -> CounterState:
        async with self._lock:
            existing = self._counters.get(principal_id)
            if existing is not None:
                return existing
            state = CounterState(principal_id, 0, period_start)
            self._counters[principal_id] = state
            return state

    async def advance_period(
        self, principal_id: str, expected_start: datetime, new_start: datetime
    ) -> bool:
        async with self._lock:
            current = self._counters.get(principal_id)
            if current is None or current.period_start != expected_start:
                return False
            self._counters[principal_id] = CounterState(principal_id, 0, new_start)
            return True

    async def increment_if_below(
        self,
        principal_id: str,
        period_start: datetime,
        amount: int,
        ceiling: int | None,
    ) -> CounterState | None:
        async with self._lock:
            current = self._counters.get(principal_id)
            if current is None or current.period_start != period_start:
                return None
            used = current.used + amount
            if ceiling is not None and used > ceiling:
                return None
            state = CounterState(principal_id, used, current.period_start)
            self._counters[principal_id] = state
            return state

    async def set_used(self, principal_id: str, used: int) -> CounterState | None:
        async with self._lock:
            current = self._counters.get(principal_id)
            if current is None:
                return None
            state = CounterState(principal_id, used, current.period_start)
            self._counters[principal_id] = state
            return state

    async def list_counters(self) -> list[CounterState]:
        return list(self._counters.values())


__all__ = ["UsageStore", "InMemoryUsageStore"]
