"""
Quota ledger.

Tracks per-principal usage for the current billing period and consumes quota
atomically. The ceiling check lives in the store's ``increment_if_below``
primitive, so correctness holds across processes sharing one store. Periods
roll over lazily the first time an operation observes that a month elapsed.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from accessmeter.billing.plans import UNLIMITED, PlanPolicyEngine, is_unlimited
from accessmeter.decisions import Consumed, QuotaExceeded
from accessmeter.exceptions import (
    InvalidPlanError,
    PrincipalNotFoundError,
    StorageUnavailableError,
)
from accessmeter.logging import get_logger, log_audit_event
from accessmeter.quota.models import CounterState, UsageSnapshot
from accessmeter.quota.periods import (
    Clock,
    as_utc,
    current_period_start,
    next_reset,
    period_elapsed,
    utc_now,
)
from accessmeter.quota.stores import UsageStore
from accessmeter.settings import Settings, get_settings

logger = get_logger(__name__)

T = TypeVar("T")

# Attempts to land an increment while other callers keep rolling the period
_MAX_PERIOD_RACES = 5


class PlanDirectory(Protocol):
    """Source of each principal's effective plan (own or inherited)."""

    async def effective_plan_id(self, principal_id: str) -> str:
        ...

    async def plan_assignments(self) -> dict[str, str]:
        """Effective plan of every known principal."""
        ...


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "quota.storage.retrying",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


class QuotaLedger:
    """Per-principal, per-period usage counters with atomic consumption."""

    def __init__(
        self,
        store: UsageStore,
        plans: PlanPolicyEngine,
        directory: PlanDirectory,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.plans = plans
        self.directory = directory
        self._clock = clock
        self._settings = settings or get_settings()

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _call(
        self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        """Run one store call under a timeout, retrying transient failures."""
        quota = self._settings.quota
        retrying = AsyncRetrying(
            stop=stop_after_attempt(quota.retry_attempts),
            wait=wait_exponential(
                multiplier=quota.retry_min_wait,
                min=quota.retry_min_wait,
                max=quota.retry_max_wait,
            ),
            retry=retry_if_exception_type(StorageUnavailableError),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        return await asyncio.wait_for(
                            fn(*args), timeout=quota.storage_timeout_seconds
                        )
                    except TimeoutError:
                        raise StorageUnavailableError(
                            "Storage call timed out", operation=operation
                        ) from None
        except StorageUnavailableError:
            logger.error("quota.storage.unavailable", operation=operation)
            raise
        raise StorageUnavailableError(operation=operation)  # pragma: no cover

    async def effective_plan_id(
        self, principal_id: str, fallback_plan_id: str | None = None
    ) -> str:
        """Plan the principal is metered on.

        A stored account wins, so organization members get the organization's
        plan. ``fallback_plan_id`` (the plan the identity layer vouched for)
        covers principals that have no stored account yet.
        """
        try:
            return await self._call(
                "effective_plan_id", self.directory.effective_plan_id, principal_id
            )
        except PrincipalNotFoundError:
            if fallback_plan_id is None:
                raise
            logger.debug(
                "quota.plan.identity_fallback", principal_id=principal_id, plan_id=fallback_plan_id
            )
            return fallback_plan_id

    async def _limit_for(
        self, principal_id: str, fallback_plan_id: str | None = None
    ) -> tuple[str, Any]:
        plan_id = await self.effective_plan_id(principal_id, fallback_plan_id)
        return plan_id, self.plans.quota_limit(plan_id)

    async def _current(self, principal_id: str, now: datetime) -> CounterState:
        """Return the counter for the period containing ``now``, creating or rolling it."""
        state = await self._call("read", self.store.read, principal_id)
        if state is None:
            state = await self._call("create", self.store.create, principal_id, now)

        while period_elapsed(now, state.period_start):
            new_start = current_period_start(now, state.period_start)
            advanced = await self._call(
                "advance_period",
                self.store.advance_period,
                principal_id,
                state.period_start,
                new_start,
            )
            if advanced:
                logger.info(
                    "quota.period.rolled_over",
                    principal_id=principal_id,
                    previous_used=state.used,
                    period_start=new_start.isoformat(),
                )
                return CounterState(principal_id, 0, new_start)
            # Someone else rolled it; re-read and re-check
            fresh = await self._call("read", self.store.read, principal_id)
            if fresh is None:
                raise StorageUnavailableError("Counter disappeared", operation="advance_period")
            state = fresh
        return state

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_usage(self, principal_id: str) -> UsageSnapshot:
        """Current-period usage, applying a due rollover first."""
        plan_id, limit = await self._limit_for(principal_id)
        state = await self._current(principal_id, self.now())
        return UsageSnapshot(
            principal_id=principal_id,
            plan_id=plan_id,
            used=state.used,
            limit=limit,
            period_start=state.period_start,
            reset_at=next_reset(state.period_start),
        )

    async def reset_if_expired(self, principal_id: str) -> bool:
        """Roll the counter over if its period elapsed. True if this call rolled it."""
        now = self.now()
        state = await self._call("read", self.store.read, principal_id)
        if state is None or not period_elapsed(now, state.period_start):
            return False
        return await self._call(
            "advance_period",
            self.store.advance_period,
            principal_id,
            state.period_start,
            current_period_start(now, state.period_start),
        )

    async def try_consume(
        self, principal_id: str, amount: int = 1, fallback_plan_id: str | None = None
    ) -> Consumed | QuotaExceeded:
        """Consume ``amount`` units if the plan's limit allows it.

        Unlimited plans always succeed; their counter still increments so
        usage stays observable. Raises StorageUnavailableError once retries
        are exhausted; never reports success without a committed increment.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer, got {amount!r}")

        plan_id, limit = await self._limit_for(principal_id, fallback_plan_id)
        unlimited = is_unlimited(limit)
        ceiling = None if unlimited else limit
        now = self.now()

        for _ in range(_MAX_PERIOD_RACES):
            state = await self._current(principal_id, now)
            updated = await self._call(
                "increment_if_below",
                self.store.increment_if_below,
                principal_id,
                state.period_start,
                amount,
                ceiling,
            )
            if updated is not None:
                return Consumed(
                    used=updated.used,
                    limit=limit,
                    remaining=UNLIMITED if unlimited else max(limit - updated.used, 0),
                    reset_at=next_reset(updated.period_start),
                )

            # Refused: either the ceiling was hit or the period moved underneath us
            fresh = await self._call("read", self.store.read, principal_id)
            if (
                ceiling is not None
                and fresh is not None
                and fresh.period_start == state.period_start
                and not period_elapsed(now, fresh.period_start)
            ):
                reset_at = next_reset(state.period_start)
                logger.info(
                    "quota.exceeded",
                    principal_id=principal_id,
                    plan_id=plan_id,
                    used=fresh.used,
                    limit=limit,
                    requested=amount,
                    reset_at=reset_at.isoformat(),
                )
                return QuotaExceeded(limit=limit, reset_at=reset_at)

        logger.error("quota.consume.contended", principal_id=principal_id)
        raise StorageUnavailableError(
            "Counter period changed repeatedly during consume", operation="try_consume"
        )

    async def snapshots(self) -> list[UsageSnapshot]:
        """Usage of every known principal, without writing rollovers.

        A counter whose period elapsed reads as zero usage in the current
        period; principals never metered read as zero from ``now``.
        """
        now = self.now()
        assignments = await self._call("plan_assignments", self.directory.plan_assignments)
        counters = {
            state.principal_id: state
            for state in await self._call("list_counters", self.store.list_counters)
        }

        snapshots: list[UsageSnapshot] = []
        for principal_id, plan_id in sorted(assignments.items()):
            try:
                limit = self.plans.quota_limit(plan_id)
            except InvalidPlanError:
                # Already logged by the plan engine; keep the rest of the rollup
                continue

            state = counters.get(principal_id)
            if state is None:
                used, period_start = 0, now
            elif period_elapsed(now, state.period_start):
                used, period_start = 0, current_period_start(now, state.period_start)
            else:
                used, period_start = state.used, state.period_start

            snapshots.append(
                UsageSnapshot(
                    principal_id=principal_id,
                    plan_id=plan_id,
                    used=used,
                    limit=limit,
                    period_start=period_start,
                    reset_at=next_reset(period_start),
                )
            )
        return snapshots

    async def adjust(
        self, principal_id: str, used: int, actor_id: str | None = None
    ) -> UsageSnapshot:
        """Administrative correction of the current period's usage."""
        if isinstance(used, bool) or not isinstance(used, int) or used < 0:
            raise ValueError(f"used must be a non-negative integer, got {used!r}")

        plan_id, limit = await self._limit_for(principal_id)
        before = await self._current(principal_id, self.now())
        state = await self._call("set_used", self.store.set_used, principal_id, used)
        if state is None:
            raise StorageUnavailableError("Counter missing during adjust", operation="set_used")

        log_audit_event(
            "quota.adjusted",
            "quota",
            actor_id=actor_id,
            resource_type="usage_counter",
            resource_id=principal_id,
            previous_used=before.used,
            used=used,
        )
        return UsageSnapshot(
            principal_id=principal_id,
            plan_id=plan_id,
            used=state.used,
            limit=limit,
            period_start=state.period_start,
            reset_at=next_reset(state.period_start),
        )


__all__ = ["PlanDirectory", "QuotaLedger"]
