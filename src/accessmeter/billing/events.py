"""
Billing-driven plan changes.

Events arrive from the billing provider (transport and signature checks live
outside this package). Application is idempotent by ``event_id``: a replayed
event changes nothing.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from accessmeter.billing.plans import Plan, PlanPolicyEngine
from accessmeter.logging import get_logger, log_audit_event
from accessmeter.quota.periods import Clock, as_utc, utc_now
from accessmeter.tenant.repository import TenantRepository

logger = get_logger(__name__)


class BillingEventType(str, Enum):
    """Subscription events that change a plan."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


class PlanChangeEvent(BaseModel):
    """Plan change for exactly one principal or organization."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1, description="Provider event id; the idempotency key")
    event_type: BillingEventType
    principal_id: str | None = None
    organization_id: str | None = None
    new_plan_id: str | None = Field(None, description="Ignored for cancellations")

    @model_validator(mode="after")
    def check_target(self) -> "PlanChangeEvent":
        if (self.principal_id is None) == (self.organization_id is None):
            raise ValueError("exactly one of principal_id or organization_id is required")
        if self.event_type != BillingEventType.SUBSCRIPTION_CANCELLED and not self.new_plan_id:
            raise ValueError("new_plan_id is required unless the subscription is cancelled")
        return self

    @property
    def target_plan_id(self) -> str:
        if self.event_type == BillingEventType.SUBSCRIPTION_CANCELLED:
            return Plan.STARTER.value
        assert self.new_plan_id is not None
        return self.new_plan_id


class BillingEventProcessor:
    """Applies plan-change events exactly once."""

    def __init__(
        self,
        plans: PlanPolicyEngine,
        tenants: TenantRepository,
        clock: Clock = utc_now,
    ) -> None:
        self.plans = plans
        self.tenants = tenants
        self._clock = clock

    async def apply(self, event: PlanChangeEvent) -> bool:
        """Apply ``event``. Returns False when the event id was already processed.

        Raises InvalidPlanError for an unknown plan, before anything is recorded.
        """
        plan = self.plans.resolve(event.target_plan_id)
        applied = await self.tenants.apply_plan_change(
            event_id=event.event_id,
            event_type=event.event_type.value,
            new_plan_id=plan.plan.value,
            now=as_utc(self._clock()),
            principal_id=event.principal_id,
            organization_id=event.organization_id,
        )
        if not applied:
            return False

        log_audit_event(
            "billing.plan_changed",
            "billing",
            actor_id=event.principal_id,
            organization_id=event.organization_id,
            resource_type="organization" if event.organization_id else "account",
            resource_id=event.organization_id or event.principal_id,
            event_id=event.event_id,
            event_type=event.event_type.value,
            plan_id=plan.plan.value,
        )
        return True


__all__ = ["BillingEventType", "PlanChangeEvent", "BillingEventProcessor"]
