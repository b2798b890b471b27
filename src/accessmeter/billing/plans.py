"""
Subscription plan catalog and policy lookups.

Plans define a monthly quota and a feature set. The catalog is immutable and
loaded once; lookups are pure.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Union

from accessmeter.exceptions import InvalidPlanError
from accessmeter.logging import get_logger

logger = get_logger(__name__)


class _Unlimited:
    """Marker for a quota that can never be reached.

    Supports no arithmetic or ordering, so it cannot leak into usage counts.
    """

    _instance: "_Unlimited | None" = None

    def __new__(cls) -> "_Unlimited":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __reduce__(self) -> str:
        return "UNLIMITED"


UNLIMITED = _Unlimited()

QuotaLimit = Union[int, _Unlimited]


def is_unlimited(limit: Any) -> bool:
    """True iff ``limit`` is the UNLIMITED marker."""
    return limit is UNLIMITED


class Plan(str, Enum):
    """Subscription tiers."""

    STARTER = "starter"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class PlanFeature(str, Enum):
    """Boolean features a plan may enable."""

    EXPORT_ENABLED = "export_enabled"
    HISTORY = "history"
    ADVANCED_ANALYTICS = "advanced_analytics"
    COLLABORATION = "collaboration"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"


@dataclass(frozen=True)
class PlanFeatures:
    """Feature flags of a plan. ``seats`` is set for organization plans."""

    export_enabled: bool = False
    history: bool = False
    advanced_analytics: bool = False
    collaboration: bool = False
    api_access: bool = False
    priority_support: bool = False
    seats: int | None = None

    def enabled(self) -> frozenset[PlanFeature]:
        """Return the set of enabled boolean features."""
        return frozenset(feature for feature in PlanFeature if getattr(self, feature.value))


@dataclass(frozen=True)
class PlanPolicy:
    """Resolved limits and features for one plan."""

    plan: Plan
    display_name: str
    quota_limit: QuotaLimit
    features: PlanFeatures

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.quota_limit)


@dataclass(frozen=True)
class UpgradeRecommendation:
    """Suggested plan change for a principal based on its usage."""

    current: Plan
    suggested: Plan
    reason: str


DEFAULT_PLAN_CATALOG: Mapping[Plan, PlanPolicy] = MappingProxyType(
    {
        Plan.STARTER: PlanPolicy(
            plan=Plan.STARTER,
            display_name="Starter",
            quota_limit=20,
            features=PlanFeatures(),
        ),
        Plan.STANDARD: PlanPolicy(
            plan=Plan.STANDARD,
            display_name="Standard",
            quota_limit=40,
            features=PlanFeatures(export_enabled=True, history=True),
        ),
        Plan.PREMIUM: PlanPolicy(
            plan=Plan.PREMIUM,
            display_name="Premium",
            quota_limit=UNLIMITED,
            features=PlanFeatures(
                export_enabled=True,
                history=True,
                advanced_analytics=True,
                api_access=True,
                priority_support=True,
            ),
        ),
        Plan.ENTERPRISE: PlanPolicy(
            plan=Plan.ENTERPRISE,
            display_name="Enterprise",
            quota_limit=UNLIMITED,
            features=PlanFeatures(
                export_enabled=True,
                history=True,
                advanced_analytics=True,
                collaboration=True,
                api_access=True,
                priority_support=True,
                seats=50,
            ),
        ),
    }
)


class PlanPolicyEngine:
    """Resolves plan identifiers to quota limits and feature flags."""

    def __init__(self, catalog: Mapping[Plan, PlanPolicy] | None = None) -> None:
        source = DEFAULT_PLAN_CATALOG if catalog is None else catalog
        for plan, policy in source.items():
            if not is_unlimited(policy.quota_limit) and policy.quota_limit < 0:
                raise ValueError(f"Plan {plan.value} has a negative quota limit")
        self._catalog: Mapping[Plan, PlanPolicy] = MappingProxyType(dict(source))

    def resolve(self, plan_id: Plan | str) -> PlanPolicy:
        """Resolve a plan identifier; unknown identifiers raise InvalidPlanError."""
        try:
            plan = Plan(plan_id)
        except ValueError:
            logger.error("plan.unknown", plan_id=str(plan_id))
            raise InvalidPlanError(plan_id) from None

        policy = self._catalog.get(plan)
        if policy is None:
            logger.error("plan.missing_from_catalog", plan_id=plan.value)
            raise InvalidPlanError(plan_id)
        return policy

    @staticmethod
    def is_unlimited(limit: Any) -> bool:
        return is_unlimited(limit)

    def quota_limit(self, plan_id: Plan | str) -> QuotaLimit:
        return self.resolve(plan_id).quota_limit

    def has_feature(self, plan_id: Plan | str, feature: PlanFeature | str) -> bool:
        """Check a boolean plan feature. Unknown feature names are never enabled."""
        policy = self.resolve(plan_id)
        try:
            flag = PlanFeature(feature)
        except ValueError:
            return False
        return flag in policy.features.enabled()

    def plans(self) -> list[Plan]:
        return list(self._catalog)

    def recommend_upgrade(self, plan_id: Plan | str, used: int) -> UpgradeRecommendation | None:
        """Suggest a plan upgrade from current-period usage."""
        policy = self.resolve(plan_id)
        if policy.unlimited:
            return None
        limit = policy.quota_limit

        if policy.plan == Plan.STARTER:
            if used >= limit * 0.8:
                return UpgradeRecommendation(Plan.STARTER, Plan.STANDARD, "quota_nearly_reached")
            if used >= 5:
                return UpgradeRecommendation(Plan.STARTER, Plan.STANDARD, "active_user")

        if policy.plan == Plan.STANDARD and used >= limit * 0.9:
            return UpgradeRecommendation(Plan.STANDARD, Plan.PREMIUM, "heavy_usage")

        return None


__all__ = [
    "UNLIMITED",
    "QuotaLimit",
    "is_unlimited",
    "Plan",
    "PlanFeature",
    "PlanFeatures",
    "PlanPolicy",
    "UpgradeRecommendation",
    "DEFAULT_PLAN_CATALOG",
    "PlanPolicyEngine",
]
