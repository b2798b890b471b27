"""
Subscription plans and billing-driven plan changes.
"""

from .plans import (
    DEFAULT_PLAN_CATALOG,
    UNLIMITED,
    Plan,
    PlanFeature,
    PlanFeatures,
    PlanPolicy,
    PlanPolicyEngine,
    QuotaLimit,
    UpgradeRecommendation,
    is_unlimited,
)

__all__ = [
    "DEFAULT_PLAN_CATALOG",
    "UNLIMITED",
    "Plan",
    "PlanFeature",
    "PlanFeatures",
    "PlanPolicy",
    "PlanPolicyEngine",
    "QuotaLimit",
    "UpgradeRecommendation",
    "is_unlimited",
]
