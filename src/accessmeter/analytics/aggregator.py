"""
Quota analytics for admin dashboards.

Read-only rollups over ledger snapshots. Principals on unlimited plans are
counted but never enter utilization averages.
"""

from collections import defaultdict
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from accessmeter.billing.plans import Plan
from accessmeter.logging import get_logger
from accessmeter.quota.ledger import QuotaLedger
from accessmeter.quota.models import UsageSnapshot
from accessmeter.settings import Settings, get_settings

logger = get_logger(__name__)


class PlanUsageStats(BaseModel):
    """Usage rollup for one plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    total_users: int = Field(description="Principals on the plan")
    metered_users: int = Field(description="Principals with a finite limit")
    total_used: int = Field(description="Units consumed this period")
    average_utilization: float | None = Field(
        None, description="Mean used/limit over metered users; None for unlimited plans"
    )
    users_near_limit: int = 0


class NearLimitUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal_id: str
    plan_id: str
    used: int
    limit: int
    utilization: float


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    priority: str
    message: str
    action: str
    plan_id: str | None = None


class QuotaSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_users: int
    total_used: int
    average_utilization: float | None
    users_near_limit: int


class QuotaBreakdown(BaseModel):
    """Complete quota analytics response."""

    model_config = ConfigDict(frozen=True)

    summary: QuotaSummary
    per_plan: list[PlanUsageStats]
    users_near_limit: list[NearLimitUser]
    recommendations: list[Recommendation]
    generated_at: datetime


def generate_recommendations(
    per_plan: list[PlanUsageStats],
    users_near_limit: int,
    settings: Settings | None = None,
) -> list[Recommendation]:
    """Derive dashboard recommendations from aggregated statistics."""
    thresholds = (settings or get_settings()).analytics
    recommendations: list[Recommendation] = []

    for stats in per_plan:
        average = stats.average_utilization
        if average is not None and average > thresholds.high_utilization_threshold:
            recommendations.append(
                Recommendation(
                    type="quota_management",
                    priority="high",
                    message=(
                        f"Plan {stats.plan_id} has {round(average * 100)}% quota utilization. "
                        "Consider monitoring for upgrade opportunities."
                    ),
                    action="Monitor users approaching limits and suggest plan upgrades",
                    plan_id=stats.plan_id,
                )
            )

    if users_near_limit > thresholds.engagement_min_users:
        recommendations.append(
            Recommendation(
                type="user_engagement",
                priority="medium",
                message=(
                    f"{users_near_limit} users are approaching their quota limits. "
                    "Consider proactive upgrade campaigns."
                ),
                action=(
                    f"Send upgrade notifications to users at "
                    f"{round(thresholds.near_limit_threshold * 100)}%+ utilization"
                ),
            )
        )

    starter = next((s for s in per_plan if s.plan_id == Plan.STARTER.value), None)
    if (
        starter is not None
        and starter.average_utilization is not None
        and starter.average_utilization > thresholds.conversion_threshold
    ):
        recommendations.append(
            Recommendation(
                type="conversion_opportunity",
                priority="medium",
                message=(
                    f"Starter plan users have {round(starter.average_utilization * 100)}% "
                    "utilization. High conversion potential."
                ),
                action="Create targeted upgrade campaigns for active starter users",
                plan_id=starter.plan_id,
            )
        )

    return recommendations


class AdminAnalyticsAggregator:
    """Builds quota breakdowns from the ledger's read-only snapshots."""

    def __init__(self, ledger: QuotaLedger, settings: Settings | None = None):
        self.ledger = ledger
        self.settings = settings or get_settings()

    def _near_limit(self, snapshot: UsageSnapshot) -> bool:
        utilization = snapshot.utilization
        return (
            utilization is not None
            and utilization >= self.settings.analytics.near_limit_threshold
        )

    def aggregate(self, snapshots: list[UsageSnapshot], generated_at: datetime) -> QuotaBreakdown:
        """Pure rollup of ``snapshots``."""
        by_plan: dict[str, list[UsageSnapshot]] = defaultdict(list)
        for snapshot in snapshots:
            by_plan[snapshot.plan_id].append(snapshot)

        per_plan: list[PlanUsageStats] = []
        for plan_id in sorted(by_plan):
            group = by_plan[plan_id]
            rates = [s.utilization for s in group if s.utilization is not None]
            per_plan.append(
                PlanUsageStats(
                    plan_id=plan_id,
                    total_users=len(group),
                    metered_users=len(rates),
                    total_used=sum(s.used for s in group),
                    average_utilization=sum(rates) / len(rates) if rates else None,
                    users_near_limit=sum(1 for s in group if self._near_limit(s)),
                )
            )

        near = sorted(
            (s for s in snapshots if self._near_limit(s)),
            key=lambda s: (-(s.utilization or 0.0), s.principal_id),
        )
        near_users = [
            NearLimitUser(
                principal_id=s.principal_id,
                plan_id=s.plan_id,
                used=s.used,
                limit=s.limit,  # type: ignore[arg-type]
                utilization=s.utilization or 0.0,
            )
            for s in near[: self.settings.analytics.max_users_near_limit]
        ]

        all_rates = [s.utilization for s in snapshots if s.utilization is not None]
        summary = QuotaSummary(
            total_users=len(snapshots),
            total_used=sum(s.used for s in snapshots),
            average_utilization=sum(all_rates) / len(all_rates) if all_rates else None,
            users_near_limit=len(near),
        )
        return QuotaBreakdown(
            summary=summary,
            per_plan=per_plan,
            users_near_limit=near_users,
            recommendations=generate_recommendations(per_plan, len(near), self.settings),
            generated_at=generated_at,
        )

    async def quota_breakdown(self) -> QuotaBreakdown:
        """Current-period quota analytics across all principals."""
        snapshots = await self.ledger.snapshots()
        breakdown = self.aggregate(snapshots, self.ledger.now())
        logger.info(
            "analytics.quota_breakdown.generated",
            total_users=breakdown.summary.total_users,
            users_near_limit=breakdown.summary.users_near_limit,
            recommendations=len(breakdown.recommendations),
        )
        return breakdown


__all__ = [
    "AdminAnalyticsAggregator",
    "NearLimitUser",
    "PlanUsageStats",
    "QuotaBreakdown",
    "QuotaSummary",
    "Recommendation",
    "generate_recommendations",
]
