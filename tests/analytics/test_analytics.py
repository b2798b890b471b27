"""Tests for the admin quota analytics."""

from datetime import timedelta

import pytest

from accessmeter.analytics.aggregator import (
    AdminAnalyticsAggregator,
    PlanUsageStats,
    generate_recommendations,
)
from accessmeter.billing.plans import UNLIMITED
from accessmeter.quota.models import UsageSnapshot

pytestmark = pytest.mark.unit


@pytest.fixture
def aggregator(ledger, test_settings) -> AdminAnalyticsAggregator:
    return AdminAnalyticsAggregator(ledger, settings=test_settings)


def snapshot(principal_id, plan_id, used, limit, clock) -> UsageSnapshot:
    start = clock.start
    return UsageSnapshot(
        principal_id=principal_id,
        plan_id=plan_id,
        used=used,
        limit=limit,
        period_start=start,
        reset_at=start + timedelta(days=31),
    )


def stats(plan_id: str, average: float | None) -> PlanUsageStats:
    return PlanUsageStats(
        plan_id=plan_id,
        total_users=1,
        metered_users=0 if average is None else 1,
        total_used=0,
        average_utilization=average,
    )


class TestAggregate:
    def test_unlimited_users_excluded_from_averages(self, aggregator, clock):
        breakdown = aggregator.aggregate(
            [
                snapshot("a", "starter", 10, 20, clock),
                snapshot("b", "starter", 20, 20, clock),
                snapshot("p", "premium", 5000, UNLIMITED, clock),
            ],
            clock(),
        )

        per_plan = {s.plan_id: s for s in breakdown.per_plan}
        assert per_plan["starter"].average_utilization == pytest.approx(0.75)
        assert per_plan["starter"].total_used == 30
        assert per_plan["premium"].average_utilization is None
        assert per_plan["premium"].metered_users == 0
        assert per_plan["premium"].total_used == 5000

        assert breakdown.summary.total_users == 3
        assert breakdown.summary.average_utilization == pytest.approx(0.75)
        assert breakdown.generated_at == clock()

    def test_near_limit_users_sorted_by_utilization(self, aggregator, clock):
        breakdown = aggregator.aggregate(
            [
                snapshot("a", "starter", 16, 20, clock),
                snapshot("b", "standard", 39, 40, clock),
                snapshot("c", "starter", 15, 20, clock),
                snapshot("p", "enterprise", 10_000, UNLIMITED, clock),
            ],
            clock(),
        )

        assert [u.principal_id for u in breakdown.users_near_limit] == ["b", "a"]
        assert breakdown.users_near_limit[0].utilization == pytest.approx(0.975)
        assert breakdown.summary.users_near_limit == 2

    def test_near_limit_list_is_capped(self, aggregator, clock, test_settings):
        test_settings.analytics.max_users_near_limit = 3
        snapshots = [snapshot(f"u{i}", "starter", 19, 20, clock) for i in range(12)]

        breakdown = aggregator.aggregate(snapshots, clock())

        assert len(breakdown.users_near_limit) == 3
        assert breakdown.summary.users_near_limit == 12
        types = {r.type for r in breakdown.recommendations}
        assert "user_engagement" in types

    def test_empty_input(self, aggregator, clock):
        breakdown = aggregator.aggregate([], clock())
        assert breakdown.summary.total_users == 0
        assert breakdown.summary.average_utilization is None
        assert breakdown.per_plan == []
        assert breakdown.recommendations == []

    def test_zero_limit_counts_as_full(self, aggregator, clock):
        breakdown = aggregator.aggregate([snapshot("z", "starter", 0, 0, clock)], clock())
        assert breakdown.per_plan[0].average_utilization == 1.0


class TestRecommendations:
    def test_high_utilization_plan(self, test_settings):
        [rec] = generate_recommendations([stats("standard", 0.95)], 0, test_settings)
        assert (rec.type, rec.priority, rec.plan_id) == ("quota_management", "high", "standard")
        assert "95%" in rec.message

    def test_starter_conversion_opportunity(self, test_settings):
        recs = generate_recommendations([stats("starter", 0.75)], 0, test_settings)
        assert [r.type for r in recs] == ["conversion_opportunity"]

    def test_engagement_needs_more_than_ten_near_limit(self, test_settings):
        assert generate_recommendations([], 10, test_settings) == []
        [rec] = generate_recommendations([], 11, test_settings)
        assert (rec.type, rec.priority) == ("user_engagement", "medium")

    def test_unlimited_plans_never_recommended(self, test_settings):
        assert generate_recommendations([stats("premium", None)], 0, test_settings) == []


class TestQuotaBreakdown:
    async def test_reads_ledger_without_writing(
        self, aggregator, ledger, make_account, usage_store
    ):
        await make_account("a", plan_id="starter")
        await make_account("b", plan_id="premium")
        await ledger.try_consume("a", 18)

        breakdown = await aggregator.quota_breakdown()

        assert breakdown.summary.total_users == 2
        assert breakdown.summary.total_used == 18
        assert [u.principal_id for u in breakdown.users_near_limit] == ["a"]
        assert await usage_store.read("b") is None

    async def test_model_serializes(self, aggregator, make_account):
        await make_account("a")
        data = (await aggregator.quota_breakdown()).model_dump(mode="json")
        assert data["summary"]["total_users"] == 1
        assert isinstance(data["generated_at"], str)
