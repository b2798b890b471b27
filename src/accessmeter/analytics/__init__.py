"""
Admin analytics over quota usage.
"""

from .aggregator import (
    AdminAnalyticsAggregator,
    NearLimitUser,
    PlanUsageStats,
    QuotaBreakdown,
    QuotaSummary,
    Recommendation,
    generate_recommendations,
)

__all__ = [
    "AdminAnalyticsAggregator",
    "NearLimitUser",
    "PlanUsageStats",
    "QuotaBreakdown",
    "QuotaSummary",
    "Recommendation",
    "generate_recommendations",
]
