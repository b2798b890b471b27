"""
Usage counter models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from accessmeter.billing.plans import QuotaLimit, is_unlimited
from accessmeter.db import Base, TimestampMixin


class UsageCounterRecord(Base, TimestampMixin):
    """Per-principal usage for the current billing period."""

    __tablename__ = "usage_counters"

    principal_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (CheckConstraint("used >= 0", name="ck_usage_counters_used_non_negative"),)


@dataclass(frozen=True)
class CounterState:
    """Stored counter value as read from a usage store."""

    principal_id: str
    used: int
    period_start: datetime


@dataclass(frozen=True)
class UsageSnapshot:
    """Counter joined with the limit of the principal's effective plan."""

    principal_id: str
    plan_id: str
    used: int
    limit: QuotaLimit
    period_start: datetime
    reset_at: datetime

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def remaining(self) -> QuotaLimit:
        if is_unlimited(self.limit):
            return self.limit
        return max(self.limit - self.used, 0)  # type: ignore[operator]

    @property
    def utilization(self) -> float | None:
        """Fraction of the limit used; None for unlimited plans."""
        if is_unlimited(self.limit):
            return None
        if self.limit == 0:
            return 1.0
        return self.used / self.limit  # type: ignore[operator]

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "plan_id": self.plan_id,
            "used": self.used,
            "limit": None if self.unlimited else self.limit,
            "remaining": None if self.unlimited else self.remaining,
            "unlimited": self.unlimited,
            "period_start": self.period_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
        }


__all__ = ["UsageCounterRecord", "CounterState", "UsageSnapshot"]
