"""
Tenant models: organizations, accounts, invitations and processed billing events.

ORM tables back the SQL repository; the frozen dataclasses are the values
every repository hands out.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from accessmeter.db import Base, TimestampMixin

# ==========================================
# Tables
# ==========================================


class OrganizationRecord(Base, TimestampMixin):
    """Organization sharing one plan across its members."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)


class AccountRecord(Base, TimestampMixin):
    """Stored role and plan state of a principal."""

    __tablename__ = "accounts"

    principal_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("organizations.id"), nullable=True, index=True
    )
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InvitationRecord(Base, TimestampMixin):
    """Single-use organization invitation."""

    __tablename__ = "invitations"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    invited_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_invitations_org_email", "organization_id", "email"),)


class ProcessedBillingEventRecord(Base):
    """Billing events already applied, keyed by the provider's event id."""

    __tablename__ = "processed_billing_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    new_plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ==========================================
# Values
# ==========================================


class InvitationState(str, Enum):
    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Organization:
    id: str
    name: str
    plan_id: str


@dataclass(frozen=True)
class Account:
    principal_id: str
    plan_id: str
    role: str | None = None
    email: str | None = None
    organization_id: str | None = None
    joined_at: datetime | None = None


@dataclass(frozen=True)
class Invitation:
    """Invitation value. Expiry is derived from ``expires_at``, never stored."""

    token: str
    organization_id: str
    email: str
    role: str
    expires_at: datetime
    invited_by: str | None = None
    consumed_at: datetime | None = None
    consumed_by: str | None = None
    version: int = 0

    def state(self, now: datetime) -> InvitationState:
        if self.consumed_at is not None:
            return InvitationState.CONSUMED
        if now >= self.expires_at:
            return InvitationState.EXPIRED
        return InvitationState.PENDING

    def to_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "email": self.email,
            "role": self.role,
            "invited_by": self.invited_by,
            "expires_at": self.expires_at.isoformat(),
            "state": self.state(now).value,
        }


@dataclass(frozen=True)
class OrgMembership:
    """Result of an accepted invitation."""

    principal_id: str
    organization_id: str
    role: str
    plan_id: str
    joined_at: datetime


__all__ = [
    "OrganizationRecord",
    "AccountRecord",
    "InvitationRecord",
    "ProcessedBillingEventRecord",
    "InvitationState",
    "Organization",
    "Account",
    "Invitation",
    "OrgMembership",
]
