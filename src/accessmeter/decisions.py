"""
Authorization decisions returned to callers.

A decision always carries enough structured detail for the caller to render a
response: the missing permission, the quota limit and reset time, or a retry
hint. Non-allow decisions convert to the matching exception.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar

from accessmeter.billing.plans import QuotaLimit, is_unlimited
from accessmeter.exceptions import (
    AccessError,
    AuthenticationRequiredError,
    FeatureUnavailableError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageUnavailableError,
)


def _limit_value(limit: QuotaLimit) -> int | None:
    return None if is_unlimited(limit) else limit  # type: ignore[return-value]


@dataclass(frozen=True)
class Consumed:
    """A metered unit was consumed."""

    used: int
    limit: QuotaLimit
    remaining: QuotaLimit
    reset_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": _limit_value(self.limit),
            "remaining": _limit_value(self.remaining),
            "unlimited": is_unlimited(self.limit),
            "reset_at": self.reset_at.isoformat(),
        }


class Decision:
    """Base class of every authorization outcome."""

    kind: ClassVar[str]
    allowed: ClassVar[bool] = False
    status_code: ClassVar[int]

    def to_dict(self) -> dict[str, Any]:
        return {"decision": self.kind, "allowed": self.allowed}

    def to_exception(self) -> AccessError | None:
        return None


@dataclass(frozen=True)
class Allow(Decision):
    """Request may proceed. ``usage`` is set for metered requests."""

    kind: ClassVar[str] = "allow"
    allowed: ClassVar[bool] = True
    status_code: ClassVar[int] = 200

    usage: Consumed | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass(frozen=True)
class AuthenticationRequired(Decision):
    kind: ClassVar[str] = "authentication_required"
    status_code: ClassVar[int] = 401

    reason: str = "missing_principal"

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}

    def to_exception(self) -> AccessError:
        return AuthenticationRequiredError(reason=self.reason)


@dataclass(frozen=True)
class PermissionDenied(Decision):
    kind: ClassVar[str] = "permission_denied"
    status_code: ClassVar[int] = 403

    permission: str
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "permission": self.permission}

    def to_exception(self) -> AccessError:
        return PermissionDeniedError(self.permission, self.role)


@dataclass(frozen=True)
class FeatureUnavailable(Decision):
    kind: ClassVar[str] = "feature_unavailable"
    status_code: ClassVar[int] = 403

    feature: str
    plan_id: str

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "feature": self.feature, "plan_id": self.plan_id}

    def to_exception(self) -> AccessError:
        return FeatureUnavailableError(self.feature, self.plan_id)


@dataclass(frozen=True)
class QuotaExceeded(Decision):
    """Permission is granted but the period's quota is spent."""

    kind: ClassVar[str] = "quota_exceeded"
    status_code: ClassVar[int] = 429

    limit: int
    reset_at: datetime

    def retry_after(self, now: datetime) -> int:
        return max(int((self.reset_at - now).total_seconds()), 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
        }

    def to_exception(self) -> AccessError:
        return QuotaExceededError(self.limit, self.reset_at)


@dataclass(frozen=True)
class StorageUnavailable(Decision):
    """Transient failure; the caller may retry."""

    kind: ClassVar[str] = "storage_unavailable"
    status_code: ClassVar[int] = 503

    retry_after_seconds: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "retry_after_seconds": self.retry_after_seconds}

    def to_exception(self) -> AccessError:
        return StorageUnavailableError(operation="authorize")


__all__ = [
    "Consumed",
    "Decision",
    "Allow",
    "AuthenticationRequired",
    "PermissionDenied",
    "FeatureUnavailable",
    "QuotaExceeded",
    "StorageUnavailable",
]
