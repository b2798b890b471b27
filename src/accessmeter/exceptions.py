"""
Access-control and metering exceptions.

Every error carries a machine-readable code, an HTTP status, structured context
and a recovery hint so callers can render an appropriate response.
"""

from datetime import datetime
from typing import Any


class AccessError(Exception):
    """
    Base error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "ACCESS_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


# ==================== Request decisions ====================


class AuthenticationRequiredError(AccessError):
    """No verified principal for the request."""

    def __init__(self, message: str = "Authentication required", reason: str | None = None):
        super().__init__(
            message,
            "AUTHENTICATION_REQUIRED",
            status_code=401,
            context={"reason": reason} if reason else {},
            recovery_hint="Sign in again or verify your email address",
        )


class PermissionDeniedError(AccessError):
    """The principal's role lacks a required permission."""

    def __init__(self, permission: str, role: str | None = None) -> None:
        context: dict[str, Any] = {"permission": permission}
        if role:
            context["role"] = role
        super().__init__(
            f"Missing permission: {permission}",
            "PERMISSION_DENIED",
            status_code=403,
            context=context,
            recovery_hint="Ask an organization administrator for a role that grants this permission",
        )
        self.permission = permission


class FeatureUnavailableError(AccessError):
    """The principal's plan does not include a feature."""

    def __init__(self, feature: str, plan_id: str) -> None:
        super().__init__(
            f"Feature '{feature}' is not available on plan '{plan_id}'",
            "FEATURE_UNAVAILABLE",
            status_code=403,
            context={"feature": feature, "plan_id": plan_id},
            recovery_hint="Upgrade to a plan that includes this feature",
        )
        self.feature = feature
        self.plan_id = plan_id


class QuotaExceededError(AccessError):
    """The plan's quota for the current period is exhausted."""

    def __init__(self, limit: int, reset_at: datetime) -> None:
        super().__init__(
            f"Monthly quota of {limit} reached",
            "QUOTA_EXCEEDED",
            status_code=429,
            context={"limit": limit, "reset_at": reset_at.isoformat()},
            recovery_hint="Wait for the quota to reset or upgrade the plan",
        )
        self.limit = limit
        self.reset_at = reset_at


class StorageUnavailableError(AccessError):
    """The persistence layer could not complete an atomic operation."""

    def __init__(self, message: str = "Storage unavailable", operation: str | None = None):
        super().__init__(
            message,
            "STORAGE_UNAVAILABLE",
            status_code=503,
            context={"operation": operation} if operation else {},
            recovery_hint="Retry the request shortly",
        )
        self.operation = operation


# ==================== Configuration errors ====================


class InvalidRoleError(AccessError):
    """A role value is not part of the role hierarchy."""

    def __init__(self, role: Any) -> None:
        super().__init__(
            f"Unknown role: {role!r}",
            "INVALID_ROLE",
            status_code=500,
            context={"role": str(role)},
            recovery_hint="Fix the stored role value; roles are viewer, analyst, manager, admin",
        )
        self.role = role


class InvalidPlanError(AccessError):
    """A plan identifier is not part of the plan catalog."""

    def __init__(self, plan_id: Any) -> None:
        super().__init__(
            f"Unknown plan: {plan_id!r}",
            "INVALID_PLAN",
            status_code=500,
            context={"plan_id": str(plan_id)},
            recovery_hint="Fix the stored plan identifier or the plan catalog",
        )
        self.plan_id = plan_id


# ==================== Tenant errors ====================


class PrincipalNotFoundError(AccessError):
    """No stored account for a principal."""

    def __init__(self, principal_id: str) -> None:
        super().__init__(
            f"No account for principal {principal_id}",
            "PRINCIPAL_NOT_FOUND",
            status_code=404,
            context={"principal_id": principal_id},
            recovery_hint="Provision the account before metering its usage",
        )


class OrganizationNotFoundError(AccessError):
    """Organization does not exist."""

    def __init__(self, organization_id: str | None) -> None:
        super().__init__(
            f"Organization not found: {organization_id}",
            "ORGANIZATION_NOT_FOUND",
            status_code=404,
            context={"organization_id": organization_id},
        )


class InvitationError(AccessError):
    """Invitation-related errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int,
        token: str | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            error_code,
            status_code=status_code,
            context={"token": token[:8]} if token else {},
            recovery_hint=recovery_hint,
        )


class InvitationNotFoundError(InvitationError):
    """Unknown invitation token."""

    def __init__(self, token: str | None = None) -> None:
        super().__init__(
            "Invitation not found",
            "INVITATION_NOT_FOUND",
            status_code=404,
            token=token,
            recovery_hint="Check the invitation link",
        )


class InvitationExpiredError(InvitationError):
    """Invitation expired before it was accepted."""

    def __init__(self, token: str | None = None, expires_at: datetime | None = None) -> None:
        super().__init__(
            "Invitation has expired",
            "INVITATION_EXPIRED",
            status_code=410,
            token=token,
            recovery_hint="Ask the organization for a new invitation",
        )
        if expires_at:
            self.context["expires_at"] = expires_at.isoformat()


class InvitationAlreadyConsumedError(InvitationError):
    """Invitation token was already used."""

    def __init__(self, token: str | None = None) -> None:
        super().__init__(
            "Invitation has already been used",
            "INVITATION_ALREADY_CONSUMED",
            status_code=409,
            token=token,
        )


class InvitationConflictError(InvitationError):
    """The email already has a pending invitation or is already a member."""

    def __init__(self, email: str, organization_id: str, already_member: bool = False) -> None:
        if already_member:
            message = "A member with this email already belongs to the organization"
            hint = None
        else:
            message = "An invitation is already pending for this email"
            hint = "Wait for the pending invitation to be accepted or to expire"
        super().__init__(message, "INVITATION_CONFLICT", status_code=409, recovery_hint=hint)
        self.context.update(
            {"email": email, "organization_id": organization_id, "already_member": already_member}
        )


class InvitationRecipientMismatchError(InvitationError):
    """Invitation was addressed to a different email than the accepting principal's."""

    def __init__(self, token: str | None = None) -> None:
        super().__init__(
            "Invitation was sent to a different email address",
            "INVITATION_RECIPIENT_MISMATCH",
            status_code=403,
            token=token,
            recovery_hint="Sign in with the invited email address",
        )


class SeatLimitExceededError(AccessError):
    """Organization has no free seats left on its plan."""

    def __init__(self, organization_id: str, seats: int) -> None:
        super().__init__(
            f"Organization {organization_id} has reached its limit of {seats} seats",
            "SEAT_LIMIT_EXCEEDED",
            status_code=409,
            context={"organization_id": organization_id, "seats": seats},
            recovery_hint="Remove a member or raise the seat count on the plan",
        )


__all__ = [
    "AccessError",
    "AuthenticationRequiredError",
    "PermissionDeniedError",
    "FeatureUnavailableError",
    "QuotaExceededError",
    "StorageUnavailableError",
    "InvalidRoleError",
    "InvalidPlanError",
    "PrincipalNotFoundError",
    "OrganizationNotFoundError",
    "InvitationError",
    "InvitationNotFoundError",
    "InvitationExpiredError",
    "InvitationAlreadyConsumedError",
    "InvitationConflictError",
    "InvitationRecipientMismatchError",
    "SeatLimitExceededError",
]
