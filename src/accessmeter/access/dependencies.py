"""
FastAPI dependencies for request authorization.

``require_access`` turns an AccessGate decision into either the Allow
decision (request proceeds) or an HTTPException carrying the structured
error body.
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from structlog.contextvars import bound_contextvars

from accessmeter.access.gate import AccessGate
from accessmeter.auth.permissions import Permission
from accessmeter.auth.principal import Principal
from accessmeter.decisions import Decision, QuotaExceeded, StorageUnavailable
from accessmeter.logging import get_logger

logger = get_logger(__name__)


async def get_current_principal(request: Request) -> Principal | None:
    """Principal placed on the request by the identity layer, if any.

    Override this dependency to plug in a different identity source.
    """
    principal = getattr(request.state, "principal", None)
    return principal if isinstance(principal, Principal) else None


async def get_access_gate(request: Request) -> AccessGate:
    gate = getattr(request.app.state, "access_gate", None)
    if gate is None:
        logger.error("access.gate.not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access control is not configured",
        )
    return gate


def decision_to_http_exception(decision: Decision, gate: AccessGate) -> HTTPException:
    """Map a non-allow decision to its HTTP response."""
    error = decision.to_exception()
    detail = error.to_dict() if error is not None else decision.to_dict()
    headers: dict[str, str] = {}

    if isinstance(decision, QuotaExceeded):
        headers["Retry-After"] = str(max(decision.retry_after(gate.now()), 1))
    elif isinstance(decision, StorageUnavailable):
        headers["Retry-After"] = str(decision.retry_after_seconds)
    elif decision.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"

    return HTTPException(
        status_code=decision.status_code,
        detail=detail,
        headers=headers or None,
    )


class AccessChecker:
    """
    Dependency class for checking a permission and, optionally, consuming quota.
    Can be used as a FastAPI dependency.
    """

    def __init__(self, permission: Permission | str, meterable: bool = False, amount: int = 1):
        self.permission = permission
        self.meterable = meterable
        self.amount = amount

    async def __call__(
        self,
        principal: Principal | None = Depends(get_current_principal),
        gate: AccessGate = Depends(get_access_gate),
    ) -> Decision:
        with bound_contextvars(
            principal_id=principal.id if principal else None,
            permission=self.permission,
        ):
            decision = await gate.authorize(
                principal, self.permission, meterable=self.meterable, amount=self.amount
            )
        if decision.allowed:
            return decision
        raise decision_to_http_exception(decision, gate)


@lru_cache(maxsize=None)
def require_access(
    permission: Permission | str, meterable: bool = False, amount: int = 1
) -> AccessChecker:
    """Require a permission; metered routes also consume ``amount`` quota units."""
    return AccessChecker(permission, meterable=meterable, amount=amount)


__all__ = [
    "AccessChecker",
    "decision_to_http_exception",
    "get_access_gate",
    "get_current_principal",
    "require_access",
]
