"""
Access gate: the per-request entry point.

Combines role capabilities and quota metering into a single Decision, and
handles the membership transitions driven by invitations and role changes.
"""

import math
import secrets
from datetime import datetime, timedelta

from accessmeter.auth.permissions import Permission
from accessmeter.auth.principal import Principal
from accessmeter.auth.resolver import RoleCapabilityResolver
from accessmeter.billing.plans import Plan, PlanFeature, PlanPolicyEngine
from accessmeter.decisions import (
    Allow,
    AuthenticationRequired,
    Decision,
    FeatureUnavailable,
    PermissionDenied,
    QuotaExceeded,
    StorageUnavailable,
)
from accessmeter.exceptions import (
    AccessError,
    AuthenticationRequiredError,
    FeatureUnavailableError,
    InvitationRecipientMismatchError,
    OrganizationNotFoundError,
    PermissionDeniedError,
    PrincipalNotFoundError,
    StorageUnavailableError,
)
from accessmeter.logging import get_logger, log_audit_event
from accessmeter.quota.ledger import QuotaLedger
from accessmeter.quota.periods import Clock, as_utc, utc_now
from accessmeter.settings import Settings, get_settings
from accessmeter.tenant.models import Account, Invitation, OrgMembership
from accessmeter.tenant.repository import TenantRepository

logger = get_logger(__name__)


def _permission_value(permission: object) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


class AccessGate:
    """Authorizes requests and applies membership changes."""

    def __init__(
        self,
        resolver: RoleCapabilityResolver,
        ledger: QuotaLedger,
        tenants: TenantRepository,
        plans: PlanPolicyEngine | None = None,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.tenants = tenants
        self.plans = plans or ledger.plans
        self._clock = clock
        self._settings = settings or get_settings()

    def now(self) -> datetime:
        return as_utc(self._clock())

    def _unauthenticated(self, principal: Principal | None) -> AuthenticationRequired | None:
        if principal is None:
            return AuthenticationRequired("missing_principal")
        if self._settings.access.require_verified_email and not principal.email_verified:
            return AuthenticationRequired("email_not_verified")
        return None

    def _storage_retry_after(self) -> int:
        return max(1, math.ceil(self._settings.quota.retry_max_wait))

    def _require_principal(self, principal: Principal | None) -> Principal:
        denied = self._unauthenticated(principal)
        if denied is not None:
            raise AuthenticationRequiredError(reason=denied.reason)
        assert principal is not None
        return principal

    # ------------------------------------------------------------------
    # Per-request decisions
    # ------------------------------------------------------------------

    async def authorize(
        self,
        principal: Principal | None,
        required_permission: Permission | str,
        meterable: bool = False,
        amount: int = 1,
    ) -> Decision:
        """Decide whether ``principal`` may perform an operation.

        Permission is checked before quota, so a denied request never
        consumes a unit. Storage failures on the quota path deny.
        """
        denied = self._unauthenticated(principal)
        if denied is not None:
            logger.info("access.denied.unauthenticated", reason=denied.reason)
            return denied
        assert principal is not None

        permission = _permission_value(required_permission)
        if not self.resolver.has_permission(principal.role, required_permission):
            logger.info(
                "access.denied.permission",
                principal_id=principal.id,
                role=principal.role,
                permission=permission,
            )
            return PermissionDenied(permission=permission, role=principal.role)

        if not meterable:
            return Allow()

        try:
            outcome = await self.ledger.try_consume(
                principal.id, amount, fallback_plan_id=principal.plan_id
            )
        except StorageUnavailableError:
            logger.warning(
                "access.denied.storage_unavailable",
                principal_id=principal.id,
                permission=permission,
            )
            return StorageUnavailable(retry_after_seconds=self._storage_retry_after())

        if isinstance(outcome, QuotaExceeded):
            return outcome
        return Allow(usage=outcome)

    async def check_feature(
        self, principal: Principal | None, feature: PlanFeature | str
    ) -> Decision:
        """Gate a plan feature on the same effective plan that meters quota."""
        denied = self._unauthenticated(principal)
        if denied is not None:
            return denied
        assert principal is not None

        name = feature.value if isinstance(feature, PlanFeature) else str(feature)
        try:
            plan_id = await self.ledger.effective_plan_id(
                principal.id, fallback_plan_id=principal.plan_id
            )
        except StorageUnavailableError:
            logger.warning(
                "access.denied.storage_unavailable", principal_id=principal.id, feature=name
            )
            return StorageUnavailable(retry_after_seconds=self._storage_retry_after())

        if self.plans.has_feature(plan_id, feature):
            return Allow()
        logger.info(
            "access.denied.feature",
            principal_id=principal.id,
            plan_id=plan_id,
            feature=name,
        )
        return FeatureUnavailable(feature=name, plan_id=plan_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _seats_for(self, plan_id: str) -> int | None:
        return self.plans.resolve(plan_id).features.seats

    async def accept_invitation(self, token: str, principal: Principal | None) -> OrgMembership:
        """Consume an invitation and grant its role and the organization's plan.

        Raises InvitationNotFoundError, InvitationExpiredError,
        InvitationAlreadyConsumedError or SeatLimitExceededError; a replayed
        token always fails. When the identity layer supplies the principal's
        email it must match the invited address (InvitationRecipientMismatchError).
        """
        invitee = self._require_principal(principal)
        now = self.now()
        try:
            if invitee.email is not None:
                invitation = await self.tenants.get_invitation(token)
                if invitation is not None and invitation.email != invitee.email.strip().lower():
                    raise InvitationRecipientMismatchError(token)
            membership = await self.tenants.accept_invitation(
                token, invitee.id, now, self._seats_for
            )
        except AccessError as exc:
            logger.info(
                "invitation.accept.rejected",
                principal_id=invitee.id,
                error_code=exc.error_code,
            )
            raise

        log_audit_event(
            "invitation.accepted",
            "membership",
            actor_id=invitee.id,
            organization_id=membership.organization_id,
            resource_type="invitation",
            resource_id=token[:8],
            role=membership.role,
            plan_id=membership.plan_id,
        )
        return membership

    async def invite_member(self, inviter: Principal | None, email: str, role: str) -> Invitation:
        """Create a pending invitation into the inviter's organization."""
        actor = self._require_principal(inviter)
        if actor.organization_id is None:
            raise PermissionDeniedError(Permission.INVITE_USERS.value, actor.role)
        if not self.resolver.has_permission(actor.role, Permission.INVITE_USERS):
            raise PermissionDeniedError(Permission.INVITE_USERS.value, actor.role)

        granted = self.resolver.require_role(role)
        if not self.resolver.can_manage(actor.role, granted):
            raise PermissionDeniedError(Permission.MANAGE_USERS.value, actor.role)

        organization = await self.tenants.get_organization(actor.organization_id)
        if organization is None:
            raise OrganizationNotFoundError(actor.organization_id)
        if not self.plans.has_feature(organization.plan_id, PlanFeature.COLLABORATION):
            raise FeatureUnavailableError(PlanFeature.COLLABORATION.value, organization.plan_id)

        now = self.now()
        config = self._settings.invitations
        invitation = Invitation(
            token=secrets.token_hex(config.token_bytes),
            organization_id=organization.id,
            email=email.strip().lower(),
            role=granted.value,
            expires_at=now + timedelta(days=config.ttl_days),
            invited_by=actor.id,
        )
        await self.tenants.add_invitation(invitation, now)

        log_audit_event(
            "invitation.created",
            "membership",
            actor_id=actor.id,
            organization_id=organization.id,
            resource_type="invitation",
            resource_id=invitation.token[:8],
            invited_email=invitation.email,
            role=invitation.role,
        )
        return invitation

    async def _member_of_actor_org(self, actor: Principal, target_principal_id: str) -> Account:
        target = await self.tenants.get_account(target_principal_id)
        if target is None:
            raise PrincipalNotFoundError(target_principal_id)
        if actor.organization_id is None or target.organization_id != actor.organization_id:
            raise PermissionDeniedError(Permission.MANAGE_USERS.value, actor.role)
        return target

    async def change_member_role(
        self, actor: Principal | None, target_principal_id: str, new_role: str
    ) -> Account:
        """Change a fellow member's role within the actor's authority."""
        manager = self._require_principal(actor)
        target = await self._member_of_actor_org(manager, target_principal_id)
        granted = self.resolver.require_role(new_role)

        if not (
            self.resolver.can_manage(manager.role, target.role)
            and self.resolver.can_manage(manager.role, granted)
        ):
            logger.info(
                "membership.role_change.denied",
                actor_id=manager.id,
                target_id=target_principal_id,
                target_role=target.role,
                new_role=granted.value,
            )
            raise PermissionDeniedError(Permission.MANAGE_USERS.value, manager.role)

        updated = await self.tenants.set_role(target_principal_id, granted.value)
        log_audit_event(
            "membership.role_changed",
            "membership",
            actor_id=manager.id,
            organization_id=manager.organization_id,
            resource_type="account",
            resource_id=target_principal_id,
            old_role=target.role,
            new_role=granted.value,
        )
        return updated

    async def remove_member(self, actor: Principal | None, target_principal_id: str) -> Account:
        """Remove a member from the actor's organization; they fall back to the starter plan."""
        manager = self._require_principal(actor)
        if not self.resolver.has_permission(manager.role, Permission.REMOVE_USERS):
            raise PermissionDeniedError(Permission.REMOVE_USERS.value, manager.role)
        if target_principal_id == manager.id:
            raise PermissionDeniedError(Permission.REMOVE_USERS.value, manager.role)

        target = await self._member_of_actor_org(manager, target_principal_id)
        if not self.resolver.can_manage(manager.role, target.role):
            raise PermissionDeniedError(Permission.MANAGE_USERS.value, manager.role)

        updated = await self.tenants.remove_member(target_principal_id, Plan.STARTER.value)
        log_audit_event(
            "membership.removed",
            "membership",
            actor_id=manager.id,
            organization_id=manager.organization_id,
            resource_type="account",
            resource_id=target_principal_id,
            removed_role=target.role,
        )
        return updated


__all__ = ["AccessGate"]
