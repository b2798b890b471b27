"""
Tenant state repositories.

The repository owns the only multi-step state transitions of the tenant
model: accepting an invitation and applying a billing plan change. Each runs
as one atomic unit so concurrent callers can never both succeed.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Protocol, runtime_checkable

from accessmeter.exceptions import (
    InvitationAlreadyConsumedError,
    InvitationConflictError,
    InvitationExpiredError,
    InvitationNotFoundError,
    OrganizationNotFoundError,
    PrincipalNotFoundError,
    SeatLimitExceededError,
)
from accessmeter.logging import get_logger
from accessmeter.tenant.models import (
    Account,
    Invitation,
    InvitationState,
    Organization,
    OrgMembership,
)

logger = get_logger(__name__)

# Maps an organization's plan id to its seat count (None = no seat limit)
SeatLimit = Callable[[str], int | None]


@runtime_checkable
class TenantRepository(Protocol):
    """Accounts, organizations and invitations."""

    async def get_account(self, principal_id: str) -> Account | None:
        ...

    async def save_account(self, account: Account) -> Account:
        ...

    async def list_accounts(self, organization_id: str | None = None) -> list[Account]:
        ...

    async def get_organization(self, organization_id: str) -> Organization | None:
        ...

    async def save_organization(self, organization: Organization) -> Organization:
        ...

    async def effective_plan_id(self, principal_id: str) -> str:
        """Organization plan for members, the account's own plan otherwise."""
        ...

    async def plan_assignments(self) -> dict[str, str]:
        ...

    async def add_invitation(self, invitation: Invitation, now: datetime) -> Invitation:
        """Store a new invitation.

        Conflicts when the email already belongs to a member of the organization
        or already has a pending invitation there.
        """
        ...

    async def get_invitation(self, token: str) -> Invitation | None:
        ...

    async def accept_invitation(
        self, token: str, principal_id: str, now: datetime, seat_limit: SeatLimit
    ) -> OrgMembership:
        """Consume the token and grant its role and the organization's plan, atomically."""
        ...

    async def set_role(self, principal_id: str, role: str) -> Account:
        ...

    async def remove_member(self, principal_id: str, fallback_plan_id: str) -> Account:
        ...

    async def apply_plan_change(
        self,
        event_id: str,
        event_type: str,
        new_plan_id: str,
        now: datetime,
        principal_id: str | None = None,
        organization_id: str | None = None,
    ) -> bool:
        """Record ``event_id`` and change the plan; False if the event was already applied."""
        ...


def classify_unconsumable(invitation: Invitation | None, token: str, now: datetime) -> Exception:
    """Error for an invitation that could not be consumed."""
    if invitation is None:
        return InvitationNotFoundError(token)
    state = invitation.state(now)
    if state == InvitationState.CONSUMED:
        return InvitationAlreadyConsumedError(token)
    return InvitationExpiredError(token, invitation.expires_at)


class InMemoryTenantRepository:
    """Process-local repository; every transition runs under one asyncio lock."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._organizations: dict[str, Organization] = {}
        self._invitations: dict[str, Invitation] = {}
        self._processed_events: set[str] = set()
        self._lock = asyncio.Lock()

    async def get_account(self, principal_id: str) -> Account | None:
        return self._accounts.get(principal_id)

    async def save_account(self, account: Account) -> Account:
        async with self._lock:
            self._accounts[account.principal_id] = account
        return account

    async def list_accounts(self, organization_id: str | None = None) -> list[Account]:
        accounts = sorted(self._accounts.values(), key=lambda a: a.principal_id)
        if organization_id is None:
            return accounts
        return [a for a in accounts if a.organization_id == organization_id]

    async def get_organization(self, organization_id: str) -> Organization | None:
        return self._organizations.get(organization_id)

    async def save_organization(self, organization: Organization) -> Organization:
        async with self._lock:
            self._organizations[organization.id] = organization
        return organization

    def _effective_plan(self, account: Account) -> str:
        if account.organization_id:
            organization = self._organizations.get(account.organization_id)
            if organization is not None:
                return organization.plan_id
        return account.plan_id

    async def effective_plan_id(self, principal_id: str) -> str:
        account = self._accounts.get(principal_id)
        if account is None:
            raise PrincipalNotFoundError(principal_id)
        return self._effective_plan(account)

    async def plan_assignments(self) -> dict[str, str]:
        return {pid: self._effective_plan(account) for pid, account in self._accounts.items()}

    async def add_invitation(self, invitation: Invitation, now: datetime) -> Invitation:
        async with self._lock:
            if invitation.organization_id not in self._organizations:
                raise OrganizationNotFoundError(invitation.organization_id)
            for account in self._accounts.values():
                if (
                    account.organization_id == invitation.organization_id
                    and (account.email or "").lower() == invitation.email
                ):
                    raise InvitationConflictError(
                        invitation.email, invitation.organization_id, already_member=True
                    )
            for existing in self._invitations.values():
                if (
                    existing.organization_id == invitation.organization_id
                    and existing.email == invitation.email
                    and existing.state(now) == InvitationState.PENDING
                ):
                    raise InvitationConflictError(invitation.email, invitation.organization_id)
            self._invitations[invitation.token] = invitation
        return invitation

    async def get_invitation(self, token: str) -> Invitation | None:
        return self._invitations.get(token)

    async def accept_invitation(
        self, token: str, principal_id: str, now: datetime, seat_limit: SeatLimit
    ) -> OrgMembership:
        async with self._lock:
            invitation = self._invitations.get(token)
            if invitation is None or invitation.state(now) != InvitationState.PENDING:
                raise classify_unconsumable(invitation, token, now)

            organization = self._organizations.get(invitation.organization_id)
            if organization is None:
                raise OrganizationNotFoundError(invitation.organization_id)
            account = self._accounts.get(principal_id)
            if account is None:
                raise PrincipalNotFoundError(principal_id)

            seats = seat_limit(organization.plan_id)
            if seats is not None and account.organization_id != organization.id:
                members = sum(
                    1 for a in self._accounts.values() if a.organization_id == organization.id
                )
                if members >= seats:
                    raise SeatLimitExceededError(organization.id, seats)

            self._invitations[token] = replace(
                invitation,
                consumed_at=now,
                consumed_by=principal_id,
                version=invitation.version + 1,
            )
            self._accounts[principal_id] = replace(
                account,
                role=invitation.role,
                organization_id=organization.id,
                plan_id=organization.plan_id,
                joined_at=now,
            )
        return OrgMembership(
            principal_id=principal_id,
            organization_id=organization.id,
            role=invitation.role,
            plan_id=organization.plan_id,
            joined_at=now,
        )

    async def set_role(self, principal_id: str, role: str) -> Account:
        async with self._lock:
            account = self._accounts.get(principal_id)
            if account is None:
                raise PrincipalNotFoundError(principal_id)
            updated = replace(account, role=role)
            self._accounts[principal_id] = updated
        return updated

    async def remove_member(self, principal_id: str, fallback_plan_id: str) -> Account:
        async with self._lock:
            account = self._accounts.get(principal_id)
            if account is None:
                raise PrincipalNotFoundError(principal_id)
            updated = replace(
                account, role=None, organization_id=None, joined_at=None, plan_id=fallback_plan_id
            )
            self._accounts[principal_id] = updated
        return updated

    async def apply_plan_change(
        self,
        event_id: str,
        event_type: str,
        new_plan_id: str,
        now: datetime,
        principal_id: str | None = None,
        organization_id: str | None = None,
    ) -> bool:
        async with self._lock:
            if event_id in self._processed_events:
                logger.info("billing.event.duplicate", event_id=event_id, event_type=event_type)
                return False

            if organization_id is not None:
                organization = self._organizations.get(organization_id)
                if organization is None:
                    raise OrganizationNotFoundError(organization_id)
                self._organizations[organization_id] = replace(organization, plan_id=new_plan_id)
                for pid, account in list(self._accounts.items()):
                    if account.organization_id == organization_id:
                        self._accounts[pid] = replace(account, plan_id=new_plan_id)
            else:
                account = self._accounts.get(principal_id or "")
                if account is None:
                    raise PrincipalNotFoundError(principal_id or "")
                self._accounts[account.principal_id] = replace(account, plan_id=new_plan_id)

            self._processed_events.add(event_id)
        return True


__all__ = [
    "SeatLimit",
    "TenantRepository",
    "InMemoryTenantRepository",
    "classify_unconsumable",
]
