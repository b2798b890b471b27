"""
SQLAlchemy tenant repository.

Invitation acceptance starts with a compare-and-set UPDATE on
``consumed_at IS NULL``; only the transaction whose UPDATE matched a row goes
on to grant membership. Seat admission then locks the organization row
(``SELECT ... FOR UPDATE``) before counting members, so concurrent acceptances
into one organization are serialized and cannot overshoot the plan's seats.
Billing events are recorded by primary key, so a replayed event id fails the
insert and changes nothing.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessmeter.db import get_async_session_maker
from accessmeter.exceptions import (
    InvitationConflictError,
    OrganizationNotFoundError,
    PrincipalNotFoundError,
    SeatLimitExceededError,
    StorageUnavailableError,
)
from accessmeter.logging import get_logger
from accessmeter.quota.periods import as_utc
from accessmeter.tenant.models import (
    Account,
    AccountRecord,
    Invitation,
    InvitationRecord,
    Organization,
    OrganizationRecord,
    OrgMembership,
    ProcessedBillingEventRecord,
)
from accessmeter.tenant.repository import SeatLimit, classify_unconsumable

logger = get_logger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _account(record: AccountRecord) -> Account:
    return Account(
        principal_id=record.principal_id,
        plan_id=record.plan_id,
        role=record.role,
        email=record.email,
        organization_id=record.organization_id,
        joined_at=_utc(record.joined_at),
    )


def _organization(record: OrganizationRecord) -> Organization:
    return Organization(id=record.id, name=record.name, plan_id=record.plan_id)


def organization_for_update(organization_id: str) -> Select[tuple[OrganizationRecord]]:
    """Organization row, locked until the transaction ends (no-op on SQLite)."""
    return (
        select(OrganizationRecord)
        .where(OrganizationRecord.id == organization_id)
        .with_for_update()
    )


def _invitation(record: InvitationRecord) -> Invitation:
    return Invitation(
        token=record.token,
        organization_id=record.organization_id,
        email=record.email,
        role=record.role,
        expires_at=as_utc(record.expires_at),
        invited_by=record.invited_by,
        consumed_at=_utc(record.consumed_at),
        consumed_by=record.consumed_by,
        version=record.version,
    )


class SQLAlchemyTenantRepository:
    """Tenant state in the ``accounts``, ``organizations`` and ``invitations`` tables."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or get_async_session_maker()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("tenant.store.sql_error", operation=operation, error=str(exc))
            raise StorageUnavailableError(operation=operation) from exc

    # ------------------------------------------------------------------
    # Accounts & organizations
    # ------------------------------------------------------------------

    async def get_account(self, principal_id: str) -> Account | None:
        async with self._transaction("get_account") as session:
            record = await session.get(AccountRecord, principal_id)
            return _account(record) if record is not None else None

    async def save_account(self, account: Account) -> Account:
        async with self._transaction("save_account") as session:
            await session.merge(
                AccountRecord(
                    principal_id=account.principal_id,
                    email=account.email,
                    role=account.role,
                    plan_id=account.plan_id,
                    organization_id=account.organization_id,
                    joined_at=account.joined_at,
                )
            )
        return account

    async def list_accounts(self, organization_id: str | None = None) -> list[Account]:
        stmt = select(AccountRecord).order_by(AccountRecord.principal_id)
        if organization_id is not None:
            stmt = stmt.where(AccountRecord.organization_id == organization_id)
        async with self._transaction("list_accounts") as session:
            records = (await session.scalars(stmt)).all()
            return [_account(record) for record in records]

    async def get_organization(self, organization_id: str) -> Organization | None:
        async with self._transaction("get_organization") as session:
            record = await session.get(OrganizationRecord, organization_id)
            return _organization(record) if record is not None else None

    async def save_organization(self, organization: Organization) -> Organization:
        async with self._transaction("save_organization") as session:
            await session.merge(
                OrganizationRecord(
                    id=organization.id, name=organization.name, plan_id=organization.plan_id
                )
            )
        return organization

    async def effective_plan_id(self, principal_id: str) -> str:
        stmt = (
            select(AccountRecord.plan_id, OrganizationRecord.plan_id)
            .outerjoin(OrganizationRecord, AccountRecord.organization_id == OrganizationRecord.id)
            .where(AccountRecord.principal_id == principal_id)
        )
        async with self._transaction("effective_plan_id") as session:
            row = (await session.execute(stmt)).one_or_none()
        if row is None:
            raise PrincipalNotFoundError(principal_id)
        own_plan, organization_plan = row
        return organization_plan or own_plan

    async def plan_assignments(self) -> dict[str, str]:
        stmt = select(
            AccountRecord.principal_id, AccountRecord.plan_id, OrganizationRecord.plan_id
        ).outerjoin(OrganizationRecord, AccountRecord.organization_id == OrganizationRecord.id)
        async with self._transaction("plan_assignments") as session:
            rows = (await session.execute(stmt)).all()
        return {principal_id: org_plan or own_plan for principal_id, own_plan, org_plan in rows}

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    async def add_invitation(self, invitation: Invitation, now: datetime) -> Invitation:
        async with self._transaction("add_invitation") as session:
            if await session.get(OrganizationRecord, invitation.organization_id) is None:
                raise OrganizationNotFoundError(invitation.organization_id)
            member = await session.scalar(
                select(AccountRecord.principal_id).where(
                    AccountRecord.organization_id == invitation.organization_id,
                    func.lower(AccountRecord.email) == invitation.email,
                )
            )
            if member is not None:
                raise InvitationConflictError(
                    invitation.email, invitation.organization_id, already_member=True
                )
            pending = await session.scalar(
                select(func.count())
                .select_from(InvitationRecord)
                .where(
                    InvitationRecord.organization_id == invitation.organization_id,
                    InvitationRecord.email == invitation.email,
                    InvitationRecord.consumed_at.is_(None),
                    InvitationRecord.expires_at > now,
                )
            )
            if pending:
                raise InvitationConflictError(invitation.email, invitation.organization_id)
            session.add(
                InvitationRecord(
                    token=invitation.token,
                    organization_id=invitation.organization_id,
                    email=invitation.email,
                    role=invitation.role,
                    invited_by=invitation.invited_by,
                    expires_at=invitation.expires_at,
                    consumed_at=None,
                    version=invitation.version,
                )
            )
        return invitation

    async def get_invitation(self, token: str) -> Invitation | None:
        async with self._transaction("get_invitation") as session:
            record = await session.get(InvitationRecord, token)
            return _invitation(record) if record is not None else None

    async def accept_invitation(
        self, token: str, principal_id: str, now: datetime, seat_limit: SeatLimit
    ) -> OrgMembership:
        consume = (
            update(InvitationRecord)
            .where(
                InvitationRecord.token == token,
                InvitationRecord.consumed_at.is_(None),
                InvitationRecord.expires_at > now,
            )
            .values(
                consumed_at=now,
                consumed_by=principal_id,
                version=InvitationRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("accept_invitation") as session:
            result = await session.execute(consume)
            record = await session.get(InvitationRecord, token)
            if result.rowcount != 1:
                raise classify_unconsumable(
                    _invitation(record) if record is not None else None, token, now
                )
            assert record is not None

            organization = await session.scalar(organization_for_update(record.organization_id))
            if organization is None:
                raise OrganizationNotFoundError(record.organization_id)
            account = await session.get(AccountRecord, principal_id)
            if account is None:
                raise PrincipalNotFoundError(principal_id)

            seats = seat_limit(organization.plan_id)
            if seats is not None and account.organization_id != organization.id:
                members = await session.scalar(
                    select(func.count())
                    .select_from(AccountRecord)
                    .where(AccountRecord.organization_id == organization.id)
                )
                if (members or 0) >= seats:
                    # Rolls back the consume; the token stays pending
                    raise SeatLimitExceededError(organization.id, seats)

            account.role = record.role
            account.organization_id = organization.id
            account.plan_id = organization.plan_id
            account.joined_at = now
            membership = OrgMembership(
                principal_id=principal_id,
                organization_id=organization.id,
                role=record.role,
                plan_id=organization.plan_id,
                joined_at=now,
            )
        return membership

    # ------------------------------------------------------------------
    # Membership changes
    # ------------------------------------------------------------------

    async def set_role(self, principal_id: str, role: str) -> Account:
        async with self._transaction("set_role") as session:
            record = await session.get(AccountRecord, principal_id)
            if record is None:
                raise PrincipalNotFoundError(principal_id)
            record.role = role
            account = _account(record)
        return account

    async def remove_member(self, principal_id: str, fallback_plan_id: str) -> Account:
        async with self._transaction("remove_member") as session:
            record = await session.get(AccountRecord, principal_id)
            if record is None:
                raise PrincipalNotFoundError(principal_id)
            record.role = None
            record.organization_id = None
            record.joined_at = None
            record.plan_id = fallback_plan_id
            account = _account(record)
        return account

    async def apply_plan_change(
        self,
        event_id: str,
        event_type: str,
        new_plan_id: str,
        now: datetime,
        principal_id: str | None = None,
        organization_id: str | None = None,
    ) -> bool:
        target = organization_id or principal_id or ""
        try:
            async with self._transaction("apply_plan_change") as session:
                session.add(
                    ProcessedBillingEventRecord(
                        event_id=event_id,
                        event_type=event_type,
                        target=target,
                        new_plan_id=new_plan_id,
                        processed_at=now,
                    )
                )
                await session.flush()

                if organization_id is not None:
                    organization = await session.get(OrganizationRecord, organization_id)
                    if organization is None:
                        raise OrganizationNotFoundError(organization_id)
                    organization.plan_id = new_plan_id
                    await session.execute(
                        update(AccountRecord)
                        .where(AccountRecord.organization_id == organization_id)
                        .values(plan_id=new_plan_id)
                        .execution_options(synchronize_session=False)
                    )
                else:
                    account = await session.get(AccountRecord, target)
                    if account is None:
                        raise PrincipalNotFoundError(target)
                    account.plan_id = new_plan_id
        except IntegrityError:
            logger.info("billing.event.duplicate", event_id=event_id, event_type=event_type)
            return False
        return True


__all__ = ["SQLAlchemyTenantRepository", "organization_for_update"]
