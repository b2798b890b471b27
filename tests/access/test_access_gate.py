"""Tests for AccessGate authorization and membership management."""

from dataclasses import replace

import pytest

from accessmeter.access.gate import AccessGate
from accessmeter.auth.permissions import Permission
from accessmeter.auth.principal import Principal
from accessmeter.billing.plans import UNLIMITED, PlanFeature
from accessmeter.decisions import (
    Allow,
    AuthenticationRequired,
    FeatureUnavailable,
    PermissionDenied,
    QuotaExceeded,
    StorageUnavailable,
)
from accessmeter.exceptions import (
    AuthenticationRequiredError,
    FeatureUnavailableError,
    InvalidRoleError,
    InvitationConflictError,
    PermissionDeniedError,
    StorageUnavailableError,
)
from accessmeter.quota.ledger import QuotaLedger
from accessmeter.quota.stores import InMemoryUsageStore
from accessmeter.tenant.models import InvitationState

pytestmark = pytest.mark.unit


class BrokenStore(InMemoryUsageStore):
    async def read(self, principal_id):
        raise StorageUnavailableError(operation="read")


class TestAuthorize:
    async def test_missing_principal(self, gate):
        decision = await gate.authorize(None, Permission.VIEW_ANALYSIS)
        assert decision == AuthenticationRequired("missing_principal")
        assert decision.status_code == 401

    async def test_unverified_email_is_unauthenticated(self, gate, make_account):
        principal = replace(await make_account("u1"), email_verified=False)
        decision = await gate.authorize(principal, Permission.VIEW_ANALYSIS)
        assert decision == AuthenticationRequired("email_not_verified")

    async def test_unverified_email_allowed_when_not_required(
        self, gate, make_account, test_settings
    ):
        test_settings.access.require_verified_email = False
        principal = replace(await make_account("u1"), email_verified=False)
        assert (await gate.authorize(principal, Permission.VIEW_ANALYSIS)).allowed

    async def test_unmetered_allow_does_not_consume(self, gate, ledger, make_account):
        principal = await make_account("u1", role="viewer")
        decision = await gate.authorize(principal, Permission.VIEW_ANALYSIS)
        assert decision == Allow()
        assert (await ledger.get_usage("u1")).used == 0

    async def test_metered_allow_reports_usage(self, gate, make_account):
        principal = await make_account("u1", role="analyst")
        decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)
        assert isinstance(decision, Allow)
        assert decision.usage.used == 1
        assert decision.usage.remaining == 19
        assert decision.to_dict()["usage"]["limit"] == 20

    async def test_permission_denied_consumes_nothing(self, gate, ledger, make_account):
        principal = await make_account("u1", role="viewer")
        decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)

        assert decision == PermissionDenied(permission="create_analysis", role="viewer")
        assert decision.status_code == 403
        assert (await ledger.get_usage("u1")).used == 0

    @pytest.mark.parametrize("role", [None, "owner", "ADMIN", ""])
    async def test_unknown_role_is_denied(self, gate, make_account, role):
        principal = await make_account("u1", role=role)
        decision = await gate.authorize(principal, Permission.VIEW_ANALYSIS)
        assert isinstance(decision, PermissionDenied)

    async def test_unknown_permission_is_denied(self, gate, make_account):
        principal = await make_account("u1", role="admin")
        decision = await gate.authorize(principal, "launch_rockets")
        assert decision == PermissionDenied(permission="launch_rockets", role="admin")

    async def test_quota_exceeded_after_limit(self, gate, make_account, clock):
        principal = await make_account("u1", role="analyst", plan_id="starter")
        for _ in range(20):
            decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)
            assert decision.allowed

        decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)
        assert isinstance(decision, QuotaExceeded)
        assert decision.status_code == 429
        assert decision.limit == 20
        assert decision.reset_at == clock.start.replace(month=2)
        assert decision.retry_after(clock()) == 31 * 24 * 3600

    async def test_principal_without_account_is_metered_on_its_plan(self, gate, ledger):
        principal = Principal(id="fresh", role="analyst", plan_id="starter")

        decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)

        assert isinstance(decision, Allow)
        assert (decision.usage.used, decision.usage.limit) == (1, 20)

    async def test_storage_failure_denies(
        self, resolver, plans, tenants, clock, test_settings, make_account
    ):
        ledger = QuotaLedger(BrokenStore(), plans, tenants, clock=clock, settings=test_settings)
        gate = AccessGate(resolver, ledger, tenants, clock=clock, settings=test_settings)
        principal = await make_account("u1", role="analyst")

        decision = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)

        assert isinstance(decision, StorageUnavailable)
        assert not decision.allowed
        assert decision.retry_after_seconds >= 1

    async def test_storage_failure_does_not_affect_unmetered(
        self, resolver, plans, tenants, clock, test_settings, make_account
    ):
        ledger = QuotaLedger(BrokenStore(), plans, tenants, clock=clock, settings=test_settings)
        gate = AccessGate(resolver, ledger, tenants, clock=clock, settings=test_settings)
        principal = await make_account("u1", role="analyst")
        assert (await gate.authorize(principal, Permission.VIEW_ANALYSIS)).allowed


class TestCheckFeature:
    async def test_feature_on_plan(self, gate, make_account):
        principal = await make_account("u1", plan_id="standard")
        assert (await gate.check_feature(principal, PlanFeature.EXPORT_ENABLED)).allowed

    async def test_feature_missing_from_plan(self, gate, make_account):
        principal = await make_account("u1", plan_id="starter")
        decision = await gate.check_feature(principal, "history")
        assert decision == FeatureUnavailable(feature="history", plan_id="starter")
        assert decision.status_code == 403

    async def test_unknown_feature(self, gate, make_account):
        principal = await make_account("u1", plan_id="enterprise")
        assert not (await gate.check_feature(principal, "teleport")).allowed

    async def test_requires_principal(self, gate):
        assert isinstance(await gate.check_feature(None, "history"), AuthenticationRequired)

    async def test_member_uses_organization_plan(self, gate, make_account, make_organization):
        await make_organization("org-1", plan_id="enterprise")
        # Identity layer still reports the plan from before joining
        principal = await make_account("m1", plan_id="starter", organization_id="org-1")

        assert (await gate.check_feature(principal, PlanFeature.EXPORT_ENABLED)).allowed
        metered = await gate.authorize(principal, Permission.CREATE_ANALYSIS, meterable=True)
        assert metered.usage.limit is UNLIMITED

    async def test_principal_without_account_uses_its_plan(self, gate):
        principal = Principal(id="fresh", role="viewer", plan_id="starter")
        decision = await gate.check_feature(principal, PlanFeature.EXPORT_ENABLED)
        assert decision == FeatureUnavailable(feature="export_enabled", plan_id="starter")


@pytest.fixture
async def org_admin(make_account, make_organization):
    await make_organization("org-1", plan_id="enterprise")
    return await make_account("boss", role="admin", plan_id="enterprise", organization_id="org-1")


class TestInviteMember:
    async def test_creates_pending_invitation(self, gate, org_admin, tenants, clock):
        invitation = await gate.invite_member(org_admin, " New@Example.com ", "analyst")

        assert invitation.email == "new@example.com"
        assert invitation.role == "analyst"
        assert invitation.organization_id == "org-1"
        assert invitation.invited_by == "boss"
        assert len(invitation.token) == 64
        assert invitation.state(clock()) == InvitationState.PENDING
        assert (invitation.expires_at - clock()).days == 7
        assert await tenants.get_invitation(invitation.token) == invitation

    async def test_duplicate_pending_invitation_conflicts(self, gate, org_admin):
        await gate.invite_member(org_admin, "new@example.com", "analyst")
        with pytest.raises(InvitationConflictError):
            await gate.invite_member(org_admin, "NEW@example.com", "viewer")

    async def test_tokens_are_unique(self, gate, org_admin):
        first = await gate.invite_member(org_admin, "a@example.com", "viewer")
        second = await gate.invite_member(org_admin, "b@example.com", "viewer")
        assert first.token != second.token

    async def test_analyst_cannot_invite(self, gate, org_admin, make_account):
        analyst = await make_account("a1", role="analyst", organization_id="org-1")
        with pytest.raises(PermissionDeniedError) as exc_info:
            await gate.invite_member(analyst, "x@example.com", "viewer")
        assert exc_info.value.permission == "invite_users"

    async def test_manager_cannot_grant_admin(self, gate, org_admin, make_account):
        manager = await make_account("m1", role="manager", organization_id="org-1")
        with pytest.raises(PermissionDeniedError) as exc_info:
            await gate.invite_member(manager, "x@example.com", "admin")
        assert exc_info.value.permission == "manage_users"

    async def test_invalid_role_rejected(self, gate, org_admin):
        with pytest.raises(InvalidRoleError):
            await gate.invite_member(org_admin, "x@example.com", "owner")

    async def test_requires_organization(self, gate, make_account):
        loner = await make_account("solo", role="admin", plan_id="enterprise")
        with pytest.raises(PermissionDeniedError):
            await gate.invite_member(loner, "x@example.com", "viewer")

    async def test_requires_collaboration_feature(self, gate, make_account, make_organization):
        await make_organization("org-2", plan_id="premium")
        admin = await make_account("boss2", role="admin", organization_id="org-2")
        with pytest.raises(FeatureUnavailableError) as exc_info:
            await gate.invite_member(admin, "x@example.com", "viewer")
        assert exc_info.value.feature == "collaboration"

    async def test_requires_principal(self, gate):
        with pytest.raises(AuthenticationRequiredError):
            await gate.invite_member(None, "x@example.com", "viewer")


class TestChangeMemberRole:
    async def test_admin_promotes_member(self, gate, org_admin, make_account, tenants):
        await make_account("a1", role="analyst", organization_id="org-1")
        updated = await gate.change_member_role(org_admin, "a1", "manager")
        assert updated.role == "manager"
        assert (await tenants.get_account("a1")).role == "manager"

    async def test_manager_cannot_promote_to_admin(self, gate, org_admin, make_account, tenants):
        manager = await make_account("m1", role="manager", organization_id="org-1")
        await make_account("a1", role="analyst", organization_id="org-1")
        with pytest.raises(PermissionDeniedError):
            await gate.change_member_role(manager, "a1", "admin")
        assert (await tenants.get_account("a1")).role == "analyst"

    async def test_manager_cannot_demote_admin(self, gate, org_admin, make_account):
        manager = await make_account("m1", role="manager", organization_id="org-1")
        with pytest.raises(PermissionDeniedError):
            await gate.change_member_role(manager, "boss", "viewer")

    async def test_other_organization_is_out_of_reach(
        self, gate, org_admin, make_account, make_organization
    ):
        await make_organization("org-2")
        await make_account("x1", role="viewer", organization_id="org-2")
        with pytest.raises(PermissionDeniedError):
            await gate.change_member_role(org_admin, "x1", "analyst")

    async def test_unknown_member_role_cannot_be_managed(self, gate, org_admin, make_account):
        await make_account("weird", role="owner", organization_id="org-1")
        with pytest.raises(PermissionDeniedError):
            await gate.change_member_role(org_admin, "weird", "viewer")


class TestRemoveMember:
    async def test_admin_removes_member(self, gate, org_admin, make_account, ledger):
        await make_account("a1", role="analyst", organization_id="org-1")
        assert (await ledger.get_usage("a1")).unlimited

        removed = await gate.remove_member(org_admin, "a1")

        assert removed.organization_id is None
        assert removed.role is None
        assert removed.plan_id == "starter"
        assert (await ledger.get_usage("a1")).limit == 20

    async def test_manager_cannot_remove(self, gate, org_admin, make_account):
        manager = await make_account("m1", role="manager", organization_id="org-1")
        await make_account("a1", role="analyst", organization_id="org-1")
        with pytest.raises(PermissionDeniedError) as exc_info:
            await gate.remove_member(manager, "a1")
        assert exc_info.value.permission == "remove_users"

    async def test_cannot_remove_self(self, gate, org_admin):
        with pytest.raises(PermissionDeniedError):
            await gate.remove_member(org_admin, "boss")


def test_principal_defaults():
    principal = Principal(id="p", role="viewer", plan_id="starter")
    assert principal.email_verified is True
    assert principal.organization_id is None
