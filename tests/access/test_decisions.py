"""Tests for decisions and their exception mapping."""

from datetime import UTC, datetime, timedelta

import pytest

from accessmeter.billing.plans import UNLIMITED
from accessmeter.decisions import (
    Allow,
    AuthenticationRequired,
    Consumed,
    FeatureUnavailable,
    PermissionDenied,
    QuotaExceeded,
    StorageUnavailable,
)
from accessmeter.exceptions import (
    AccessError,
    AuthenticationRequiredError,
    FeatureUnavailableError,
    InvitationExpiredError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageUnavailableError,
)

pytestmark = pytest.mark.unit

RESET = datetime(2024, 2, 15, 12, tzinfo=UTC)


@pytest.mark.parametrize(
    "decision, error_type, status",
    [
        (AuthenticationRequired(), AuthenticationRequiredError, 401),
        (PermissionDenied("create_analysis", "viewer"), PermissionDeniedError, 403),
        (FeatureUnavailable("history", "starter"), FeatureUnavailableError, 403),
        (QuotaExceeded(20, RESET), QuotaExceededError, 429),
        (StorageUnavailable(), StorageUnavailableError, 503),
    ],
)
def test_denials_map_to_exceptions(decision, error_type, status):
    error = decision.to_exception()
    assert isinstance(error, error_type)
    assert error.status_code == decision.status_code == status
    assert not decision.allowed
    assert decision.to_dict()["decision"] == decision.kind


def test_allow_has_no_exception():
    assert Allow().to_exception() is None
    assert Allow().to_dict() == {"decision": "allow", "allowed": True}


def test_consumed_unlimited_serializes_without_sentinel():
    usage = Consumed(used=3, limit=UNLIMITED, remaining=UNLIMITED, reset_at=RESET)
    assert usage.to_dict() == {
        "used": 3,
        "limit": None,
        "remaining": None,
        "unlimited": True,
        "reset_at": RESET.isoformat(),
    }


def test_quota_exceeded_retry_after():
    decision = QuotaExceeded(20, RESET)
    assert decision.retry_after(RESET - timedelta(hours=1)) == 3600
    assert decision.retry_after(RESET + timedelta(hours=1)) == 0
    assert decision.to_dict()["reset_at"] == RESET.isoformat()


def test_error_to_dict():
    error = PermissionDeniedError("manage_users", "analyst")
    assert error.to_dict() == {
        "error_code": "PERMISSION_DENIED",
        "message": "Missing permission: manage_users",
        "status_code": 403,
        "context": {"permission": "manage_users", "role": "analyst"},
        "recovery_hint": error.recovery_hint,
    }
    assert isinstance(error, AccessError)


def test_invitation_errors_truncate_token():
    error = InvitationExpiredError("abcdef0123456789", RESET)
    assert error.context == {"token": "abcdef01", "expires_at": RESET.isoformat()}
    assert error.status_code == 410
