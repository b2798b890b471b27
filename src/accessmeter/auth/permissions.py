"""
Roles, permissions and the role -> permission table.

The table is an immutable value built once and injected into the resolver, so
tests can substitute alternate tables without touching shared state.
"""

from collections.abc import Iterable, Mapping, Sequence
from enum import Enum
from types import MappingProxyType


class Role(str, Enum):
    """Organization roles, lowest authority first."""

    VIEWER = "viewer"
    ANALYST = "analyst"
    MANAGER = "manager"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "Role | None":
        """Parse an untyped role value; unknown values yield None."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class Permission(str, Enum):
    """Fine-grained capabilities an operation can require."""

    # Analysis
    CREATE_ANALYSIS = "create_analysis"
    VIEW_ANALYSIS = "view_analysis"
    EDIT_ANALYSIS = "edit_analysis"
    DELETE_ANALYSIS = "delete_analysis"
    EXPORT_ANALYSIS = "export_analysis"

    # User management
    VIEW_USERS = "view_users"
    INVITE_USERS = "invite_users"
    MANAGE_USERS = "manage_users"
    REMOVE_USERS = "remove_users"

    # Organization
    VIEW_ORGANIZATION = "view_organization"
    EDIT_ORGANIZATION = "edit_organization"
    VIEW_BILLING = "view_billing"
    MANAGE_BILLING = "manage_billing"

    # Analytics
    VIEW_ANALYTICS = "view_analytics"
    VIEW_ADVANCED_ANALYTICS = "view_advanced_analytics"

    # Audit
    VIEW_AUDIT_LOGS = "view_audit_logs"

    @classmethod
    def parse(cls, value: object) -> "Permission | None":
        if isinstance(value, Permission):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class RolePermissionMap:
    """Immutable Role -> permission set table with a total hierarchy order.

    Construction fails unless every role's permission set contains the set of
    every role ranked below it.
    """

    def __init__(
        self,
        grants: Mapping[Role, Iterable[Permission]],
        hierarchy: Sequence[Role] = (Role.VIEWER, Role.ANALYST, Role.MANAGER, Role.ADMIN),
    ) -> None:
        if len(set(hierarchy)) != len(hierarchy):
            raise ValueError("Role hierarchy contains duplicates")
        missing = set(hierarchy) - set(grants)
        if missing:
            raise ValueError(f"No permissions defined for roles: {sorted(r.value for r in missing)}")

        self._hierarchy: tuple[Role, ...] = tuple(hierarchy)
        self._levels: Mapping[Role, int] = MappingProxyType(
            {role: index for index, role in enumerate(self._hierarchy)}
        )
        self._grants: Mapping[Role, frozenset[Permission]] = MappingProxyType(
            {role: frozenset(grants[role]) for role in self._hierarchy}
        )
        self._check_monotonic()

    def _check_monotonic(self) -> None:
        for lower, higher in zip(self._hierarchy, self._hierarchy[1:]):
            missing = self._grants[lower] - self._grants[higher]
            if missing:
                raise ValueError(
                    f"Role {higher.value} lacks permissions held by {lower.value}: "
                    f"{sorted(p.value for p in missing)}"
                )

    @property
    def hierarchy(self) -> tuple[Role, ...]:
        return self._hierarchy

    def level(self, role: Role) -> int | None:
        return self._levels.get(role)

    def permissions(self, role: Role) -> frozenset[Permission]:
        return self._grants.get(role, frozenset())

    def __contains__(self, role: object) -> bool:
        return role in self._grants

    def __iter__(self):
        return iter(self._hierarchy)


_VIEWER = {
    Permission.VIEW_ANALYSIS,
    Permission.VIEW_USERS,
    Permission.VIEW_ORGANIZATION,
    Permission.VIEW_ANALYTICS,
}

_ANALYST = _VIEWER | {
    Permission.CREATE_ANALYSIS,
    Permission.EDIT_ANALYSIS,
    Permission.EXPORT_ANALYSIS,
}

_MANAGER = _ANALYST | {
    Permission.DELETE_ANALYSIS,
    Permission.INVITE_USERS,
    Permission.MANAGE_USERS,
    Permission.VIEW_BILLING,
    Permission.VIEW_ADVANCED_ANALYTICS,
    Permission.VIEW_AUDIT_LOGS,
}

_ADMIN = _MANAGER | {
    Permission.REMOVE_USERS,
    Permission.EDIT_ORGANIZATION,
    Permission.MANAGE_BILLING,
}

DEFAULT_ROLE_PERMISSIONS = RolePermissionMap(
    {
        Role.VIEWER: _VIEWER,
        Role.ANALYST: _ANALYST,
        Role.MANAGER: _MANAGER,
        Role.ADMIN: _ADMIN,
    }
)


__all__ = [
    "Role",
    "Permission",
    "RolePermissionMap",
    "DEFAULT_ROLE_PERMISSIONS",
]
