"""
Role capability resolution.

Pure functions over an injected RolePermissionMap. Role and permission values
arrive untyped from the identity layer; anything unrecognized is denied.
"""

from collections.abc import Iterable

from accessmeter.auth.permissions import (
    DEFAULT_ROLE_PERMISSIONS,
    Permission,
    Role,
    RolePermissionMap,
)
from accessmeter.exceptions import InvalidRoleError
from accessmeter.logging import get_logger

logger = get_logger(__name__)

# Level of an unrecognized role: below every real level
UNRANKED = float("-inf")


class RoleCapabilityResolver:
    """Answers permission and hierarchy questions for roles."""

    def __init__(self, role_map: RolePermissionMap | None = None) -> None:
        self._map = role_map or DEFAULT_ROLE_PERMISSIONS

    @property
    def role_map(self) -> RolePermissionMap:
        return self._map

    def _known(self, role: object) -> Role | None:
        parsed = Role.parse(role)
        if parsed is None or parsed not in self._map:
            return None
        return parsed

    def has_permission(self, role: object, permission: object) -> bool:
        """Check a single permission. Unknown roles and permissions are denied."""
        known = self._known(role)
        perm = Permission.parse(permission)
        if known is None or perm is None:
            return False
        return perm in self._map.permissions(known)

    def has_any(self, role: object, permissions: Iterable[object]) -> bool:
        return any(self.has_permission(role, p) for p in permissions)

    def has_all(self, role: object, permissions: Iterable[object]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def permissions_of(self, role: object) -> frozenset[Permission]:
        known = self._known(role)
        if known is None:
            return frozenset()
        return self._map.permissions(known)

    def level(self, role: object) -> float:
        """Hierarchy index of a role; UNRANKED for anything unrecognized."""
        known = self._known(role)
        if known is None:
            return UNRANKED
        level = self._map.level(known)
        return UNRANKED if level is None else level

    def can_manage(self, acting_role: object, target_role: object) -> bool:
        """True iff the acting role ranks at or above the target and may manage users.

        Returns False whenever either role is unrecognized, so two malformed
        roles never compare as equal.
        """
        acting = self._known(acting_role)
        target = self._known(target_role)
        if acting is None or target is None:
            if acting_role is not None or target_role is not None:
                logger.warning(
                    "rbac.can_manage.unrecognized_role",
                    acting_role=str(acting_role),
                    target_role=str(target_role),
                )
            return False
        return self.level(acting) >= self.level(target) and self.has_permission(
            acting, Permission.MANAGE_USERS
        )

    def require_role(self, value: object) -> Role:
        """Strictly parse a role that is about to be assigned."""
        known = self._known(value)
        if known is None:
            logger.error("rbac.invalid_role", role=str(value))
            raise InvalidRoleError(value)
        return known


__all__ = ["RoleCapabilityResolver", "UNRANKED"]
