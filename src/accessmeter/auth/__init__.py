"""
Authorization primitives: roles, permissions and capability resolution.
"""

from .permissions import DEFAULT_ROLE_PERMISSIONS, Permission, Role, RolePermissionMap
from .principal import Principal
from .resolver import UNRANKED, RoleCapabilityResolver

__all__ = [
    "DEFAULT_ROLE_PERMISSIONS",
    "Permission",
    "Principal",
    "Role",
    "RoleCapabilityResolver",
    "RolePermissionMap",
    "UNRANKED",
]
