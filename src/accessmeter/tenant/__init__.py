"""
Tenant state: organizations, accounts and invitations.
"""

from .models import Account, Invitation, InvitationState, Organization, OrgMembership
from .repository import InMemoryTenantRepository, TenantRepository

__all__ = [
    "Account",
    "InMemoryTenantRepository",
    "Invitation",
    "InvitationState",
    "OrgMembership",
    "Organization",
    "TenantRepository",
]
