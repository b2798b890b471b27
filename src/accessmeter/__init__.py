"""
accessmeter - access control and usage metering for multi-tenant SaaS.

For every request the core decides:
- whether the principal's role grants the required permission
- whether the principal's plan still has quota for a metered operation

Components:
- billing.plans: plan catalog and feature lookups
- auth: roles, permissions and the capability resolver
- quota: billing periods, counter stores and the quota ledger
- access: the access gate and its FastAPI dependency
- analytics: admin quota rollups
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get package version."""
    return __version__


__all__ = ["__version__", "get_version"]
