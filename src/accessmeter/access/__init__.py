"""
Request authorization: the access gate, its decisions and FastAPI wiring.
"""

from accessmeter.decisions import (
    Allow,
    AuthenticationRequired,
    Consumed,
    Decision,
    FeatureUnavailable,
    PermissionDenied,
    QuotaExceeded,
    StorageUnavailable,
)

from .gate import AccessGate

__all__ = [
    "AccessGate",
    "Allow",
    "AuthenticationRequired",
    "Consumed",
    "Decision",
    "FeatureUnavailable",
    "PermissionDenied",
    "QuotaExceeded",
    "StorageUnavailable",
]
