"""Authenticated actor for a request, as supplied by the identity layer."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    """Verified principal.

    ``role`` is kept as the raw string the identity layer returned; it is only
    interpreted by the capability resolver. ``email``, when supplied, must
    match the address an invitation was sent to before it can be accepted.
    """

    id: str
    role: str | None
    plan_id: str
    organization_id: str | None = None
    email_verified: bool = True
    email: str | None = None
