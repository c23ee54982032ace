"""
Claim merging and mapping.

Turns the claims returned by the authority (ID token plus, optionally, the
user-info endpoint) into a Principal, using the configured claim types for
the display name and the role set.
"""

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ..errors import RemoteAuthError, RemoteAuthErrorKind
from ..models import Principal


class ClaimMapping(BaseModel):
    """Which incoming claims populate the principal's name and roles."""

    model_config = ConfigDict(frozen=True)

    name_claim_type: str = "name"
    role_claim_type: str = "role"


def merge_claims(id_token_claims: Mapping[str, Any], user_info: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge user-info claims over ID token claims.

    User-info values win. The ``sub`` of both must agree (OIDC Core 5.3.2).

    Raises:
        RemoteAuthError: INVALID_TOKEN if the subjects differ
    """
    merged = dict(id_token_claims)
    if not user_info:
        return merged

    info_sub = user_info.get("sub")
    if info_sub is not None and merged.get("sub") is not None and info_sub != merged["sub"]:
        raise RemoteAuthError(
            RemoteAuthErrorKind.INVALID_TOKEN,
            "The user info subject does not match the ID token subject.",
        )

    merged.update(user_info)
    return merged


def extract_email_from_claims(claims: Mapping[str, Any]) -> Optional[str]:
    """
    Extract an email address from claims.

    Authorities differ in which claim carries it, so try the common ones in
    order of preference.
    """
    for claim_name in ["email", "preferred_username", "upn"]:
        email = claims.get(claim_name)
        if isinstance(email, str) and "@" in email:
            return email.lower().strip()

    return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None and str(v)]
    return [str(value)]


def map_claims(claims: Mapping[str, Any], mapping: ClaimMapping) -> Principal:
    """
    Build a Principal from merged claims.

    Args:
        claims: Merged claims, must contain ``sub``
        mapping: Claim types for name and role

    Returns:
        Principal with name and roles taken from the mapped claim types

    Raises:
        RemoteAuthError: INVALID_TOKEN if the subject is missing
    """
    subject = claims.get("sub")
    if not subject:
        raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "The identity token has no subject.")

    name = claims.get(mapping.name_claim_type)
    roles = list(dict.fromkeys(_as_list(claims.get(mapping.role_claim_type))))

    return Principal(
        subject=str(subject),
        name=str(name) if name else None,
        email=extract_email_from_claims(claims),
        roles=roles,
        claims=dict(claims),
    )
