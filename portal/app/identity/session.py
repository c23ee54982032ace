"""
JWT Session Tokens
==================

Creation and verification of the application session token carried in the
application cookie. Tokens are HS256-signed with the configured session
secret and must carry ``sub`` (local user id), ``iat``, ``exp`` and ``iss``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

logger = logging.getLogger(__name__)

SESSION_ALGORITHM = "HS256"
SESSION_ISSUER = "oidc-portal"


class JWTSessionError(Exception):
    """Base exception for JWT session errors"""
    pass


def create_session_jwt(
    claims: Dict[str, Any],
    secret: str,
    expires_in_minutes: int,
    issuer: str = SESSION_ISSUER,
) -> str:
    """
    Create a session JWT with the provided claims.

    Args:
        claims: Claims to include. Must contain 'sub' (local user id).
        secret: HMAC signing secret
        expires_in_minutes: Session lifetime
        issuer: Value of the 'iss' claim

    Returns:
        Encoded JWT string

    Raises:
        JWTSessionError: If the claims are incomplete or encoding fails

    Example:
        >>> token = create_session_jwt({"sub": "user-1", "name": "Ada"}, "s" * 32, 60)
    """
    if not secret:
        raise JWTSessionError("Session secret not configured")

    payload = claims.copy()
    if not payload.get("sub"):
        raise JWTSessionError("Missing required claim: 'sub' (subject/user ID)")

    now = datetime.now(timezone.utc)
    payload.update({
        "iat": now,
        "exp": now + timedelta(minutes=expires_in_minutes),
        "iss": issuer,
    })

    try:
        token = jwt.encode(payload, secret, algorithm=SESSION_ALGORITHM)
    except Exception as e:
        logger.error(f"Failed to create session JWT: {e}", exc_info=True)
        raise JWTSessionError(f"Failed to create session JWT: {str(e)}") from e

    logger.debug(
        "Created session JWT",
        extra={"user_id": payload.get("sub"), "expires_in_minutes": expires_in_minutes},
    )
    return token


def verify_session_jwt(token: Optional[str], secret: str, issuer: str = SESSION_ISSUER) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a session JWT.

    Returns None for a missing, expired, tampered or foreign token; a bad
    cookie means "not signed in", never an error page.

    Args:
        token: JWT string from the application cookie
        secret: HMAC verification secret
        issuer: Expected 'iss' claim

    Returns:
        Decoded claims, or None
    """
    if not token:
        return None

    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[SESSION_ALGORITHM],
            issuer=issuer,
            options={"require": ["exp", "iat", "sub", "iss"]},
        )
    except ExpiredSignatureError:
        logger.info("Session token expired")
        return None
    except InvalidTokenError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


__all__ = [
    "create_session_jwt",
    "verify_session_jwt",
    "JWTSessionError",
    "SESSION_ALGORITHM",
    "SESSION_ISSUER",
]
