"""
Error Taxonomy
==============

Exceptions shared by the configuration loader, the OIDC login gateway and the
identity layer.

- ConfigError: fatal at startup, the process does not start.
- RemoteAuthError: per-request failure of the external login, always turned
  into a redirect back to the login page.
- AuthError: local sign-in refused after a successful external login.
- ChallengeRequired: an anonymous request hit a protected page.
"""

from enum import Enum
from typing import Optional


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigErrorReason(str, Enum):
    """Why startup configuration was rejected."""

    MISSING_FIELD = "MissingField"
    UNKNOWN_SCHEME = "UnknownScheme"
    INVALID_VALUE = "InvalidValue"


class ConfigError(Exception):
    """
    Startup configuration is missing or inconsistent.

    Attributes:
        reason: ConfigErrorReason describing the failure
        field: Configuration key or scheme name at fault
        message: Human-readable description
    """

    def __init__(self, reason: ConfigErrorReason, field: str, message: Optional[str] = None):
        self.reason = reason
        self.field = field
        self.message = message or f"{reason.value}: {field}"
        super().__init__(self.message)


# =============================================================================
# Remote Authentication Errors
# =============================================================================

class RemoteAuthErrorKind(str, Enum):
    """Failure causes of a remote (federated) login attempt."""

    NETWORK_FAILURE = "NetworkFailure"
    INVALID_CODE = "InvalidCode"
    STATE_MISMATCH = "StateMismatch"
    CONSENT_DENIED = "ConsentDenied"
    TIMEOUT = "Timeout"
    INVALID_TOKEN = "InvalidToken"


class RemoteAuthError(Exception):
    """
    The authority rejected the login, or could not be reached.

    The message is shown to the user on the login page, so it must never
    carry secrets or transport internals. Leave it as None when there is
    nothing useful to show.
    """

    def __init__(self, kind: RemoteAuthErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message
        super().__init__(message or kind.value)


# =============================================================================
# Local Sign-in Errors
# =============================================================================

class AuthErrorReason(str, Enum):
    ACCOUNT_NOT_CONFIRMED = "AccountNotConfirmed"


class AuthError(Exception):
    """Local sign-in was refused by the identity policy."""

    def __init__(self, reason: AuthErrorReason, message: str, user_id: Optional[str] = None):
        self.reason = reason
        self.message = message
        self.user_id = user_id
        super().__init__(message)


class ChallengeRequired(Exception):
    """Raised by route dependencies when the request has no application session."""

    def __init__(self, return_url: str = "/"):
        self.return_url = return_url
        super().__init__(f"Authentication required for {return_url}")


__all__ = [
    "ConfigError",
    "ConfigErrorReason",
    "RemoteAuthError",
    "RemoteAuthErrorKind",
    "AuthError",
    "AuthErrorReason",
    "ChallengeRequired",
]
