"""
Data Models Module

Pydantic models passed between the OIDC login gateway, the OIDC client and
the identity layer.

Models are organized by functional area:
- External identity (tokens and the mapped principal)
- Login correlation (state carried across the redirect to the authority)
- Local identity (users and session cookies)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# External Identity Models
# ============================================================================

class TokenSet(BaseModel):
    """Result of a successful authorization code exchange."""
    id_token: str = Field(..., description="Raw ID token issued by the authority")
    access_token: str = Field(..., description="Access token for the user-info endpoint")
    refresh_token: Optional[str] = Field(None, description="Refresh token, if the authority issued one")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_at: Optional[int] = Field(None, description="Access token expiry as a UNIX timestamp")
    claims: Dict[str, Any] = Field(default_factory=dict, description="Validated ID token claims")

    def as_stored_tokens(self) -> Dict[str, str]:
        """Token name/value pairs in the form the identity store keeps them."""
        stored = {
            "id_token": self.id_token,
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        if self.refresh_token:
            stored["refresh_token"] = self.refresh_token
        if self.expires_at is not None:
            stored["expires_at"] = datetime.fromtimestamp(self.expires_at, tz=timezone.utc).isoformat()
        return stored


class Principal(BaseModel):
    """External identity after claim mapping."""
    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., description="Subject identifier at the authority")
    name: Optional[str] = Field(None, description="Display name from the configured name claim")
    email: Optional[str] = Field(None, description="Email address")
    roles: List[str] = Field(default_factory=list, description="Roles from the configured role claim")
    claims: Dict[str, Any] = Field(default_factory=dict, description="All merged claims")


# ============================================================================
# Login Correlation Models
# ============================================================================

class LoginCorrelation(BaseModel):
    """Values generated for one login attempt and checked on the callback."""
    state: str = Field(..., description="Opaque anti-CSRF value echoed by the authority")
    nonce: str = Field(..., description="Replay protection value bound into the ID token")
    code_verifier: str = Field(..., description="PKCE verifier")
    redirect_uri: str = Field(..., description="Absolute callback URI sent to the authority")
    return_url: str = Field(default="/", description="Local page to land on after sign-in")


class FailureEvent(BaseModel):
    """One failed remote authentication attempt."""
    message: str


# ============================================================================
# Local Identity Models
# ============================================================================

class LocalUser(BaseModel):
    """A user record owned by the identity store."""
    id: str
    user_name: str
    email: Optional[str] = None
    email_confirmed: bool = False
    roles: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class SessionCookie(BaseModel):
    """Application session cookie to set on the response."""
    name: str
    value: str
    max_age: int = Field(..., description="Cookie lifetime in seconds")


class SignInResult(BaseModel):
    """Outcome of a completed login attempt."""
    user: LocalUser
    cookie: SessionCookie
    return_url: str = "/"
