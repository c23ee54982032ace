"""
Shared fixtures: settings, a scripted OIDC client and a test client that
talks HTTPS to the composed application.
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from portal.app.auth.oidc_client import OidcMetadata
from portal.app.config import Settings
from portal.app.main import create_app
from portal.app.models import LocalUser, TokenSet

AUTHORITY = "https://idp.example.com"
CLIENT_ID = "portal-client"
SESSION_SECRET = "test-session-secret-0123456789abcdef"
SUBJECT = "subject-1"


def make_settings(**overrides) -> Settings:
    values: Dict[str, Any] = {
        "OpenIdConnect": {
            "Authority": AUTHORITY,
            "ClientId": CLIENT_ID,
            "ClientSecret": "client-secret",
        },
        "ConnectionStrings": {"DefaultConnection": "sqlite://"},
        "SESSION_SECRET": SESSION_SECRET,
        "ENVIRONMENT": "Production",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeOidcClient:
    """OidcClient with scripted answers; records every code exchange."""

    def __init__(self):
        self.claims: Dict[str, Any] = {
            "sub": SUBJECT,
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "role": ["admin", "staff"],
        }
        self.user_info: Dict[str, Any] = {}
        self.metadata_error: Optional[BaseException] = None
        self.exchange_error: Optional[BaseException] = None
        self.user_info_error: Optional[BaseException] = None
        self.exchanges: List[Dict[str, Any]] = []
        self.user_info_calls = 0

    async def metadata(self) -> OidcMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        return OidcMetadata.fallback(AUTHORITY)

    async def exchange_code(self, code, redirect_uri, code_verifier=None, nonce=None) -> TokenSet:
        self.exchanges.append(
            {"code": code, "redirect_uri": redirect_uri, "code_verifier": code_verifier, "nonce": nonce}
        )
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenSet(
            id_token="id-token",
            access_token="access-token",
            refresh_token="refresh-token",
            expires_at=2000000000,
            claims=dict(self.claims, nonce=nonce),
        )

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        self.user_info_calls += 1
        if self.user_info_error is not None:
            raise self.user_info_error
        return dict(self.user_info)


class RecordingEmailSender:
    def __init__(self):
        self.links: List[str] = []

    async def send_confirmation_link(self, user: LocalUser, email: str, confirmation_link: str) -> None:
        self.links.append(confirmation_link)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def oidc_client():
    return FakeOidcClient()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def app(settings, oidc_client, email_sender):
    return create_app(settings, oidc_client=oidc_client, email_sender=email_sender)


@pytest.fixture
def client(app):
    with TestClient(app, base_url="https://testserver", raise_server_exceptions=False) as test_client:
        yield test_client


# =============================================================================
# Flow Helpers
# =============================================================================

def start_login(client: TestClient, return_url: str = "/auth") -> Dict[str, str]:
    """Run the challenge and return the authorization request parameters."""
    response = client.get(
        "/Account/ExternalLogin",
        params={"provider": "oidc", "ReturnUrl": return_url},
        follow_redirects=False,
    )
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(f"{AUTHORITY}/authorize?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def callback(client: TestClient, **params: str):
    return client.get("/signin-oidc", params=params, follow_redirects=False)


def antiforgery_token(html: str) -> str:
    match = re.search(r'name="__RequestVerificationToken" value="([^"]+)"', html)
    assert match, "page has no anti-forgery field"
    return match.group(1)


def confirm_account(app, subject: str = SUBJECT) -> None:
    store = app.state.portal.store
    user = store.find_by_login("oidc", subject)
    assert store.confirm_email(user.id, store.generate_confirmation_code(user.id))


def sign_in(client: TestClient, app, return_url: str = "/auth"):
    """Complete a successful login for the scripted subject."""
    confirm_needed = app.state.portal.store.find_by_login("oidc", SUBJECT) is None
    if confirm_needed:
        # First login creates the account, which must be confirmed before sign-in.
        params = start_login(client, return_url)
        callback(client, code="first-code", state=params["state"])
        confirm_account(app)

    params = start_login(client, return_url)
    response = callback(client, code="auth-code", state=params["state"])
    assert response.status_code == 302
    return response
