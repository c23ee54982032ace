"""
OIDC login gateway.

Runs the federated login:

1. ``build_challenge`` sends the user agent to the authority with a fresh
   state, nonce and PKCE challenge.
2. ``handle_callback`` validates the correlation, exchanges the code,
   optionally pulls user-info claims, maps claims and signs the user in.

Any failure of the remote part ends in a redirect to the login page carrying a
readable message. Nothing the authority sends back escapes the callback as an
exception; only local faults (the identity store) reach the error page.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
from enum import Enum
from typing import Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel

from ..config import OidcSettings
from ..errors import AuthError, AuthErrorReason, RemoteAuthError, RemoteAuthErrorKind
from ..identity.manager import ACCOUNT_HAS_NO_EMAIL_MESSAGE, SignInManager
from ..models import FailureEvent, LoginCorrelation, Principal, SessionCookie, SignInResult, TokenSet
from .claims import ClaimMapping, map_claims, merge_claims
from .oidc_client import OidcClient

logger = logging.getLogger(__name__)

LOGIN_PATH = "/Account/Login"
DEFAULT_FAILURE_MESSAGE = "Authentication failed"


# =============================================================================
# Failure Path
# =============================================================================

def failure_message(cause: Optional[BaseException]) -> str:
    """Readable message for a failed attempt, never blank."""
    if cause is None:
        return DEFAULT_FAILURE_MESSAGE

    if isinstance(cause, (RemoteAuthError, AuthError)):
        message = cause.message
    else:
        message = str(cause)

    if not message or not message.strip():
        return DEFAULT_FAILURE_MESSAGE
    return message.strip()


def failure_redirect(cause: Optional[BaseException]) -> str:
    """
    Login page URL carrying the failure message.

    The message is percent-encoded with nothing but RFC 3986 unreserved
    characters left as-is, so it decodes back to the same text.

    Example:
        >>> failure_redirect(None)
        '/Account/Login?error=Authentication%20failed'
    """
    return f"{LOGIN_PATH}?error={quote(failure_message(cause), safe='')}"


# =============================================================================
# Login Attempt State Machine
# =============================================================================

class LoginState(str, Enum):
    PENDING = "Pending"
    EXCHANGING = "Exchanging"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


_TRANSITIONS = {
    LoginState.PENDING: {LoginState.EXCHANGING},
    LoginState.EXCHANGING: {LoginState.SUCCEEDED, LoginState.FAILED},
    LoginState.SUCCEEDED: set(),
    LoginState.FAILED: set(),
}


class LoginAttempt:
    """One login attempt, from callback arrival to its single outcome."""

    def __init__(self):
        self.state = LoginState.PENDING
        self.failure: Optional[FailureEvent] = None

    def _move(self, target: LoginState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal login transition {self.state.value} -> {target.value}")
        self.state = target

    def begin_exchange(self) -> None:
        self._move(LoginState.EXCHANGING)

    def succeed(self) -> None:
        self._move(LoginState.SUCCEEDED)

    def fail(self, cause: Optional[BaseException]) -> str:
        """Record the failure and return the redirect target."""
        self._move(LoginState.FAILED)
        self.failure = FailureEvent(message=failure_message(cause))
        return failure_redirect(cause)


class CallbackOutcome(BaseModel):
    """What the callback endpoint has to send back: a redirect, maybe with a cookie."""
    redirect_url: str
    cookie: Optional[SessionCookie] = None
    result: Optional[SignInResult] = None
    state: LoginState


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """S256 code challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def safe_return_url(return_url: Optional[str]) -> str:
    """Only local absolute paths are allowed as post-login targets."""
    if not return_url or not return_url.startswith("/"):
        return "/"
    if return_url.startswith("//") or "\\" in return_url:
        return "/"
    return return_url


# =============================================================================
# Gateway
# =============================================================================

class OidcLoginGateway:
    """
    Federated login against one OIDC authority.

    Args:
        settings: Validated OIDC settings
        client: Back-channel OIDC client
        identity: Sign-in manager establishing local sessions
        provider: Scheme name recorded on the external login
        mapping: Claim types for name and roles
    """

    def __init__(
        self,
        settings: OidcSettings,
        client: OidcClient,
        identity: SignInManager,
        provider: str = "oidc",
        mapping: Optional[ClaimMapping] = None,
    ):
        self.settings = settings
        self.client = client
        self.identity = identity
        self.provider = provider
        self.mapping = mapping or ClaimMapping()

    def redirect_uri(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}{self.settings.callback_path}"

    async def build_challenge(self, base_url: str, return_url: Optional[str] = "/") -> Tuple[str, LoginCorrelation]:
        """
        Build the authorization request for a new login attempt.

        Args:
            base_url: Public base URL of this application
            return_url: Local page to return to after sign-in

        Returns:
            (authorization URL, correlation to keep until the callback)

        Raises:
            RemoteAuthError: If the authority metadata cannot be obtained
        """
        meta = await self._call_authority(self.client.metadata())

        code_verifier = generate_code_verifier()
        correlation = LoginCorrelation(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            code_verifier=code_verifier,
            redirect_uri=self.redirect_uri(base_url),
            return_url=safe_return_url(return_url),
        )

        params = {
            "client_id": self.settings.client_id,
            "response_type": self.settings.response_type,
            "scope": self.settings.scope,
            "redirect_uri": correlation.redirect_uri,
            "state": correlation.state,
            "nonce": correlation.nonce,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if self.settings.response_type != "code":
            params["response_mode"] = "form_post"

        separator = "&" if "?" in meta.authorization_endpoint else "?"
        authorization_url = f"{meta.authorization_endpoint}{separator}{urlencode(params)}"

        logger.info("Issuing OIDC challenge", extra={"return_url": correlation.return_url})
        return authorization_url, correlation

    async def handle_callback(
        self,
        params: Mapping[str, str],
        correlation: Optional[LoginCorrelation],
        base_url: str,
    ) -> CallbackOutcome:
        """
        Complete a login attempt from the authority's callback parameters.

        Never raises for anything the authority sends: remote failures and
        sign-in refusals end in a redirect to the login page with the failure
        message.

        Args:
            params: Callback query or form parameters (code, state, error, ...)
            correlation: Correlation stored when the challenge was issued
            base_url: Public base URL, used for confirmation links

        Returns:
            CallbackOutcome with the redirect and, on success, the session cookie
        """
        attempt = LoginAttempt()
        attempt.begin_exchange()

        try:
            result = await self._complete(params, correlation, base_url)
        except (RemoteAuthError, AuthError) as cause:
            redirect_url = attempt.fail(cause)
            logger.warning(
                "Remote authentication failed",
                extra={
                    "kind": getattr(cause, "kind", getattr(cause, "reason", None)),
                    "failure_message": attempt.failure.message,
                },
            )
            return CallbackOutcome(redirect_url=redirect_url, state=attempt.state)

        attempt.succeed()
        return CallbackOutcome(
            redirect_url=result.return_url,
            cookie=result.cookie,
            result=result,
            state=attempt.state,
        )

    async def _complete(
        self,
        params: Mapping[str, str],
        correlation: Optional[LoginCorrelation],
        base_url: str,
    ) -> SignInResult:
        error = params.get("error")
        if error:
            kind = RemoteAuthErrorKind.CONSENT_DENIED if error == "access_denied" else RemoteAuthErrorKind.INVALID_CODE
            raise RemoteAuthError(kind, params.get("error_description") or error)

        state = params.get("state")
        if correlation is None or not state or not secrets.compare_digest(state, correlation.state):
            raise RemoteAuthError(RemoteAuthErrorKind.STATE_MISMATCH, "Invalid or expired login state.")

        code = params.get("code")
        if not code:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_CODE, "The authority returned no authorization code.")

        tokens, principal = await self._remote_identity(code, correlation)

        user = await self.identity.find_or_create(self.provider, principal)
        try:
            cookie = await self.identity.begin_session(
                user,
                self.provider,
                tokens if self.settings.save_tokens else None,
            )
        except AuthError:
            if await self.identity.send_confirmation(user, base_url) is None:
                raise AuthError(
                    AuthErrorReason.ACCOUNT_NOT_CONFIRMED,
                    ACCOUNT_HAS_NO_EMAIL_MESSAGE,
                    user_id=user.id,
                )
            raise

        return SignInResult(user=user, cookie=cookie, return_url=correlation.return_url)

    async def _remote_identity(self, code: str, correlation: LoginCorrelation) -> Tuple[TokenSet, Principal]:
        """
        Exchange the code, pull user-info claims and map them to a principal.

        Whatever the authority sends back, this raises nothing but
        RemoteAuthError; unexpected failures become INVALID_TOKEN with no
        message, so the user sees the default failure text.
        """
        try:
            tokens = await self._call_authority(
                self.client.exchange_code(
                    code=code,
                    redirect_uri=correlation.redirect_uri,
                    code_verifier=correlation.code_verifier,
                    nonce=correlation.nonce,
                )
            )

            user_info = None
            if self.settings.get_claims_from_user_info_endpoint:
                user_info = await self._call_authority(self.client.fetch_user_info(tokens.access_token))

            return tokens, map_claims(merge_claims(tokens.claims, user_info), self.mapping)
        except RemoteAuthError:
            raise
        except Exception as e:
            logger.warning(
                f"Unusable response from the authority: {type(e).__name__}",
                exc_info=True,
            )
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN) from e

    async def _call_authority(self, call):
        """Await a back-channel call, folding transport errors into RemoteAuthError."""
        try:
            return await call
        except RemoteAuthError:
            raise
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RemoteAuthError(RemoteAuthErrorKind.TIMEOUT) from e
        except (httpx.HTTPError, OSError) as e:
            raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE) from e
