"""
OpenID Connect client.

This module handles the back-channel half of the login flow:
- Discovering the authority's endpoints (with a conventional fallback)
- Exchanging an authorization code for tokens
- Fetching, caching and applying the authority's JWKS to verify ID tokens
- Calling the user-info endpoint

The gateway only depends on the ``OidcClient`` protocol, so tests can swap in
a fake. Every failure surfaces as RemoteAuthError; nothing is retried.
"""

import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx
from jose import JOSEError, jwk, jwt
from pydantic import BaseModel, ConfigDict

from ..config import OidcSettings
from ..errors import RemoteAuthError, RemoteAuthErrorKind
from ..models import TokenSet

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]
CLOCK_SKEW_SECONDS = 10
JWKS_CACHE_SECONDS = 3600


# =============================================================================
# Metadata
# =============================================================================

class OidcMetadata(BaseModel):
    """Subset of the discovery document the portal uses."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None

    @classmethod
    def fallback(cls, authority: str) -> "OidcMetadata":
        """Conventional endpoint layout under the authority URL."""
        return cls(
            issuer=authority,
            authorization_endpoint=f"{authority}/authorize",
            token_endpoint=f"{authority}/token",
            jwks_uri=f"{authority}/jwks",
            userinfo_endpoint=f"{authority}/userinfo",
        )


class OidcClient(Protocol):
    """Back-channel operations the login gateway needs from an OIDC client."""

    async def metadata(self) -> OidcMetadata:
        ...

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str],
        nonce: Optional[str],
    ) -> TokenSet:
        ...

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        ...


# =============================================================================
# httpx Implementation
# =============================================================================

class HttpxOidcClient:
    """
    OidcClient backed by an httpx.AsyncClient.

    The HTTP client timeout is the configured back-channel timeout, so a slow
    authority fails the attempt with TIMEOUT instead of hanging the request.
    """

    def __init__(
        self,
        settings: OidcSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        jwks_cache_seconds: int = JWKS_CACHE_SECONDS,
    ):
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.backchannel_timeout)
        self._jwks_cache_seconds = jwks_cache_seconds
        self._metadata: Optional[OidcMetadata] = None
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_time: float = 0.0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def metadata(self) -> OidcMetadata:
        """
        Return the authority metadata, fetching the discovery document once.

        An unreachable or invalid discovery document falls back to the
        conventional endpoints without caching the fallback, so discovery is
        retried on the next login.
        """
        if self._metadata is not None:
            return self._metadata

        authority = self._settings.authority
        discovery_url = f"{authority}/.well-known/openid-configuration"

        try:
            response = await self._client.get(discovery_url)
            response.raise_for_status()
            self._metadata = OidcMetadata.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                f"Discovery document unavailable, using default endpoints: {e}",
                extra={"authority": authority},
            )
            return OidcMetadata.fallback(authority)

        logger.info("Loaded discovery document", extra={"issuer": self._metadata.issuer})
        return self._metadata

    # -------------------------------------------------------------------------
    # Code Exchange
    # -------------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> TokenSet:
        """
        Exchange an authorization code for tokens and validate the ID token.

        Args:
            code: Authorization code from the callback
            redirect_uri: Redirect URI (must match the one used in the challenge)
            code_verifier: PKCE code verifier
            nonce: Nonce sent in the challenge; must match the ID token

        Returns:
            TokenSet with the validated ID token claims

        Raises:
            RemoteAuthError: TIMEOUT, NETWORK_FAILURE, INVALID_CODE or INVALID_TOKEN
        """
        meta = await self.metadata()

        payload = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret.get_secret_value(),
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            response = await self._client.post(
                meta.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            logger.warning("Token exchange timed out", extra={"token_endpoint": meta.token_endpoint})
            raise RemoteAuthError(RemoteAuthErrorKind.TIMEOUT) from e
        except httpx.HTTPError as e:
            logger.warning(f"Token exchange failed: {e}", extra={"token_endpoint": meta.token_endpoint})
            raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE) from e

        if not response.is_success:
            error_data = _json_or_empty(response)
            logger.warning(
                "Token endpoint rejected the code",
                extra={"status_code": response.status_code, "error": error_data.get("error")},
            )
            if response.status_code >= 500:
                raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE)
            error_msg = error_data.get("error_description") or error_data.get("error") or "Token exchange failed"
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_CODE, error_msg)

        token_data = _json_or_empty(response)
        id_token = token_data.get("id_token")
        access_token = token_data.get("access_token")
        if not id_token or not isinstance(id_token, str):
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Token response missing id_token")
        if not access_token or not isinstance(access_token, str):
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Token response missing access_token")

        claims = await self.verify_id_token(id_token, access_token=access_token, nonce=nonce)

        expires_at = None
        expires_in = token_data.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = int(time.time()) + int(expires_in)
            except (TypeError, ValueError):
                expires_at = None

        return TokenSet(
            id_token=id_token,
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type") or "Bearer",
            expires_at=expires_at,
            claims=claims,
        )

    # -------------------------------------------------------------------------
    # ID Token Verification
    # -------------------------------------------------------------------------

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the authority's JWKS with caching.

        Raises:
            RemoteAuthError: TIMEOUT, NETWORK_FAILURE or INVALID_TOKEN
        """
        now = time.time()
        if not force_refresh and self._jwks and (now - self._jwks_time) < self._jwks_cache_seconds:
            return self._jwks

        meta = await self.metadata()
        try:
            response = await self._client.get(meta.jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()
        except httpx.TimeoutException as e:
            raise RemoteAuthError(RemoteAuthErrorKind.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE) from e
        except ValueError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Invalid signing key set") from e

        if not isinstance(jwks_data, dict) or not isinstance(jwks_data.get("keys"), list):
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Invalid signing key set")

        self._jwks = jwks_data
        self._jwks_time = now
        return jwks_data

    async def verify_id_token(
        self,
        id_token: str,
        access_token: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify an ID token's signature and claims.

        Audience must be the client id, issuer must match the metadata issuer,
        and the nonce must match the one sent in the challenge.

        Raises:
            RemoteAuthError: INVALID_TOKEN on any validation failure
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except JOSEError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Malformed identity token") from e

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise RemoteAuthError(
                RemoteAuthErrorKind.INVALID_TOKEN,
                f"Unsupported identity token algorithm: {algorithm}",
            )

        kid = header.get("kid")
        jwks = await self.fetch_jwks()
        signing_key = _find_key(jwks, kid)
        if signing_key is None:
            # Keys may have rotated
            jwks = await self.fetch_jwks(force_refresh=True)
            signing_key = _find_key(jwks, kid)
            if signing_key is None:
                raise RemoteAuthError(
                    RemoteAuthErrorKind.INVALID_TOKEN,
                    "Unable to find a matching signing key for the identity token",
                )

        meta = await self.metadata()
        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[algorithm],
                audience=self._settings.client_id,
                issuer=meta.issuer,
                access_token=access_token,
                options={"leeway": CLOCK_SKEW_SECONDS},
            )
        except jwt.ExpiredSignatureError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "The identity token has expired") from e
        except jwt.JWTClaimsError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, f"Invalid identity token claims: {e}") from e
        except JOSEError as e:
            # Also covers JWKError for keys of the wrong type
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Identity token verification failed") from e

        if nonce is not None and claims.get("nonce") != nonce:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Nonce mismatch")

        return claims

    # -------------------------------------------------------------------------
    # User Info
    # -------------------------------------------------------------------------

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """
        Retrieve claims from the user-info endpoint.

        Returns an empty dict when the authority publishes no user-info
        endpoint.

        Raises:
            RemoteAuthError: TIMEOUT, NETWORK_FAILURE or INVALID_TOKEN
        """
        meta = await self.metadata()
        if not meta.userinfo_endpoint:
            return {}

        try:
            response = await self._client.get(
                meta.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise RemoteAuthError(RemoteAuthErrorKind.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE) from e

        if response.status_code >= 500:
            raise RemoteAuthError(RemoteAuthErrorKind.NETWORK_FAILURE)
        if not response.is_success:
            raise RemoteAuthError(
                RemoteAuthErrorKind.INVALID_TOKEN,
                "The user info endpoint rejected the access token.",
            )

        data = _json_or_empty(response)
        if not data:
            raise RemoteAuthError(RemoteAuthErrorKind.INVALID_TOKEN, "Invalid user info response")
        return data


def _find_key(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    keys = [key for key in jwks.get("keys") or [] if isinstance(key, dict)]
    if kid is None:
        # Single-key sets may omit kid
        return keys[0] if len(keys) == 1 else None
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
