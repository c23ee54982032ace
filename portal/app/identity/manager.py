"""
Sign-in manager.

Sits between the OIDC login gateway and the identity store: links external
logins to local users, enforces the confirmed-account policy, saves tokens
and issues the application session cookie.

Store calls are blocking database I/O and run in the thread pool.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from starlette.concurrency import run_in_threadpool

from ..auth.schemes import AuthenticationScheme
from ..errors import AuthError, AuthErrorReason
from ..models import LocalUser, Principal, SessionCookie, TokenSet
from .email import EmailSender, NoOpEmailSender
from .session import create_session_jwt, verify_session_jwt
from .store import IdentityStore

logger = logging.getLogger(__name__)

ACCOUNT_NOT_CONFIRMED_MESSAGE = "Sign-in refused: confirm your account email before signing in."
ACCOUNT_HAS_NO_EMAIL_MESSAGE = (
    "Sign-in refused: the identity provider sent no email address, so the account cannot be confirmed."
)


class SignInManager:
    """
    Establishes local sessions for externally authenticated users.

    Args:
        store: Identity store
        session_secret: Secret signing the session token
        application_scheme: Scheme whose cookie carries the session
        expiry_minutes: Session lifetime
        require_confirmed_account: Refuse sign-in for unconfirmed users
        email_sender: Delivers account confirmation links
    """

    def __init__(
        self,
        store: IdentityStore,
        session_secret: str,
        application_scheme: AuthenticationScheme,
        expiry_minutes: int = 60,
        require_confirmed_account: bool = True,
        email_sender: Optional[EmailSender] = None,
    ):
        self.store = store
        self._secret = session_secret
        self.scheme = application_scheme
        self.expiry_minutes = expiry_minutes
        self.require_confirmed_account = require_confirmed_account
        self.email_sender = email_sender or NoOpEmailSender()

    @property
    def cookie_name(self) -> str:
        return self.scheme.cookie_name or self.scheme.name

    async def find_or_create(self, provider: str, principal: Principal) -> LocalUser:
        return await run_in_threadpool(self.store.find_or_create, provider, principal.subject, principal)

    async def begin_session(
        self,
        user: LocalUser,
        provider: str,
        tokens: Optional[TokenSet] = None,
    ) -> SessionCookie:
        """
        Sign the user in and return the application cookie.

        Tokens are saved when given; otherwise any previously saved tokens of
        this login are dropped.

        Raises:
            AuthError: ACCOUNT_NOT_CONFIRMED if the policy requires a
                       confirmed account and the user has none
        """
        if self.require_confirmed_account and not user.email_confirmed:
            logger.info("Refusing sign-in for unconfirmed account", extra={"user_id": user.id})
            raise AuthError(AuthErrorReason.ACCOUNT_NOT_CONFIRMED, ACCOUNT_NOT_CONFIRMED_MESSAGE, user_id=user.id)

        if tokens is not None:
            await run_in_threadpool(self.store.set_tokens, user.id, provider, tokens.as_stored_tokens())
        else:
            await run_in_threadpool(self.store.remove_tokens, user.id, provider)

        value = create_session_jwt(
            {
                "sub": user.id,
                "name": user.user_name,
                "email": user.email,
                "roles": list(user.roles),
                "amr": provider,
            },
            self._secret,
            self.expiry_minutes,
        )

        logger.info("Signed in", extra={"user_id": user.id, "provider": provider})
        return SessionCookie(name=self.cookie_name, value=value, max_age=self.expiry_minutes * 60)

    def read_session(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        return verify_session_jwt(token, self._secret)

    async def validate_session(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Session claims, re-checked against the identity store.

        A valid cookie only counts while its user still exists and, under the
        confirmed-account policy, still has a confirmed email.

        Returns:
            The session claims, or None when the request is anonymous
        """
        claims = self.read_session(token)
        if claims is None:
            return None

        user = await run_in_threadpool(self.store.get, claims.get("sub"))
        if user is None:
            logger.info("Session user no longer exists", extra={"user_id": claims.get("sub")})
            return None
        if self.require_confirmed_account and not user.email_confirmed:
            logger.info("Session user is no longer confirmed", extra={"user_id": user.id})
            return None
        return claims

    async def sign_out(self, user_id: str) -> None:
        await run_in_threadpool(self.store.remove_tokens, user_id)
        logger.info("Signed out", extra={"user_id": user_id})

    async def send_confirmation(self, user: LocalUser, base_url: str) -> Optional[str]:
        """
        Issue a fresh confirmation code and hand the link to the email sender.

        Returns:
            The confirmation link, or None if the user has no email address
        """
        if not user.email:
            logger.warning("Cannot send confirmation link, user has no email", extra={"user_id": user.id})
            return None

        code = await run_in_threadpool(self.store.generate_confirmation_code, user.id)
        link = f"{base_url.rstrip('/')}/Account/ConfirmEmail?{urlencode({'userId': user.id, 'code': code})}"
        await self.email_sender.send_confirmation_link(user, user.email, link)
        return link

    async def confirm_email(self, user_id: str, code: str) -> bool:
        return await run_in_threadpool(self.store.confirm_email, user_id, code)

    async def get_tokens(self, user_id: str, provider: str) -> Dict[str, str]:
        return await run_in_threadpool(self.store.get_tokens, user_id, provider)
