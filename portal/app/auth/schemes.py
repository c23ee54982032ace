"""
Authentication Scheme Registry
==============================

Named authentication schemes and the process-wide choice of default sign-in
and default challenge scheme. The registry is populated exactly once at
startup and is read-only afterwards.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

from ..errors import ConfigError, ConfigErrorReason

logger = logging.getLogger(__name__)


APPLICATION_SCHEME = "Identity.Application"
EXTERNAL_SCHEME = "Identity.External"
OIDC_SCHEME = "oidc"


class SchemeRole(str, Enum):
    APPLICATION_SESSION = "ApplicationSession"
    EXTERNAL_SIGN_IN = "ExternalSignIn"
    OIDC_CHALLENGE = "OidcChallenge"


class AuthenticationScheme(BaseModel):
    """A named authentication mechanism and the cookie carrying its state."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: SchemeRole
    cookie_name: Optional[str] = None


class SchemeRegistry:
    """
    Holds the registered schemes and the two defaults.

    Example:
        >>> registry = SchemeRegistry()
        >>> registry.register(
        ...     [AuthenticationScheme(name="oidc", role=SchemeRole.OIDC_CHALLENGE)],
        ...     default_sign_in="oidc",
        ...     default_challenge="oidc",
        ... )
        >>> registry.default_challenge.name
        'oidc'
    """

    def __init__(self):
        self._schemes: Dict[str, AuthenticationScheme] = {}
        self._default_sign_in: Optional[str] = None
        self._default_challenge: Optional[str] = None
        self._frozen = False

    def register(
        self,
        schemes: Iterable[AuthenticationScheme],
        default_sign_in: str,
        default_challenge: str,
    ) -> None:
        """
        Register all schemes and pick the defaults. Allowed once.

        Args:
            schemes: Schemes to register (names must be unique)
            default_sign_in: Name of the default sign-in scheme
            default_challenge: Name of the default challenge scheme

        Raises:
            RuntimeError: If the registry was already populated
            ConfigError: UNKNOWN_SCHEME if a default is not registered,
                         INVALID_VALUE on duplicate names
        """
        if self._frozen:
            raise RuntimeError("Authentication schemes are already registered")

        by_name: Dict[str, AuthenticationScheme] = {}
        for scheme in schemes:
            if scheme.name in by_name:
                raise ConfigError(
                    ConfigErrorReason.INVALID_VALUE,
                    scheme.name,
                    f"Authentication scheme '{scheme.name}' is registered twice",
                )
            by_name[scheme.name] = scheme

        for label, name in (("default sign-in", default_sign_in), ("default challenge", default_challenge)):
            if name not in by_name:
                raise ConfigError(
                    ConfigErrorReason.UNKNOWN_SCHEME,
                    name,
                    f"The {label} scheme '{name}' is not registered",
                )

        self._schemes = by_name
        self._default_sign_in = default_sign_in
        self._default_challenge = default_challenge
        self._frozen = True

        logger.info(
            "Registered authentication schemes",
            extra={
                "schemes": sorted(by_name),
                "default_sign_in": default_sign_in,
                "default_challenge": default_challenge,
            },
        )

    def _ensure_registered(self) -> None:
        if not self._frozen:
            raise RuntimeError("Authentication schemes have not been registered")

    @property
    def default_sign_in(self) -> AuthenticationScheme:
        self._ensure_registered()
        return self._schemes[self._default_sign_in]

    @property
    def default_challenge(self) -> AuthenticationScheme:
        self._ensure_registered()
        return self._schemes[self._default_challenge]

    def get(self, name: str) -> AuthenticationScheme:
        self._ensure_registered()
        try:
            return self._schemes[name]
        except KeyError:
            raise ConfigError(
                ConfigErrorReason.UNKNOWN_SCHEME,
                name,
                f"Authentication scheme '{name}' is not registered",
            ) from None

    def by_role(self, role: SchemeRole) -> List[AuthenticationScheme]:
        self._ensure_registered()
        return [s for s in self._schemes.values() if s.role == role]

    def first_by_role(self, role: SchemeRole) -> AuthenticationScheme:
        matches = self.by_role(role)
        if not matches:
            raise ConfigError(
                ConfigErrorReason.UNKNOWN_SCHEME,
                role.value,
                f"No authentication scheme with role {role.value} is registered",
            )
        return matches[0]

    def __iter__(self) -> Iterator[AuthenticationScheme]:
        return iter(self._schemes.values())

    def __contains__(self, name: object) -> bool:
        return name in self._schemes

    def __len__(self) -> int:
        return len(self._schemes)


def build_default_registry(default_sign_in: str = EXTERNAL_SCHEME, default_challenge: str = OIDC_SCHEME) -> SchemeRegistry:
    """Register the identity cookies and the OIDC challenge scheme."""
    registry = SchemeRegistry()
    registry.register(
        [
            AuthenticationScheme(
                name=APPLICATION_SCHEME,
                role=SchemeRole.APPLICATION_SESSION,
                cookie_name=".Portal.Identity.Application",
            ),
            AuthenticationScheme(
                name=EXTERNAL_SCHEME,
                role=SchemeRole.EXTERNAL_SIGN_IN,
                cookie_name=".Portal.Identity.External",
            ),
            AuthenticationScheme(name=OIDC_SCHEME, role=SchemeRole.OIDC_CHALLENGE),
        ],
        default_sign_in=default_sign_in,
        default_challenge=default_challenge,
    )
    return registry
