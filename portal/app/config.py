"""
Configuration module for the OIDC Portal.

This module uses Pydantic Settings to load environment variables (and an
optional .env file) and turns the raw ``OpenIdConnect`` and
``ConnectionStrings`` sections into validated, immutable objects.

Nested keys use a double underscore, so ``OpenIdConnect__Authority`` ends up
as ``Settings.OpenIdConnect["Authority"]``.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError, ConfigErrorReason


# =============================================================================
# Constants
# =============================================================================

OIDC_SECTION = "OpenIdConnect"

# The callback path is registered with the authority and must never move.
CALLBACK_PATH = "/signin-oidc"

DEFAULT_SCOPES: Tuple[str, ...] = ("openid", "profile", "email")
DEFAULT_RESPONSE_TYPE = "code"
DEFAULT_BACKCHANNEL_TIMEOUT = 60.0

DEFAULT_STATIC_DIRECTORY = Path(__file__).parent / "wwwroot"

# RFC 6749 section 3.3: scope-token = 1*( %x21 / %x23-5B / %x5D-7E )
_SCOPE_TOKEN = re.compile(r"^[\x21\x23-\x5B\x5D-\x7E]+$")


# =============================================================================
# Application Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The OIDC and connection string sections are kept as raw string maps here;
    ``load_oidc_settings`` and ``load_connection_string`` validate them.
    """

    OpenIdConnect: Dict[str, str] = Field(
        default_factory=dict,
        description="OpenID Connect section (Authority, ClientId, ClientSecret, ...)",
    )

    ConnectionStrings: Dict[str, str] = Field(
        default_factory=dict,
        description="Named database URLs; DefaultConnection backs the identity store",
    )

    ENVIRONMENT: str = Field(
        default="Production",
        description="Hosting environment name (Development shows diagnostic error pages)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    SESSION_SECRET: str = Field(
        ...,
        description="Secret for signing session cookies and anti-forgery tokens",
        min_length=32,
    )

    SESSION_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Application session lifetime in minutes",
        ge=5,
        le=1440,
    )

    HTTPS_REDIRECTION: bool = Field(
        default=True,
        description="Redirect plain HTTP requests to HTTPS",
    )

    HSTS_MAX_AGE_SECONDS: int = Field(
        default=30 * 24 * 3600,
        description="Strict-Transport-Security max-age outside development",
        ge=0,
    )

    STATIC_DIRECTORY: Optional[str] = Field(
        default=None,
        description="Directory of static assets (defaults to the packaged wwwroot)",
    )

    DEFAULT_SIGN_IN_SCHEME: str = Field(default="Identity.External")

    DEFAULT_CHALLENGE_SCHEME: str = Field(default="oidc")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def static_directory(self) -> Path:
        if self.STATIC_DIRECTORY:
            return Path(self.STATIC_DIRECTORY)
        return DEFAULT_STATIC_DIRECTORY

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate the logging level name.

        Raises:
            ValueError: If the level is not a standard logging level
        """
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# OpenID Connect Settings
# =============================================================================

class OidcSettings(BaseModel):
    """
    Validated OpenID Connect configuration.

    Built once at startup and passed explicitly to every component that needs
    it. Instances are immutable.
    """

    model_config = ConfigDict(frozen=True)

    authority: str
    client_id: str
    client_secret: SecretStr
    response_type: str = DEFAULT_RESPONSE_TYPE
    save_tokens: bool = True
    get_claims_from_user_info_endpoint: bool = True
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    backchannel_timeout: float = DEFAULT_BACKCHANNEL_TIMEOUT

    @property
    def callback_path(self) -> str:
        return CALLBACK_PATH

    @property
    def scope(self) -> str:
        """Scopes joined the way they go on the wire."""
        return " ".join(self.scopes)


def _lookup(section: Mapping[str, str], key: str) -> Optional[str]:
    """Case-insensitive key lookup, exact match first."""
    if key in section:
        return section[key]
    lowered = key.lower()
    for candidate, value in section.items():
        if candidate.lower() == lowered:
            return value
    return None


def _require(section: Mapping[str, str], key: str) -> str:
    value = _lookup(section, key)
    if value is None or not value.strip():
        raise ConfigError(
            ConfigErrorReason.MISSING_FIELD,
            key,
            f"{OIDC_SECTION}:{key} is required",
        )
    return value.strip()


def _parse_bool(section: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _lookup(section, key)
    if raw is None or not raw.strip():
        return default

    value = raw.strip().lower()
    if value == "true":
        return True
    if value == "false":
        return False

    raise ConfigError(
        ConfigErrorReason.INVALID_VALUE,
        key,
        f"{OIDC_SECTION}:{key} must be 'true' or 'false', got: {raw!r}",
    )


def parse_scopes(raw: Optional[str]) -> Tuple[str, ...]:
    """
    Split a space-separated scope string into an ordered scope sequence.

    Duplicates are dropped, keeping the first occurrence. Absent, blank or
    malformed input (a token outside the RFC 6749 scope-token character set)
    yields the default ``openid profile email`` triple.

    Args:
        raw: Raw ``Scope`` configuration value

    Returns:
        Tuple of scope names
    """
    if raw is None:
        return DEFAULT_SCOPES

    tokens = raw.split()
    if not tokens:
        return DEFAULT_SCOPES

    if any(not _SCOPE_TOKEN.match(token) for token in tokens):
        return DEFAULT_SCOPES

    return tuple(dict.fromkeys(tokens))


def load_oidc_settings(section: Mapping[str, str]) -> OidcSettings:
    """
    Build OidcSettings from the raw ``OpenIdConnect`` configuration section.

    Args:
        section: Key/value map (Authority, ClientId, ClientSecret, ...)

    Returns:
        Validated OidcSettings

    Raises:
        ConfigError: MISSING_FIELD naming the first missing required key,
                     INVALID_VALUE for unparseable optional values.

    Example:
        >>> s = load_oidc_settings({
        ...     "Authority": "https://idp.example",
        ...     "ClientId": "abc",
        ...     "ClientSecret": "xyz",
        ... })
        >>> s.scopes
        ('openid', 'profile', 'email')
    """
    authority = _require(section, "Authority")
    client_id = _require(section, "ClientId")
    client_secret = _require(section, "ClientSecret")

    parsed = urlparse(authority)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(
            ConfigErrorReason.INVALID_VALUE,
            "Authority",
            f"{OIDC_SECTION}:Authority must be an absolute http(s) URL, got: {authority!r}",
        )

    response_type = (_lookup(section, "ResponseType") or "").strip() or DEFAULT_RESPONSE_TYPE

    timeout_raw = (_lookup(section, "BackchannelTimeout") or "").strip()
    backchannel_timeout = DEFAULT_BACKCHANNEL_TIMEOUT
    if timeout_raw:
        try:
            backchannel_timeout = float(timeout_raw)
        except ValueError:
            backchannel_timeout = 0.0
        if not backchannel_timeout > 0:
            raise ConfigError(
                ConfigErrorReason.INVALID_VALUE,
                "BackchannelTimeout",
                f"{OIDC_SECTION}:BackchannelTimeout must be a positive number of seconds",
            )

    return OidcSettings(
        authority=authority.rstrip("/"),
        client_id=client_id,
        client_secret=SecretStr(client_secret),
        response_type=response_type,
        save_tokens=_parse_bool(section, "SaveTokens", True),
        get_claims_from_user_info_endpoint=_parse_bool(
            section, "GetClaimsFromUserInfoEndpoint", True
        ),
        scopes=parse_scopes(_lookup(section, "Scope")),
        backchannel_timeout=backchannel_timeout,
    )


def load_connection_string(section: Mapping[str, str], name: str = "DefaultConnection") -> str:
    """
    Return the named connection string (a SQLAlchemy database URL).

    Raises:
        ConfigError: MISSING_FIELD if the connection string is absent
    """
    value = _lookup(section, name)
    if value is None or not value.strip():
        raise ConfigError(
            ConfigErrorReason.MISSING_FIELD,
            name,
            f"Connection string '{name}' not found.",
        )
    return value.strip()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate the whole configuration and return a status report.

    Unlike the factory this never raises; it collects every problem so an
    operator can fix them in one pass.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors: List[str] = []
    warnings: List[str] = []

    oidc: Optional[OidcSettings] = None
    try:
        oidc = load_oidc_settings(settings.OpenIdConnect)
    except ConfigError as e:
        errors.append(e.message)

    try:
        load_connection_string(settings.ConnectionStrings)
    except ConfigError as e:
        errors.append(e.message)

    if oidc is not None:
        if oidc.authority.startswith("http://") and not settings.is_development:
            warnings.append("Authority uses plain HTTP outside development")
        if "openid" not in oidc.scopes:
            warnings.append("Scope does not include 'openid'; the authority will not issue an ID token")

    if not settings.HTTPS_REDIRECTION and not settings.is_development:
        warnings.append("HTTPS redirection is disabled outside development")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": settings.ENVIRONMENT,
        "scopes": list(oidc.scopes) if oidc else [],
    }


if __name__ == "__main__":
    """
    Validate your .env configuration:
        python -m portal.app.config
    """
    import json

    report = validate_configuration(get_settings())
    print(json.dumps(report, indent=2))
