"""
FastAPI Application Factory
===========================

Entry point of the OIDC portal: a server-rendered site whose users sign in
through an external OpenID Connect authority and are then tracked by a local
identity store.

Routers:
    - /, /auth, /Error, /health   : Pages
    - /Account/*                  : Login, external login, logout, account
    - /signin-oidc                : OIDC callback (fixed path)

Environment Variables Required:
    - OpenIdConnect__Authority: Issuer URL of the OIDC authority
    - OpenIdConnect__ClientId: Client identifier registered with the authority
    - OpenIdConnect__ClientSecret: Client secret
    - ConnectionStrings__DefaultConnection: Identity store database URL
      (e.g., "sqlite:///./portal.db")
    - SESSION_SECRET: Secret for signing cookies (min 32 characters)

Optional:
    - OpenIdConnect__ResponseType, __SaveTokens, __GetClaimsFromUserInfoEndpoint,
      __Scope, __BackchannelTimeout
    - ENVIRONMENT: "Development" for diagnostic error pages (default: Production)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        ENVIRONMENT=Development uvicorn portal.app.main:create_app --factory --reload --port 5001

    Production:
        uvicorn portal.app.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from .auth.gateway import OidcLoginGateway
from .auth.oidc_client import HttpxOidcClient, OidcClient
from .auth.routes import challenge_url
from .auth.schemes import SchemeRegistry, SchemeRole, build_default_registry
from .config import OidcSettings, Settings, get_settings, load_connection_string, load_oidc_settings
from .errors import ChallengeRequired
from .identity.email import EmailSender
from .identity.manager import SignInManager
from .identity.store import IdentityStore
from .logging_config import setup_logging
from .pipeline import compose_pipeline

logger = logging.getLogger("portal.main")


class PortalState:
    """
    Application state container.

    Holds the components built once at startup: validated settings, scheme
    registry, identity store, sign-in manager and the login gateway.
    """

    def __init__(
        self,
        settings: Settings,
        oidc: OidcSettings,
        registry: SchemeRegistry,
        store: IdentityStore,
        sign_in_manager: SignInManager,
        oidc_client: OidcClient,
        gateway: OidcLoginGateway,
    ):
        self.settings = settings
        self.oidc = oidc
        self.registry = registry
        self.store = store
        self.sign_in_manager = sign_in_manager
        self.oidc_client = oidc_client
        self.gateway = gateway

    async def aclose(self) -> None:
        close = getattr(self.oidc_client, "aclose", None)
        if close is not None:
            await close()
        self.store.close()


def build_portal_state(
    settings: Settings,
    oidc_client: Optional[OidcClient] = None,
    email_sender: Optional[EmailSender] = None,
) -> PortalState:
    """
    Validate configuration and build every startup component.

    Raises:
        ConfigError: If required configuration is missing or inconsistent
    """
    oidc = load_oidc_settings(settings.OpenIdConnect)
    db_uri = load_connection_string(settings.ConnectionStrings)

    registry = build_default_registry(
        default_sign_in=settings.DEFAULT_SIGN_IN_SCHEME,
        default_challenge=settings.DEFAULT_CHALLENGE_SCHEME,
    )

    store = IdentityStore(db_uri)
    store.create()

    sign_in_manager = SignInManager(
        store,
        settings.SESSION_SECRET,
        registry.first_by_role(SchemeRole.APPLICATION_SESSION),
        expiry_minutes=settings.SESSION_EXPIRY_MINUTES,
        require_confirmed_account=True,
        email_sender=email_sender,
    )

    client = oidc_client or HttpxOidcClient(oidc)
    gateway = OidcLoginGateway(
        oidc,
        client,
        sign_in_manager,
        provider=registry.first_by_role(SchemeRole.OIDC_CHALLENGE).name,
    )

    return PortalState(settings, oidc, registry, store, sign_in_manager, client, gateway)


def create_app(
    settings: Optional[Settings] = None,
    oidc_client: Optional[OidcClient] = None,
    email_sender: Optional[EmailSender] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Validated configuration and startup components
        - The composed HTTP pipeline
        - Lifespan management

    Args:
        settings: Settings to use instead of the environment
        oidc_client: Back-channel client to use instead of httpx
        email_sender: Confirmation link sender (default: log only)

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigError: If configuration is invalid; the service must not start
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    portal = build_portal_state(settings, oidc_client=oidc_client, email_sender=email_sender)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "OIDC portal started",
            extra={
                "authority": portal.oidc.authority,
                "environment": settings.ENVIRONMENT,
                "scopes": list(portal.oidc.scopes),
            },
        )

        yield

        logger.info("Shutting down OIDC portal")
        await portal.aclose()
        logger.info("OIDC portal shutdown complete")

    app = FastAPI(
        title="OIDC Portal",
        description="Web application with OpenID Connect login and a local identity store",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )
    app.state.portal = portal

    @app.exception_handler(ChallengeRequired)
    async def challenge_handler(request: Request, exc: ChallengeRequired) -> RedirectResponse:
        return RedirectResponse(url=challenge_url(request, exc.return_url), status_code=302)

    compose_pipeline(app, settings, portal.oidc, portal.registry)
    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m portal.app.main
    However, using uvicorn command is recommended for production.
    """
    settings = get_settings()
    uvicorn.run(
        "portal.app.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
