"""
HTTP Pipeline Composer
======================

Assembles the request pipeline around the FastAPI routes. Stages, outermost
first:

1. Exception boundary   : unhandled errors become an error page
                          (diagnostic in development, generic otherwise)
2. HTTPS                : plain HTTP is redirected; HSTS outside development
3. Static assets        : existing files under wwwroot are served directly
4. Anti-forgery         : unsafe methods must present the request token
5. Correlation session  : external sign-in cookie holding the login correlation
6. Pages                : home, protected page, error page, health
7. Identity endpoints   : login, callback, logout, account

Starlette runs the middleware added last as the outermost one, so
``compose_pipeline`` adds them innermost first.
"""

import hmac
import logging
import secrets
import stat
import traceback
from html import escape
from typing import Iterable, Optional, Tuple
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, Response
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .auth.routes import router as identity_router
from .auth.schemes import SchemeRegistry, SchemeRole
from .config import CALLBACK_PATH, OidcSettings, Settings
from .pages import pages_router
from .rendering import ANTIFORGERY_FIELD, render_page

logger = logging.getLogger(__name__)


PIPELINE_STAGES: Tuple[str, ...] = (
    "exception_boundary",
    "https",
    "static_assets",
    "antiforgery",
    "correlation_session",
    "pages",
    "identity_endpoints",
)

ANTIFORGERY_COOKIE = ".Portal.Antiforgery"
ANTIFORGERY_HEADER = "x-csrf-token"
# Largest form body read while looking for the anti-forgery field.
ANTIFORGERY_MAX_FORM_BYTES = 1024 * 1024

# Lifetime of the login correlation cookie.
CORRELATION_MAX_AGE_SECONDS = 15 * 60

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


# =============================================================================
# Exception Boundary
# =============================================================================

def install_exception_boundary(app: FastAPI, settings: Settings) -> None:
    """
    Register the catch-all handler.

    Starlette hands ``Exception`` handlers to its outermost error middleware,
    so this boundary wraps every other stage.
    """

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> HTMLResponse:
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        if settings.is_development:
            trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            body = f"""
                <p>An unhandled exception occurred while processing the request.</p>
                <h2>{escape(type(exc).__name__)}: {escape(str(exc))}</h2>
                <pre class="traceback">{escape(trace)}</pre>
            """
            return render_page("Development exception", body, status_code=500)

        return render_page(
            "Error",
            "<p>An error occurred while processing your request.</p>",
            status_code=500,
        )


# =============================================================================
# HTTPS
# =============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds Strict-Transport-Security to HTTPS responses when enabled, plus the
    usual content-sniffing and framing headers.
    """

    def __init__(self, app: ASGIApp, hsts_max_age: Optional[int] = None):
        super().__init__(app)
        self.hsts_max_age = hsts_max_age

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if self.hsts_max_age is not None and request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = f"max-age={self.hsts_max_age}"

        return response


# =============================================================================
# Static Assets
# =============================================================================

class StaticAssetsMiddleware:
    """
    Serves GET/HEAD requests for files that exist under ``directory``.

    Anything else (including directory paths) falls through to the rest of
    the pipeline, so static files short-circuit before anti-forgery and
    routing.
    """

    def __init__(self, app: ASGIApp, directory: str):
        self.app = app
        self.files = StaticFiles(directory=directory, check_dir=False)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] not in ("GET", "HEAD"):
            await self.app(scope, receive, send)
            return

        full_path, stat_result = self.files.lookup_path(self.files.get_path(scope))
        if full_path and stat_result is not None and stat.S_ISREG(stat_result.st_mode):
            await self.files(scope, receive, send)
            return

        await self.app(scope, receive, send)


# =============================================================================
# Anti-forgery
# =============================================================================

async def _read_body(receive: Receive, limit: int) -> Optional[bytes]:
    """The whole request body, or None as soon as it grows past ``limit`` bytes."""
    chunks = []
    size = 0
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
        more_body = message.get("more_body", False)
    return b"".join(chunks)


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay_receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


class AntiforgeryMiddleware:
    """
    Double-submit anti-forgery check.

    Every request gets a token (reused from the anti-forgery cookie or newly
    minted and set on the response) exposed as
    ``request.state.antiforgery_token``. Unsafe methods must echo it back in
    the ``__RequestVerificationToken`` form field or the ``X-CSRF-TOKEN``
    header, otherwise they are rejected with 400.

    Args:
        app: Next ASGI app
        exempt_paths: Paths skipped by the check (the OIDC form-post callback)
        secure: Mark the token cookie Secure
        max_form_bytes: Largest form body read to find the token (413 beyond)
    """

    def __init__(
        self,
        app: ASGIApp,
        exempt_paths: Iterable[str] = (),
        secure: bool = True,
        max_form_bytes: int = ANTIFORGERY_MAX_FORM_BYTES,
    ):
        self.app = app
        self.exempt_paths = frozenset(exempt_paths)
        self.secure = secure
        self.max_form_bytes = max_form_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        cookie_token = request.cookies.get(ANTIFORGERY_COOKIE)
        token = cookie_token or secrets.token_urlsafe(32)
        scope.setdefault("state", {})["antiforgery_token"] = token

        if scope["method"] not in _SAFE_METHODS and scope["path"] not in self.exempt_paths:
            presented = request.headers.get(ANTIFORGERY_HEADER)

            # The body is only read when the token can be in it and can match.
            is_form = request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded")
            if cookie_token and not presented and is_form:
                body = await _read_body(receive, self.max_form_bytes)
                if body is None:
                    logger.warning(
                        "Form body too large for anti-forgery check",
                        extra={"path": scope["path"], "limit": self.max_form_bytes},
                    )
                    response = render_page("Request too large", "<p>The form is too large.</p>", status_code=413)
                    await response(scope, receive, send)
                    return

                values = parse_qs(body.decode("latin-1"), keep_blank_values=True).get(ANTIFORGERY_FIELD)
                presented = values[0] if values else None
                receive = _replay(body, receive)

            if not cookie_token or not presented or not hmac.compare_digest(presented.encode(), cookie_token.encode()):
                logger.warning(
                    "Anti-forgery validation failed",
                    extra={"path": scope["path"], "method": scope["method"]},
                )
                response = render_page(
                    "Bad request",
                    "<p>The anti-forgery token is missing or invalid.</p>",
                    status_code=400,
                )
                await response(scope, receive, send)
                return

        if cookie_token:
            await self.app(scope, receive, send)
            return

        cookie = f"{ANTIFORGERY_COOKIE}={token}; Path=/; HttpOnly; SameSite=Strict"
        if self.secure:
            cookie += "; Secure"

        async def send_with_cookie(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append("set-cookie", cookie)
            await send(message)

        await self.app(scope, receive, send_with_cookie)


# =============================================================================
# Composition
# =============================================================================

def compose_pipeline(app: FastAPI, settings: Settings, oidc: OidcSettings, registry: SchemeRegistry) -> None:
    """
    Wire every pipeline stage onto ``app`` in the fixed order.

    Args:
        app: Application to compose
        settings: Application settings
        oidc: Validated OIDC settings
        registry: Populated scheme registry
    """
    development = settings.is_development

    app.include_router(pages_router)
    app.include_router(identity_router)

    # form_post callbacks are cross-site POSTs, which only carry SameSite=None cookies.
    form_post = oidc.response_type != "code"
    external = registry.first_by_role(SchemeRole.EXTERNAL_SIGN_IN)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=external.cookie_name or external.name,
        max_age=CORRELATION_MAX_AGE_SECONDS,
        same_site="none" if form_post else "lax",
        https_only=form_post or not development,
    )

    app.add_middleware(
        AntiforgeryMiddleware,
        exempt_paths=(CALLBACK_PATH,),
        secure=not development,
    )

    app.add_middleware(StaticAssetsMiddleware, directory=str(settings.static_directory))

    app.add_middleware(
        SecurityHeadersMiddleware,
        hsts_max_age=None if development else settings.HSTS_MAX_AGE_SECONDS,
    )
    if settings.HTTPS_REDIRECTION:
        app.add_middleware(HTTPSRedirectMiddleware)

    install_exception_boundary(app, settings)

    logger.info(
        "Composed HTTP pipeline",
        extra={"stages": list(PIPELINE_STAGES), "environment": settings.ENVIRONMENT},
    )
