"""
Identity endpoints: login page, external login challenge, OIDC callback,
logout, email confirmation and account management.

The callback path is fixed at ``/signin-oidc``; it is registered with the
authority and must not move.
"""

import logging
from html import escape
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import ValidationError

from ..config import CALLBACK_PATH
from ..errors import ConfigError, RemoteAuthError
from ..models import LoginCorrelation, SessionCookie
from ..rendering import antiforgery_input, render_page
from .dependencies import get_current_user, get_portal, require_user
from .gateway import LOGIN_PATH, failure_redirect, safe_return_url
from .schemes import SchemeRole

logger = logging.getLogger(__name__)

# Session key under which the correlation waits for the callback.
CORRELATION_KEY = "oidc.correlation"


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(tags=["identity"])


def _set_session_cookie(request: Request, response: RedirectResponse, cookie: SessionCookie) -> None:
    response.set_cookie(
        key=cookie.name,
        value=cookie.value,
        max_age=cookie.max_age,
        path="/",
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
    )


# =============================================================================
# Login
# =============================================================================

@router.get(LOGIN_PATH, response_class=HTMLResponse)
async def login_page(
    request: Request,
    error: Optional[str] = Query(None),
    return_url: str = Query("/", alias="ReturnUrl"),
):
    """
    Login page listing the external providers.

    A failed remote login lands here with ``?error=<message>``; the message is
    shown to the user as-is (escaped).
    """
    registry = get_portal(request).registry

    error_html = ""
    if error:
        error_html = f'<div class="alert alert-danger" role="alert">{escape(error)}</div>'

    buttons = "".join(
        f'<button type="submit" name="provider" value="{escape(scheme.name)}">'
        f"Log in with {escape(scheme.name)}</button>"
        for scheme in registry.by_role(SchemeRole.OIDC_CHALLENGE)
    )

    body = f"""
        {error_html}
        <section>
            <h2>Use another service to log in.</h2>
            <form method="post" action="/Account/PerformExternalLogin">
                {antiforgery_input(request)}
                <input type="hidden" name="ReturnUrl" value="{escape(safe_return_url(return_url))}">
                {buttons}
            </form>
        </section>
    """
    return render_page("Log in", body)


async def _challenge(request: Request, provider: str, return_url: Optional[str]) -> RedirectResponse:
    portal = get_portal(request)

    try:
        scheme = portal.registry.get(provider)
    except ConfigError as e:
        logger.warning("Login requested for unknown provider", extra={"provider": provider})
        return RedirectResponse(url=failure_redirect(e), status_code=302)

    if scheme.role != SchemeRole.OIDC_CHALLENGE:
        return RedirectResponse(
            url=failure_redirect(ValueError(f"'{provider}' is not an external login provider")),
            status_code=302,
        )

    try:
        authorization_url, correlation = await portal.gateway.build_challenge(
            str(request.base_url), return_url
        )
    except RemoteAuthError as e:
        logger.error("Could not build OIDC challenge", extra={"kind": e.kind})
        return RedirectResponse(url=failure_redirect(e), status_code=302)

    # A new challenge replaces any correlation left by an abandoned attempt.
    request.session[CORRELATION_KEY] = correlation.model_dump()
    return RedirectResponse(url=authorization_url, status_code=302)


@router.post("/Account/PerformExternalLogin")
async def perform_external_login(
    request: Request,
    provider: str = Form(...),
    return_url: str = Form("/", alias="ReturnUrl"),
):
    """Start the challenge for the provider picked on the login page."""
    return await _challenge(request, provider, return_url)


@router.get("/Account/ExternalLogin")
async def external_login(
    request: Request,
    provider: Optional[str] = Query(None),
    return_url: str = Query("/", alias="ReturnUrl"),
):
    """Challenge entry point used when an anonymous user hits a protected page."""
    portal = get_portal(request)
    return await _challenge(request, provider or portal.registry.default_challenge.name, return_url)


# =============================================================================
# OIDC Callback
# =============================================================================

@router.api_route(CALLBACK_PATH, methods=["GET", "POST"])
async def signin_oidc(request: Request):
    """
    Handle the authority's redirect back to this application.

    Parameters arrive in the query string (``response_mode=query``) or as a
    form post. The correlation is single-use: it is removed from the session
    before the callback is processed, whatever the outcome.
    """
    portal = get_portal(request)

    params: Dict[str, str] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    correlation = None
    raw = request.session.pop(CORRELATION_KEY, None)
    if raw:
        try:
            correlation = LoginCorrelation.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed login correlation")

    outcome = await portal.gateway.handle_callback(params, correlation, str(request.base_url))

    response = RedirectResponse(url=outcome.redirect_url, status_code=302)
    if outcome.cookie is not None:
        _set_session_cookie(request, response, outcome.cookie)
    return response


# =============================================================================
# Logout
# =============================================================================

@router.post("/Account/Logout")
async def logout(
    request: Request,
    return_url: str = Form("/", alias="ReturnUrl"),
    user: Optional[Dict[str, Any]] = Depends(get_current_user),
):
    """Drop the application session and any saved tokens."""
    manager = get_portal(request).sign_in_manager

    if user is not None:
        await manager.sign_out(user["sub"])

    response = RedirectResponse(url=safe_return_url(return_url), status_code=303)
    response.delete_cookie(manager.cookie_name, path="/")
    return response


# =============================================================================
# Account
# =============================================================================

@router.get("/Account/ConfirmEmail", response_class=HTMLResponse)
async def confirm_email(
    request: Request,
    user_id: str = Query(..., alias="userId"),
    code: str = Query(...),
):
    manager = get_portal(request).sign_in_manager

    if await manager.confirm_email(user_id, code):
        logger.info("Email confirmed", extra={"user_id": user_id})
        body = f"""
            <p>Thank you for confirming your email.</p>
            <p><a href="{LOGIN_PATH}">Log in</a></p>
        """
        return render_page("Confirm email", body)

    logger.warning("Email confirmation failed", extra={"user_id": user_id})
    return render_page("Confirm email", "<p>Error confirming your email.</p>", status_code=400)


@router.get("/Account/Manage", response_class=HTMLResponse)
async def manage_account(request: Request, user: Dict[str, Any] = Depends(require_user)):
    """Profile of the signed-in user, with the names of saved tokens."""
    portal = get_portal(request)
    tokens = await portal.sign_in_manager.get_tokens(user["sub"], portal.gateway.provider)

    roles = ", ".join(escape(r) for r in user.get("roles") or []) or "none"
    token_items = "".join(f"<li>{escape(name)}</li>" for name in sorted(tokens)) or "<li>none</li>"

    body = f"""
        <dl>
            <dt>User name</dt><dd>{escape(user.get("name") or "")}</dd>
            <dt>Email</dt><dd>{escape(user.get("email") or "")}</dd>
            <dt>Roles</dt><dd>{roles}</dd>
            <dt>Signed in with</dt><dd>{escape(user.get("amr") or "")}</dd>
        </dl>
        <h2>Saved tokens</h2>
        <ul>{token_items}</ul>
        <form method="post" action="/Account/Logout">
            {antiforgery_input(request)}
            <input type="hidden" name="ReturnUrl" value="/">
            <button type="submit">Log out</button>
        </form>
    """
    return render_page("Manage your account", body)


def challenge_url(request: Request, return_url: str) -> str:
    """Where an anonymous request to a protected page is sent."""
    scheme = get_portal(request).registry.default_challenge
    if scheme.role == SchemeRole.OIDC_CHALLENGE:
        query = urlencode({"provider": scheme.name, "ReturnUrl": safe_return_url(return_url)})
        return f"/Account/ExternalLogin?{query}"
    return f"{LOGIN_PATH}?{urlencode({'ReturnUrl': safe_return_url(return_url)})}"
