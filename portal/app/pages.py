"""Application pages: home, the protected claims page, error page and health."""

from html import escape
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from .auth.dependencies import get_current_user, require_user
from .rendering import render_page

pages_router = APIRouter(tags=["pages"])

# Session claims that are bookkeeping rather than identity.
_HIDDEN_CLAIMS = {"iat", "exp", "iss", "type"}


@pages_router.get("/", response_class=HTMLResponse)
async def home(user: Optional[Dict[str, Any]] = Depends(get_current_user)):
    if user is None:
        greeting = '<p>You are not signed in. <a href="/Account/Login">Log in</a></p>'
    else:
        greeting = f'<p>Hello, {escape(user.get("name") or user["sub"])}!</p>'

    return render_page("Home", f"<p>Welcome to the OIDC portal.</p>{greeting}")


@pages_router.get("/auth", response_class=HTMLResponse)
async def auth_required(user: Dict[str, Any] = Depends(require_user)):
    """Protected page listing the signed-in user's claims."""
    rows = "".join(
        f"<tr><td>{escape(str(key))}</td><td>{escape(_render_claim(value))}</td></tr>"
        for key, value in sorted(user.items())
        if key not in _HIDDEN_CLAIMS
    )
    body = f"""
        <p>You are authenticated.</p>
        <table class="claims">
            <thead><tr><th>Claim</th><th>Value</th></tr></thead>
            <tbody>{rows}</tbody>
        </table>
    """
    return render_page("Auth Required", body)


@pages_router.get("/Error", response_class=HTMLResponse)
async def error_page(request: Request):
    return render_page(
        "Error",
        "<p>An error occurred while processing your request.</p>",
        status_code=500,
    )


@pages_router.get("/health", tags=["System"])
async def health_check() -> Dict[str, str]:
    """
    Health check endpoint.

    Returns:
        dict: Service health information
    """
    return {
        "status": "ok",
        "service": "oidc-portal",
        "version": "1.0.0",
    }


def _render_claim(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)
