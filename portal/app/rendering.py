"""
HTML rendering helpers.

Pages are small server-rendered HTML strings sharing one layout. Every
dynamic value goes through ``html.escape``.
"""

from html import escape
from typing import Dict, Optional

from fastapi import Request
from fastapi.responses import HTMLResponse

ANTIFORGERY_FIELD = "__RequestVerificationToken"


def antiforgery_input(request: Request) -> str:
    """Hidden form field carrying the request's anti-forgery token."""
    token = getattr(request.state, "antiforgery_token", "")
    return f'<input type="hidden" name="{ANTIFORGERY_FIELD}" value="{escape(token)}">'


def render_page(
    title: str,
    body: str,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> HTMLResponse:
    """
    Wrap a body fragment in the site layout.

    Args:
        title: Page title (escaped here)
        body: Already-escaped HTML fragment
        status_code: HTTP status code
        headers: Extra response headers

    Returns:
        HTMLResponse
    """
    html_content = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(title)} - OIDC Portal</title>
    <link rel="stylesheet" href="/app.css">
</head>
<body>
    <nav class="top-nav">
        <a href="/">Home</a>
        <a href="/auth">Auth Required</a>
        <a href="/Account/Manage">Account</a>
    </nav>
    <main class="container">
        <h1>{escape(title)}</h1>
        {body}
    </main>
</body>
</html>
"""
    return HTMLResponse(content=html_content, status_code=status_code, headers=headers)
