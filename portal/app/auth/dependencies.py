"""FastAPI dependencies for the application session."""

from typing import Any, Dict, Optional

from fastapi import Depends, Request

from ..errors import ChallengeRequired


def get_portal(request: Request):
    """The PortalState built by the application factory."""
    return request.app.state.portal


async def get_current_user(request: Request) -> Optional[Dict[str, Any]]:
    """
    Session claims from the application cookie, or None when signed out.

    The cookie is re-checked against the identity store on every request, so
    a deleted or unconfirmed user is treated as anonymous.

    Usage:
        @router.get("/")
        async def home(user: Optional[dict] = Depends(get_current_user)):
            ...
    """
    manager = get_portal(request).sign_in_manager
    return await manager.validate_session(request.cookies.get(manager.cookie_name))


async def require_user(
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Session claims, or a challenge for anonymous requests.

    Raises:
        ChallengeRequired: handled by redirecting to the default challenge scheme
    """
    if user is None:
        return_url = request.url.path
        if request.url.query:
            return_url = f"{return_url}?{request.url.query}"
        raise ChallengeRequired(return_url=return_url)
    return user
