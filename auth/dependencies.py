"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token transports are checked in priority order:
  1. Session cookie ("session_token") -- set by the login/register responses.
  2. Authorization: Bearer <token> header -- mobile and API clients.

Both converge on SessionManager.validate_session(). The token is opaque; it
is never parsed here.

try_get_session() is the soft variant (returns None on failure).
get_session() wraps it and raises Unauthenticated (HTTP 401).
require_roles() wraps get_session() and raises Forbidden (HTTP 403).

Layer rule: no imports from api/ or orders/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request

from auth.guard import require_role
from auth.models import Role, SessionContext
from auth.sessions import SessionManager
from auth.tokens import SESSION_COOKIE
from core.errors import Unauthenticated


def request_token(request: Request) -> Optional[str]:
    """Return the raw session token carried by the request, if any."""
    token: Optional[str] = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_session(request: Request) -> Optional[SessionContext]:
    """Authenticate the request. Returns None on any failure, never raises."""
    manager: SessionManager = request.app.state.session_manager
    return manager.validate_session(request_token(request))


def get_session(request: Request) -> SessionContext:
    """Require authentication. Raises Unauthenticated if the request has no valid session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: SessionContext = Depends(get_session)): ...
    """
    ctx = try_get_session(request)
    if ctx is None:
        raise Unauthenticated()
    return ctx


def require_roles(*roles: Role) -> Callable[..., SessionContext]:
    """Build a dependency that requires one of roles.

        @router.post("/users")
        def route(ctx: SessionContext = Depends(require_roles(Role.OWNER))): ...
    """

    def dependency(ctx: SessionContext = Depends(get_session)) -> SessionContext:
        require_role(ctx, *roles)
        return ctx

    return dependency
