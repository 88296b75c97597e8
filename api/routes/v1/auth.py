"""
api/routes/v1/auth.py -- Registration, login, and session REST endpoints.

Routes:
  POST /api/v1/auth/register   -- new organization + OWNER; sets session cookie
  POST /api/v1/auth/login      -- password login; sets session cookie
  POST /api/v1/auth/logout     -- deletes the session; idempotent
  GET  /api/v1/auth/me         -- current user and organization (requires auth)

Security:
  [H2] POST /register and /login are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionManager.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on responses that carry a token.
  REGISTRATION_CODE, when configured, gates self-registration; compared in
  constant time.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    OrganizationResponse,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import get_session, request_token
from auth.models import AuthResult, SessionContext
from auth.sessions import SessionManager
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings
from core.deadline import deadline_after
from core.errors import Forbidden

logger = logging.getLogger("floraops.api")

# Auth policy:
# - POST /api/v1/auth/register: public -- gated by SELF_REGISTRATION_ENABLED / REGISTRATION_CODE
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:   public -- revoking an unknown token is a no-op
# - GET  /api/v1/auth/me:       requires auth (get_session)
router = APIRouter()


def _auth_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            token=result.token,
            user=UserResponse.from_user(result.user),
            organization=OrganizationResponse.from_organization(result.organization),
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _check_registration_allowed(code: str | None) -> None:
    settings = get_settings()
    if not settings.self_registration_enabled:
        raise Forbidden("Self-registration is disabled.")
    expected = settings.registration_code
    if expected and not hmac.compare_digest((code or "").encode(), expected.encode()):
        logger.info("Registration refused: bad registration code")
        raise Forbidden("Invalid registration code.")


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an organization with the caller as OWNER and log them in."""
    _check_registration_allowed(body.registration_code)
    manager: SessionManager = request.app.state.session_manager
    result = manager.register(
        body.email,
        body.password,
        body.name,
        body.organization_name,
        deadline=deadline_after(get_settings().request_timeout_seconds),
    )
    return _auth_response(result, status_code=201)


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; issue a new session.

    Unknown email and wrong password return the same invalid_credentials
    error so the response does not reveal which emails are registered.
    """
    manager: SessionManager = request.app.state.session_manager
    result = manager.login(
        body.email,
        body.password,
        deadline=deadline_after(get_settings().request_timeout_seconds),
    )
    return _auth_response(result)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Delete the caller's session and clear the cookie."""
    manager: SessionManager = request.app.state.session_manager
    manager.delete_session(request_token(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: SessionContext = Depends(get_session)) -> MeResponse:
    """Return the authenticated user and their organization."""
    return MeResponse(
        user=UserResponse.from_user(ctx.user),
        organization=OrganizationResponse.from_organization(ctx.organization),
    )
