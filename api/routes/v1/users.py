"""
api/routes/v1/users.py -- Staff management REST endpoints.

Routes:
  GET   /api/v1/users            -- users of the caller's organization
  POST  /api/v1/users            -- invite a user (OWNER only)
  PATCH /api/v1/users/{user_id}  -- edit a user (OWNER, or self for name/phone/password)
  DELETE /api/v1/users/{user_id} -- delete a user and their sessions (OWNER only, not self)

Rules live in auth/staff.py; handlers only map transport models. Users of
another organization are reported as not_found.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import StaffCreate, StaffPatch, UserResponse
from auth import staff
from auth.dependencies import get_session
from auth.models import SessionContext
from auth.store import CredentialStore

# Auth policy:
# - GET   /api/v1/users:       requires auth (get_session)
# - POST  /api/v1/users:       requires OWNER (enforced in auth.staff.invite_user)
# - PATCH /api/v1/users/{id}:  requires OWNER, or the user themselves (auth.staff.update_staff)
# - DELETE /api/v1/users/{id}: requires OWNER (enforced in auth.staff.delete_staff)
router = APIRouter()


def _store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, ctx: SessionContext = Depends(get_session)) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in staff.list_staff(_store(request), ctx)]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: StaffCreate,
    ctx: SessionContext = Depends(get_session),
) -> UserResponse:
    """Create a user in the caller's organization. OWNER only."""
    user = staff.invite_user(
        _store(request),
        ctx,
        email=body.email,
        password=body.password,
        name=body.name,
        role=body.role,
        phone=body.phone,
    )
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: StaffPatch,
    ctx: SessionContext = Depends(get_session),
) -> UserResponse:
    """Update a user. Omitted fields are unchanged.

    Blocks self-deactivation and demoting or deactivating the last active
    owner of the organization.
    """
    updated = staff.update_staff(_store(request), ctx, user_id, **body.model_dump(exclude_none=True))
    return UserResponse.from_user(updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, ctx: SessionContext = Depends(get_session)) -> Response:
    """Delete a user. Their orders stay, with the assignment and history authorship cleared."""
    staff.delete_staff(_store(request), ctx, user_id, detach=request.app.state.order_service.release_user)
    return Response(status_code=204)
