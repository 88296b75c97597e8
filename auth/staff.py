"""
auth/staff.py -- Managing the users of one organization.

Only an OWNER invites or deletes users, or changes roles and active flags.
Any user may edit their own name, phone, and password. Users of another
organization are reported as NotFound, never as Forbidden.

Lockout guards:
  - An owner cannot deactivate themselves.
  - An owner cannot delete themselves.
  - The last active OWNER of an organization cannot be demoted, deactivated
    or deleted. The store enforces this in the same write as the change.

Deactivation does not delete sessions: validate_session() rejects them on
their next use because the owner is inactive.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from auth.guard import has_role, require_owner, scope_organization
from auth.models import Role, SessionContext, User
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.errors import FloraOpsError, Forbidden, NotFound

logger = logging.getLogger("floraops.auth")

_SELF_EDITABLE = frozenset({"name", "phone", "password"})
_OWNER_EDITABLE = _SELF_EDITABLE | {"role", "is_active"}
_LAST_OWNER = "An organization must keep at least one active owner."


def list_staff(store: CredentialStore, ctx: SessionContext) -> list[User]:
    return store.list_users(scope_organization(ctx))


def invite_user(
    store: CredentialStore,
    ctx: SessionContext,
    email: str,
    password: str,
    name: str,
    role: Role = Role.MANAGER,
    phone: Optional[str] = None,
) -> User:
    """Create a user in the caller's organization. OWNER only.

    Raises DuplicateEmail if the email is already registered anywhere.
    """
    require_owner(ctx)
    user = store.create_user(
        User(
            organization_id=scope_organization(ctx),
            email=email,
            password_hash=hash_password(password),
            name=name,
            role=Role(role),
            phone=phone,
        )
    )
    logger.info("User %s invited %s as %s", ctx.user.id, user.id, user.role.value)
    return user


def _removes_owner(changes: dict) -> bool:
    """True if applying changes would take an OWNER out of the active owners."""
    return changes.get("is_active") is False or ("role" in changes and Role(changes["role"]) != Role.OWNER)


def _owner_guard_failed(store: CredentialStore, org_id: str, user_id: str) -> FloraOpsError:
    # A conditional write matched nothing: either the user vanished meanwhile
    # or they are the last active owner.
    current = store.find_user_by_id(user_id)
    if current is None or current.organization_id != org_id:
        return NotFound("User not found.")
    return Forbidden(_LAST_OWNER)


def update_staff(store: CredentialStore, ctx: SessionContext, user_id: str, **changes) -> User:
    """Apply changes to a user of the caller's organization.

    Accepted keys: name, phone, password (any user, on themselves), role and
    is_active (OWNER only). None values are ignored.

    Demotion and deactivation are conditional writes in the store, so the
    last-owner check and the change happen atomically.
    """
    changes = {k: v for k, v in changes.items() if v is not None}
    unknown = set(changes) - _OWNER_EDITABLE
    if unknown:
        raise ValueError(f"Unknown user fields: {unknown!r}")

    org_id = scope_organization(ctx)
    is_self = user_id == ctx.user.id
    if not has_role(ctx, Role.OWNER):
        if not is_self:
            raise Forbidden("Only an owner can edit other users.")
        if set(changes) - _SELF_EDITABLE:
            raise Forbidden("Only an owner can change roles or deactivate users.")

    target = store.find_user_by_id(user_id)
    if target is None or target.organization_id != org_id:
        raise NotFound("User not found.")
    if changes.get("is_active") is False and is_self:
        raise Forbidden("You cannot deactivate your own account.")

    fields = dict(changes)
    if "password" in fields:
        fields["password_hash"] = hash_password(fields.pop("password"))
    updated = store.update_user(user_id, org_id, keep_owner=_removes_owner(changes), **fields)
    if updated is None:
        raise _owner_guard_failed(store, org_id, user_id)
    if fields.get("is_active") is False:
        logger.info("User %s deactivated by %s", user_id, ctx.user.id)
    return updated


def delete_staff(
    store: CredentialStore,
    ctx: SessionContext,
    user_id: str,
    detach: Optional[Callable[[str, str], None]] = None,
) -> None:
    """Delete a user of the caller's organization. OWNER only.

    The user's sessions are deleted with them. detach(org_id, user_id) is then
    called so the caller can clear references held outside auth/, such as
    order assignments and status history authorship.
    """
    require_owner(ctx)
    if user_id == ctx.user.id:
        raise Forbidden("You cannot delete your own account.")
    org_id = scope_organization(ctx)
    target = store.find_user_by_id(user_id)
    if target is None or target.organization_id != org_id:
        raise NotFound("User not found.")

    if not store.delete_user(user_id, keep_owner=True):
        raise _owner_guard_failed(store, org_id, user_id)
    if detach is not None:
        detach(org_id, user_id)
    logger.info("User %s deleted by %s", user_id, ctx.user.id)
