"""
auth/guard.py -- Authorization checks on a validated SessionContext.

Every data operation is parameterized by the organization resolved from the
session, never by an organization id taken from the request. Role checks gate
specific operations. Violations raise Forbidden, which is distinct from
Unauthenticated (no valid session at all).

Layer rule: no imports from api/ or orders/.
"""

from __future__ import annotations

from typing import Optional

from auth.models import Role, SessionContext
from core.errors import Forbidden

# Roles allowed to create, delete, and edit orders.
ORDER_MANAGERS = frozenset({Role.OWNER, Role.MANAGER})


def has_role(ctx: SessionContext, *roles: Role) -> bool:
    return ctx.user.role in roles


def require_role(ctx: SessionContext, *roles: Role) -> None:
    """Raise Forbidden unless the acting user holds one of roles."""
    if not has_role(ctx, *roles):
        raise Forbidden(detail=f"Requires role: {', '.join(r.value for r in roles)}")


def require_owner(ctx: SessionContext) -> None:
    require_role(ctx, Role.OWNER)


def scope_organization(ctx: SessionContext, requested_org_id: Optional[str] = None) -> str:
    """Return the organization id every query must be filtered by.

    A client may echo its organization id back; any other value is rejected.
    """
    org_id = ctx.organization.id
    if requested_org_id is not None and requested_org_id != org_id:
        raise Forbidden("Cross-organization access is not allowed.")
    return org_id
