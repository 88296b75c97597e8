"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in orders/models.py -- dataclasses own domain shape; stores and services do
the work.

Layer rule: no imports from api/ or orders/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of user roles. The first user of an organization is OWNER."""

    OWNER = "OWNER"
    MANAGER = "MANAGER"
    FLORIST = "FLORIST"
    COURIER = "COURIER"


@dataclass
class Organization:
    """Tenant boundary. Every User and Order belongs to exactly one."""

    name: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class User:
    """An identity inside one organization.

    email is always stored lowercased; it is unique across the whole system,
    not just within the organization, because login takes only an email.

    password_hash is a bcrypt hash (see auth/tokens.py). No reversible copy of
    the password is ever stored.

    is_active=False blocks authentication and invalidates existing sessions at
    their next validation, without deleting any history.
    """

    organization_id: str
    email: str
    password_hash: str
    name: str
    role: Role = Role.MANAGER
    id: str | None = None
    phone: str | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class Session:
    """A login. token_hash is HMAC-SHA256(SECRET_KEY, token); the raw token is
    handed to the client once and never persisted."""

    user_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    created_at: str | None = None


@dataclass
class AuthResult:
    """Returned by register() and login()."""

    user: User
    organization: Organization
    token: str


@dataclass
class SessionContext:
    """A validated session: who is acting and for which organization."""

    user: User
    session: Session
    organization: Organization
