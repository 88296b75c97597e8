"""
auth/store.py -- Persistence layer for organizations, users, and sessions.

Pattern: Repository + Data Mapper (same as orders/store.py).
CredentialStore is the contract; SqlCredentialStore (SQLAlchemy Core) and
InMemoryCredentialStore are the two repositories; _row_to_* are the mappers.
Services and route code never touch SQL directly.

Contract rules:
  "Not found" is never an error here. Lookups return None and the caller
  decides which failure to report.

  Emails are stored and compared lowercased. create_user() raises
  DuplicateEmail when the unique email index rejects the insert, which also
  covers two registrations racing for the same address.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Sessions are stored by token digest only (see auth/tokens.py).

Layer rule: no imports from api/ or orders/.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Organization, Role, Session, User
from core.config import get_settings
from core.errors import DuplicateEmail

# Fields update_user() accepts. Validated before any SQL write so column names
# never come from caller input.
USER_MUTABLE_FIELDS = frozenset({"name", "phone", "role", "is_active", "password_hash"})

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_organizations = Table(
    "organizations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", String(36), nullable=False, index=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("name", String(255), nullable=False),
    Column("phone", String(50)),
    Column("role", String(20), nullable=False, server_default=Role.MANAGER.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),  # ISO 8601 UTC
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _iso(dt: datetime) -> str:
    # Fixed width keeps lexicographic order equal to time order in SQL.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite settings every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Route handlers run in Starlette's thread pool, so a pooled SQLite
        # connection may be used from a thread other than the one that made it.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@runtime_checkable
class CredentialStore(Protocol):
    """Storage contract the session manager and staff services depend on."""

    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def create_user(self, user: User) -> User: ...

    def create_organization(self, name: str) -> Organization: ...

    def find_organization(self, org_id: str) -> Optional[Organization]: ...

    def list_users(self, org_id: str) -> list[User]: ...

    def update_user(self, user_id: str, org_id: str, keep_owner: bool = False, **fields) -> Optional[User]: ...

    def count_active_owners(self, org_id: str) -> int: ...

    def delete_user(self, user_id: str, keep_owner: bool = False) -> bool: ...

    def delete_organization(self, org_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def find_session(self, token_hash: str) -> Optional[Session]: ...

    def delete_session(self, token_hash: str) -> bool: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


def _check_user_fields(fields: dict) -> dict:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown user fields: {unknown!r}")
    if "role" in fields:
        fields["role"] = Role(fields["role"])
    if "is_active" in fields:
        fields["is_active"] = bool(fields["is_active"])
    return fields


def _not_last_owner():
    """WHERE clause: the users row is not its organization's last active OWNER.

    The count runs inside the same UPDATE/DELETE statement as the write, so
    SQLite evaluates it under the write lock. Two owners demoting or deleting
    each other concurrently cannot both pass.
    """
    others = _users.alias("other_owners")
    active_owners = (
        select(func.count())
        .select_from(others)
        .where(
            (others.c.organization_id == _users.c.organization_id)
            & (others.c.role == Role.OWNER.value)
            & (others.c.is_active == 1)
        )
        .correlate(_users)
        .scalar_subquery()
    )
    return (_users.c.role != Role.OWNER.value) | (_users.c.is_active == 0) | (active_owners > 1)


def _is_last_owner(users: dict[str, User], user: User) -> bool:
    # In-memory counterpart of _not_last_owner(). Caller holds the lock.
    if user.role != Role.OWNER or not user.is_active:
        return False
    owners = sum(
        1
        for u in users.values()
        if u.organization_id == user.organization_id and u.role == Role.OWNER and u.is_active
    )
    return owners <= 1


# ---------------------------------------------------------------------------
# SQL repository
# ---------------------------------------------------------------------------


class SqlCredentialStore:
    """SQLAlchemy Core repository for Organization, User, and Session.

    Usage:
        store = SqlCredentialStore()                                # settings.database_url
        store = SqlCredentialStore("postgresql://user:pw@host/db")  # PostgreSQL
        org = store.create_organization("Flowers Co")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, name: str) -> Organization:
        org = Organization(id=_new_id(), name=name, created_at=_now_iso())
        with self.engine.connect() as conn:
            conn.execute(_organizations.insert().values(id=org.id, name=org.name, created_at=org.created_at))
            conn.commit()
        return org

    def find_organization(self, org_id: str) -> Optional[Organization]:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def delete_organization(self, org_id: str) -> bool:
        """Remove an organization row. Used only to undo a failed registration."""
        with self.engine.connect() as conn:
            result = conn.execute(_organizations.delete().where(_organizations.c.id == org_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and created_at filled in.

        Raises DuplicateEmail if the lowercased email already exists.
        """
        created = replace(user, id=_new_id(), email=normalize_email(user.email), created_at=_now_iso())
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=created.id,
                        organization_id=created.organization_id,
                        email=created.email,
                        password_hash=created.password_hash,
                        name=created.name,
                        phone=created.phone,
                        role=Role(created.role).value,
                        is_active=1 if created.is_active else 0,
                        created_at=created.created_at,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateEmail() from exc
        return created

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, org_id: str) -> list[User]:
        """Return the organization's users ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.organization_id == org_id).order_by(_users.c.name)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, org_id: str, keep_owner: bool = False, **fields) -> Optional[User]:
        """Update mutable fields on a user of the given organization.

        Returns the updated user, or None if no such user exists in org_id.
        With keep_owner=True the write is conditional: it also returns None,
        changing nothing, when the user is the organization's last active
        OWNER.
        """
        fields = _check_user_fields(fields)
        values = dict(fields)
        if "role" in values:
            values["role"] = values["role"].value
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0
        where = (_users.c.id == user_id) & (_users.c.organization_id == org_id)
        update_where = where & _not_last_owner() if keep_owner else where
        with self.engine.begin() as conn:
            if values:
                result = conn.execute(_users.update().where(update_where).values(**values))
                if keep_owner and result.rowcount != 1:
                    return None
            row = conn.execute(_users.select().where(where)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_active_owners(self, org_id: str) -> int:
        stmt = select(func.count()).select_from(_users).where(
            (_users.c.organization_id == org_id)
            & (_users.c.role == Role.OWNER.value)
            & (_users.c.is_active == 1)
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    def delete_user(self, user_id: str, keep_owner: bool = False) -> bool:
        """Delete a user and their sessions in one transaction.

        With keep_owner=True nothing is deleted when the user is their
        organization's last active OWNER. Returns False in that case too.
        """
        where = _users.c.id == user_id
        if keep_owner:
            where = where & _not_last_owner()
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(where))
            if result.rowcount:
                conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        created = replace(session, id=_new_id(), created_at=_now_iso())
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=created.id,
                    user_id=created.user_id,
                    token_hash=created.token_hash,
                    expires_at=_iso(created.expires_at),
                    created_at=created.created_at,
                )
            )
            conn.commit()
        return created

    def find_session(self, token_hash: str) -> Optional[Session]:
        """Look up a session by token digest. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, token_hash: str) -> bool:
        """Delete a session. Deleting an unknown digest is not an error."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_expired_sessions(self, now: datetime) -> int:
        """Delete every session with expires_at <= now. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    """Dict-backed CredentialStore for tests and embedding.

    One lock guards all three maps, so every method is atomic with respect to
    the others. Returned objects are copies; mutating them does not write
    through.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._organizations: dict[str, Organization] = {}
        self._users: dict[str, User] = {}
        self._sessions: dict[str, Session] = {}  # keyed by token_hash

    def create_organization(self, name: str) -> Organization:
        org = Organization(id=_new_id(), name=name, created_at=_now_iso())
        with self._lock:
            self._organizations[org.id] = org
        return replace(org)

    def find_organization(self, org_id: str) -> Optional[Organization]:
        with self._lock:
            org = self._organizations.get(org_id)
        return replace(org) if org is not None else None

    def delete_organization(self, org_id: str) -> bool:
        with self._lock:
            return self._organizations.pop(org_id, None) is not None

    def create_user(self, user: User) -> User:
        created = replace(user, id=_new_id(), email=normalize_email(user.email), created_at=_now_iso())
        created.role = Role(created.role)
        with self._lock:
            if any(u.email == created.email for u in self._users.values()):
                raise DuplicateEmail()
            self._users[created.id] = created
        return replace(created)

    def find_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._lock:
            user = next((u for u in self._users.values() if u.email == email), None)
        return replace(user) if user is not None else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
        return replace(user) if user is not None else None

    def list_users(self, org_id: str) -> list[User]:
        with self._lock:
            users = [replace(u) for u in self._users.values() if u.organization_id == org_id]
        return sorted(users, key=lambda u: u.name)

    def update_user(self, user_id: str, org_id: str, keep_owner: bool = False, **fields) -> Optional[User]:
        fields = _check_user_fields(fields)
        with self._lock:
            user = self._users.get(user_id)
            if user is None or user.organization_id != org_id:
                return None
            if keep_owner and _is_last_owner(self._users, user):
                return None
            updated = replace(user, **fields)
            self._users[user_id] = updated
        return replace(updated)

    def count_active_owners(self, org_id: str) -> int:
        with self._lock:
            return sum(
                1
                for u in self._users.values()
                if u.organization_id == org_id and u.role == Role.OWNER and u.is_active
            )

    def delete_user(self, user_id: str, keep_owner: bool = False) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None or (keep_owner and _is_last_owner(self._users, user)):
                return False
            del self._users[user_id]
            self._sessions = {k: s for k, s in self._sessions.items() if s.user_id != user_id}
        return True

    def create_session(self, session: Session) -> Session:
        created = replace(session, id=_new_id(), created_at=_now_iso())
        with self._lock:
            self._sessions[created.token_hash] = created
        return replace(created)

    def find_session(self, token_hash: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(token_hash)
        return replace(session) if session is not None else None

    def delete_session(self, token_hash: str) -> bool:
        with self._lock:
            return self._sessions.pop(token_hash, None) is not None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, s in self._sessions.items() if s.expires_at <= now]
            for key in expired:
                del self._sessions[key]
        return len(expired)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_organization(row) -> Organization:
    return Organization(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        organization_id=row.organization_id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        phone=row.phone,
        role=Role(row.role),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    expires_at = datetime.fromisoformat(row.expires_at)
    if expires_at.tzinfo is None:
        # Naive timestamp -- assume UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=expires_at,
        created_at=row.created_at,
    )
