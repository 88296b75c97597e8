"""
auth/sessions.py -- Registration, login, and server-side session lifecycle.

SessionManager is the single choke point for authentication: every
authenticated request resolves its bearer token through validate_session().

Security design:
  Login timing equalization: verify_password() always runs, against
  DUMMY_HASH when the email is unknown, so response time does not reveal
  which emails are registered. Unknown email and wrong password raise the
  same InvalidCredentials. The active flag is checked only after the password
  verifies, so a deactivated account does not leak password correctness.

  Expiry is lazy. A session is valid while now < expires_at; expired rows are
  indistinguishable from unknown tokens and are swept by
  purge_expired_sessions() on a timer.

  Registration is all-or-nothing. If anything fails after the organization
  row is written (lost email race, deadline, storage error), the user and
  organization are deleted before the error propagates.

Layer rule: no imports from api/ or orders/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from auth.models import AuthResult, Role, Session, SessionContext, User
from auth.store import CredentialStore, normalize_email
from auth.tokens import DUMMY_HASH, generate_session_token, hash_password, hash_session_token, verify_password
from core.config import get_settings
from core.deadline import check_deadline
from core.errors import AccountDeactivated, DuplicateEmail, InvalidCredentials

logger = logging.getLogger("floraops.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Issues, validates, and revokes opaque session tokens.

    Usage:
        manager = SessionManager(SqlCredentialStore())
        result = manager.register("a@x.com", "Passw0rd1", "Anna", "Flowers Co")
        ctx = manager.validate_session(result.token)
        manager.delete_session(result.token)

    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        store: CredentialStore,
        session_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.session_ttl = session_ttl or timedelta(days=get_settings().session_ttl_days)
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        name: str,
        org_name: str,
        deadline: Optional[float] = None,
    ) -> AuthResult:
        """Create an organization with its OWNER and log the owner in.

        Raises DuplicateEmail if the email is taken, DeadlineExceeded if the
        deadline passes before the session is issued.
        """
        email = normalize_email(email)
        check_deadline(deadline, "register")
        if self.store.find_user_by_email(email) is not None:
            raise DuplicateEmail()
        password_hash = hash_password(password)

        check_deadline(deadline, "register")
        organization = self.store.create_organization(org_name)
        user: Optional[User] = None
        try:
            user = self.store.create_user(
                User(
                    organization_id=organization.id,
                    email=email,
                    password_hash=password_hash,
                    name=name,
                    role=Role.OWNER,
                )
            )
            check_deadline(deadline, "register")
            token = self.create_session(user.id)
        except Exception:
            # Compensate: an organization must never exist without its owner.
            if user is not None:
                self.store.delete_user(user.id)
            self.store.delete_organization(organization.id)
            logger.warning("Registration rolled back for organization %s", organization.id)
            raise

        logger.info("Registered organization %s with owner %s", organization.id, user.id)
        return AuthResult(user=user, organization=organization, token=token)

    def login(self, email: str, password: str, deadline: Optional[float] = None) -> AuthResult:
        """Verify credentials and issue a new session.

        Raises InvalidCredentials for an unknown email or wrong password and
        AccountDeactivated for a correct password on an inactive account.
        """
        check_deadline(deadline, "login")
        user = self.store.find_user_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed: unknown email")
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            logger.info("Login failed: bad password for user %s", user.id)
            raise InvalidCredentials()
        if not user.is_active:
            logger.warning("Login refused: user %s is deactivated", user.id)
            raise AccountDeactivated()

        organization = self.store.find_organization(user.organization_id)
        if organization is None:
            logger.error("User %s references missing organization %s", user.id, user.organization_id)
            raise InvalidCredentials()

        check_deadline(deadline, "login")
        token = self.create_session(user.id)
        return AuthResult(user=user, organization=organization, token=token)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str) -> str:
        """Persist a new session for user_id and return its opaque token."""
        token = generate_session_token()
        self.store.create_session(
            Session(
                user_id=user_id,
                token_hash=hash_session_token(token),
                expires_at=self._clock() + self.session_ttl,
            )
        )
        return token

    def validate_session(self, token: Optional[str]) -> Optional[SessionContext]:
        """Resolve a token to (user, session, organization), or None.

        None covers every unauthenticated case alike: empty, unknown, or
        expired token, and a deleted or deactivated owner. Read-only.
        """
        if not token:
            return None
        session = self.store.find_session(hash_session_token(token))
        if session is None or self._clock() >= session.expires_at:
            return None
        user = self.store.find_user_by_id(session.user_id)
        if user is None or not user.is_active:
            return None
        organization = self.store.find_organization(user.organization_id)
        if organization is None:
            return None
        return SessionContext(user=user, session=session, organization=organization)

    def delete_session(self, token: Optional[str]) -> None:
        """Revoke a session. Unknown or empty tokens are ignored."""
        if token:
            self.store.delete_session(hash_session_token(token))

    def purge_expired_sessions(self) -> int:
        """Delete expired session rows. Returns the number removed."""
        removed = self.store.delete_expired_sessions(self._clock())
        if removed:
            logger.info("Purged %d expired sessions", removed)
        return removed
