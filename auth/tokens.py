"""
auth/tokens.py -- Password hashing, session token, and cookie utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). The password is first
       reduced with SHA-256 so bcrypt's 72-byte input limit can neither
       truncate nor reject long passphrases. bcrypt.checkpw() compares the
       digests in constant time. The _DUMMY_HASH constant enables timing
       equalization in SessionManager.login() so response time does not reveal
       whether an email is registered.

  Session tokens: secrets.token_hex(32) gives 256 bits of entropy. The token
       is opaque to clients. We store HMAC-SHA256(SECRET_KEY, token) so lookup
       is O(1) and a copy of the sessions table cannot be replayed without
       SECRET_KEY. bcrypt's intentional slowness is unnecessary here.

  SECRET_KEY: sourced from core.config.get_settings(), which refuses to start
       in production without a key of at least 32 characters.

Layer rule: no imports from api/ or orders/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

import bcrypt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

SESSION_COOKIE = "session_token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    # 44 ASCII bytes, always under bcrypt's 72-byte limit.
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_prehash(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is treated as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login always runs verify_password() even when
# the email does not exist.
DUMMY_HASH: str = hash_password("floraops_timing_dummy")


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Generate a new opaque session token (64 hex chars, 256 bits)."""
    return secrets.token_hex(32)


def hash_session_token(token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, token) as a hex string.

    Deterministic, so the store can look sessions up by digest.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the server-side session lifetime.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_ttl_days * 24 * 60 * 60,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
