"""
auth/tokens.py -- Password hashing, one-time tokens, credential checks and cookies.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Its cost factor makes
       brute-force of low-entropy secrets expensive. The cost is configurable
       through BCRYPT_ROUNDS so the test suite can run at the minimum (4).
       The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an email
       is registered [C1].

  One-time tokens (email verification, password reset): secrets.token_hex(32)
       gives 256 bits of entropy. Only sha256(raw) is stored; a leaked DB row
       cannot be replayed. bcrypt's slowness is unnecessary for values this
       long, and a deterministic hash keeps the lookup a single indexed query.

  Cookies: httpOnly, samesite=lax, secure when SECURE_COOKIES=true, path "/".
       max_age tracks the token TTL so cookie and token expire together.

Layer rule: no imports from api/, web/, or qa/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from auth.models import TokenPair
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("devsolve.auth")

_settings = get_settings()

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes of input. The slice makes that explicit
    (bcrypt 5.x raises on longer input instead of truncating). The API layer caps
    password length at 128 characters.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except Exception:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("devsolve_timing_dummy")


class CredentialsError(Exception):
    """Login rejected. field names the form field the message belongs to."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


def authenticate_user(store: UserStore, email: str, password: str) -> User:
    """Check an email/password pair and return the matching User.

    Raises CredentialsError("email", ...) for an unknown email and
    CredentialsError("password", ...) for a wrong password. The two cases get
    distinct field messages but the route answers both with the same status.

    bcrypt always runs -- against _DUMMY_HASH when the email is unknown -- so
    response time does not reveal which case occurred [C1]. The verification
    gate is the caller's decision, not this function's.
    """
    user = store.find_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        raise CredentialsError("email", "No account found with this email")
    if not store.compare_password(user, password):
        raise CredentialsError("password", "Incorrect password")
    return user


# ---------------------------------------------------------------------------
# One-time tokens (verification / password reset)
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a fresh 64-hex-char random token. Shown to the user once, never stored."""
    return secrets.token_hex(32)


def hash_token(raw_token: str) -> str:
    """Return sha256(raw_token) as hex -- the only form a one-time token is persisted in."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_cookie(response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )


def set_auth_cookies(response, tokens: TokenPair) -> None:
    """Write the access and refresh tokens as httpOnly cookies on the response.

    max_age of each cookie equals the TTL its token was minted with.
    """
    _set_cookie(response, ACCESS_TOKEN_COOKIE, tokens.access_token, _settings.access_token_seconds)
    _set_cookie(response, REFRESH_TOKEN_COOKIE, tokens.refresh_token, _settings.refresh_token_seconds)


def clear_auth_cookies(response) -> None:
    """Expire both auth cookies (empty value, max_age=0). Nothing is revoked server-side."""
    _set_cookie(response, ACCESS_TOKEN_COOKIE, "", 0)
    _set_cookie(response, REFRESH_TOKEN_COOKIE, "", 0)
