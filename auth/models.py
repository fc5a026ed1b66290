"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and routes do the work.

Layer rule: no imports from api/, web/, or qa/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class User:
    """A registered account.

    hashed_password is the bcrypt hash as persisted. password is a transient
    plaintext slot: assign a new password here and UserStore.create()/save()
    hash it into hashed_password before writing (the pre-save hook), then
    clear it. It is never persisted and never shown in repr().

    verification_token_hash / reset_token_hash hold sha256(raw_token) only.
    The raw value exists once, in the email sent to the user.
    """

    name: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    password: str | None = field(default=None, repr=False, compare=False)
    avatar: str | None = None
    role: str = "user"  # "user", "moderator", "admin"
    reputation: int = 0
    is_verified: bool = False
    verification_token_hash: str | None = field(default=None, repr=False)
    verification_expires: datetime | None = None
    reset_token_hash: str | None = field(default=None, repr=False)
    reset_expires: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def identity(self) -> IdentityClaims:
        """Return the claim set minted into this user's tokens."""
        return IdentityClaims(
            subject=str(self.id),
            email=self.email,
            role=self.role,
            verified=self.is_verified,
        )


@dataclass(frozen=True)
class IdentityClaims:
    """The identity carried inside every access and refresh token.

    Frozen: once a token is minted its claims cannot change. A change of role
    or verification state only reaches the client with the next issued token.
    """

    subject: str
    email: str
    role: str
    verified: bool

    def to_payload(self) -> dict[str, Any]:
        # Key order is part of the wire format -- both codec backends rely on it.
        return {
            "sub": self.subject,
            "email": self.email,
            "role": self.role,
            "verified": self.verified,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IdentityClaims:
        """Build claims from a decoded payload. Raises KeyError/TypeError on bad shape."""
        subject = payload["sub"]
        email = payload["email"]
        role = payload["role"]
        verified = payload.get("verified", False)
        if not isinstance(subject, str) or not isinstance(email, str) or not isinstance(role, str):
            raise TypeError("identity claims must be strings")
        if not isinstance(verified, bool):
            raise TypeError("verified claim must be a boolean")
        return cls(subject=subject, email=email, role=role, verified=verified)


@dataclass(frozen=True)
class TokenPayload:
    """A verified token: its identity plus the issued-at / expires-at stamps (epoch seconds)."""

    claims: IdentityClaims
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
