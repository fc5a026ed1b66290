"""
auth/sessions.py -- Access/refresh token issuance and rotation.

Sessions are stateless: nothing about an issued token is recorded server-side.
rotate() mints a fresh pair from a valid refresh token, but the old refresh
token stays redeemable until its own exp -- there is no denylist. Logout is
likewise cookie-only. Closing that gap needs a token id claim checked against
a revocation store on every verify.

Layer rule: no imports from api/, web/, or qa/.
"""

from __future__ import annotations

import logging

from auth.codec import JoseTokenCodec, TokenCodec
from auth.models import IdentityClaims, TokenPair, TokenPayload
from core.config import Settings

logger = logging.getLogger("devsolve.auth.sessions")


class SessionIssuer:
    """Mint short-lived access tokens and long-lived refresh tokens."""

    def __init__(self, codec: TokenCodec, access_ttl: int, refresh_ttl: int) -> None:
        self.codec = codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionIssuer:
        return cls(
            JoseTokenCodec(settings.secret_key),
            access_ttl=settings.access_token_seconds,
            refresh_ttl=settings.refresh_token_seconds,
        )

    def issue_access(self, claims: IdentityClaims) -> str:
        return self.codec.sign(claims, self.access_ttl)

    def issue_refresh(self, claims: IdentityClaims) -> str:
        return self.codec.sign(claims, self.refresh_ttl)

    def issue_pair(self, claims: IdentityClaims) -> TokenPair:
        return TokenPair(access_token=self.issue_access(claims), refresh_token=self.issue_refresh(claims))

    def verify(self, token: str) -> TokenPayload | None:
        return self.codec.verify(token)

    def rotate(self, refresh_token: str) -> TokenPair | None:
        """Exchange a valid refresh token for a new pair with the same identity.

        Returns None when the refresh token is invalid or expired; the caller
        must then require a full login.
        """
        payload = self.codec.verify(refresh_token)
        if payload is None:
            logger.info("Refresh token rejected")
            return None
        logger.debug("Rotating session for subject %s", payload.claims.subject)
        return self.issue_pair(payload.claims)
