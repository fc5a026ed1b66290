"""
auth/codec.py -- Signed bearer token codec (HS256, three dot-separated segments).

Wire format:
  base64url(header) "." base64url(payload) "." base64url(signature)

  header    {"alg":"HS256","typ":"JWT"} -- compact JSON, keys sorted
  payload   {"sub":...,"email":...,"role":...,"verified":...,"iat":...,"exp":...}
            compact JSON, keys in exactly that order, iat/exp as epoch seconds
  signature HMAC-SHA256(secret, "<header segment>.<payload segment>")
  base64url uses the URL-safe alphabet with "=" padding stripped.

Two backends implement the same format:

  JoseTokenCodec -- main runtime. Built on python-jose, the same library the
      rest of the auth stack uses for JWT work.

  HmacTokenCodec -- restricted backend used by the route guard middleware.
      It depends only on hmac/hashlib/base64/json so it can run before the
      application state (stores, issuer) is reachable.

The two must stay byte-for-byte consistent: a token minted by one is accepted
by the other and vice versa. tests/test_codec.py pins a fixed conformance
vector that both backends have to reproduce.

verify() never raises. Any malformed, tampered, or expired token yields None,
so callers treat "absent" and "bad" credentials the same way.

Layer rule: no imports from api/, web/, or qa/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import Callable
from typing import Any, Protocol

from jose import JWTError, jwt

from auth.models import IdentityClaims, TokenPayload

ALGORITHM = "HS256"

_HEADER = {"alg": ALGORITHM, "typ": "JWT"}


class TokenCodec(Protocol):
    """Sign identity claims into a token string and verify it back."""

    def sign(self, claims: IdentityClaims, ttl_seconds: int) -> str: ...

    def verify(self, token: str) -> TokenPayload | None: ...


# ---------------------------------------------------------------------------
# Shared payload rules
# ---------------------------------------------------------------------------


def _build_payload(claims: IdentityClaims, now: int, ttl_seconds: int) -> dict[str, Any]:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")
    payload = claims.to_payload()
    payload["iat"] = now
    payload["exp"] = now + ttl_seconds
    return payload


def _accept_payload(payload: Any, now: int) -> TokenPayload | None:
    """Apply the expiry rule and map a decoded payload to TokenPayload.

    A token whose exp is at or before now is expired.
    """
    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    iat = payload.get("iat", 0)
    if not isinstance(exp, int) or isinstance(exp, bool) or not isinstance(iat, int):
        return None
    if exp <= now:
        return None
    try:
        claims = IdentityClaims.from_payload(payload)
    except (KeyError, TypeError):
        return None
    return TokenPayload(claims=claims, issued_at=iat, expires_at=exp)


def _split(token: str) -> list[str] | None:
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts


# ---------------------------------------------------------------------------
# Primitive backend (route guard)
# ---------------------------------------------------------------------------


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _compact_json(obj: dict, sort_keys: bool = False) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=sort_keys).encode("utf-8")


class HmacTokenCodec:
    """Token codec built directly on hmac + hashlib.sha256."""

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def sign(self, claims: IdentityClaims, ttl_seconds: int) -> str:
        payload = _build_payload(claims, int(self._clock()), ttl_seconds)
        header_segment = _b64url_encode(_compact_json(_HEADER, sort_keys=True))
        payload_segment = _b64url_encode(_compact_json(payload))
        signing_input = f"{header_segment}.{payload_segment}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> TokenPayload | None:
        try:
            parts = _split(token)
            if parts is None:
                return None
            header_segment, payload_segment, signature = parts
            expected = self._signature(f"{header_segment}.{payload_segment}")
            if not hmac.compare_digest(signature.encode("ascii"), expected.encode("ascii")):
                return None
            header = json.loads(_b64url_decode(header_segment))
            if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
                return None
            payload = json.loads(_b64url_decode(payload_segment))
            return _accept_payload(payload, int(self._clock()))
        except Exception:
            # Malformed input of any kind is an invalid token, never an error.
            return None


# ---------------------------------------------------------------------------
# python-jose backend (main runtime)
# ---------------------------------------------------------------------------


class JoseTokenCodec:
    """Token codec backed by python-jose.

    Expiry is evaluated here against the codec clock (verify_exp=False on the
    jose side) so both backends share one rule: exp <= now is expired.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        self._secret = secret
        self._clock = clock

    def sign(self, claims: IdentityClaims, ttl_seconds: int) -> str:
        payload = _build_payload(claims, int(self._clock()), ttl_seconds)
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> TokenPayload | None:
        try:
            if _split(token) is None:
                return None
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except (JWTError, ValueError, TypeError, AttributeError):
            return None
        return _accept_payload(payload, int(self._clock()))
