"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. access_token cookie -- set by the login/register/refresh responses.
  2. Authorization: Bearer <token> header -- API clients.

Both are verified with the SessionIssuer on app.state (the main token codec).
The dependencies yield IdentityClaims, not a User: routes that need the fresh
record load it themselves, so a token for a deleted account can still be told
apart (404) from a missing token (401).

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/, web/, or qa/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import IdentityClaims
from auth.sessions import SessionIssuer
from auth.tokens import ACCESS_TOKEN_COOKIE


def _presented_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_claims(request: Request) -> IdentityClaims | None:
    """Return the claims of a valid access token, or None. Never raises."""
    token = _presented_token(request)
    if token is None:
        return None
    issuer: SessionIssuer = request.app.state.issuer
    payload = issuer.verify(token)
    return payload.claims if payload is not None else None


def get_current_claims(request: Request) -> IdentityClaims:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: IdentityClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return claims
