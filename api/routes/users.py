"""
api/routes/users.py -- User profile REST endpoints.

Routes:
  GET   /api/users/{id}  -- public profile (no email)
  PATCH /api/users/{id}  -- update your own name / avatar (requires auth)

Security:
  IDOR guard: PATCH compares the path id with the token subject; editing
  someone else's profile is 403 whatever the caller's role.
  Only name and avatar are writable here. email, role, password and
  reputation in the body are ignored (see api.models.UserPatch).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import AuthorizationError, NotFound
from api.limiter import RateLimit
from api.models import ProfileOut, UserOut, UserPatch, envelope_response
from auth.dependencies import get_current_claims
from auth.models import IdentityClaims
from auth.store import UserStore

logger = logging.getLogger("devsolve.api.users")

# Auth policy:
# - GET   /api/users/{id}: public
# - PATCH /api/users/{id}: requires auth, own profile only
router = APIRouter(dependencies=[Depends(RateLimit("api"))])


@router.get("/users/{user_id}")
def get_user(request: Request, user_id: int) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    user = store.find_by_id(user_id)
    if user is None:
        raise NotFound("User not found")
    return envelope_response(data=ProfileOut.from_user(user))


@router.patch("/users/{user_id}")
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    claims: IdentityClaims = Depends(get_current_claims),
) -> JSONResponse:
    if claims.subject != str(user_id):
        raise AuthorizationError("You can only update your own profile")

    store: UserStore = request.app.state.user_store
    user = store.find_by_id(user_id)
    if user is None:
        raise NotFound("User not found")

    changes = body.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] is not None:
        user.name = changes["name"]
    if "avatar" in changes:
        user.avatar = changes["avatar"] or None
    store.save(user)
    logger.info("User %s updated their profile (%s)", user.id, ", ".join(sorted(changes)) or "no changes")
    return envelope_response(message="Profile updated", data=UserOut.from_user(user))
