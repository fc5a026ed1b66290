"""
api/routes/auth.py -- Account and session REST endpoints.

Routes:
  POST /api/auth/register         -- create account; emails a verification link; sets cookies
  POST /api/auth/login            -- password login; verified accounts only; sets cookies
  POST /api/auth/logout           -- clears both cookies
  GET  /api/auth/me               -- current user (cookie or Bearer)
  POST /api/auth/refresh          -- rotate the token pair from the refresh cookie
  GET  /api/auth/verify-email     -- confirm an emailed verification token
  POST /api/auth/verify-email     -- resend the verification email
  POST /api/auth/forgot-password  -- email a password reset link
  POST /api/auth/reset-password   -- set a new password with a reset token

Each handler runs in the same order: rate-limit check (dependency) -> input
validation (request model) -> storage -> token issuance / cookies -> envelope.

Security:
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that sets auth cookies.
  Anti-enumeration: forgot-password and the verification resend answer an
  unknown email exactly like a known one.
  Email delivery failures are logged and never fail the request.

Store calls block (SQLAlchemy, bcrypt). Handlers that only touch the store
are plain def so FastAPI runs them in its threadpool; the three handlers that
await the mailer hand each store call to run_in_threadpool().
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.errors import AuthenticationError, AuthorizationError, Conflict, NotFound, ValidationError
from api.limiter import RateLimit
from api.models import (
    EmailRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserOut,
    envelope_response,
)
from auth.dependencies import get_current_claims
from auth.email import Mailer
from auth.models import IdentityClaims, User
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import (
    REFRESH_TOKEN_COOKIE,
    CredentialsError,
    authenticate_user,
    clear_auth_cookies,
    generate_token,
    hash_token,
    set_auth_cookies,
)
from core.config import get_settings

logger = logging.getLogger("devsolve.api.auth")

_settings = get_settings()

# Auth policy:
# - register / login / verify-email / forgot-password / reset-password: public, rate-limited
# - logout:  public -- clearing cookies needs no prior auth
# - refresh: refresh cookie required
# - me:      access token required (get_current_claims)
router = APIRouter()

_DUPLICATE_EMAIL = {"email": "An account with this email already exists"}
_FORGOT_PASSWORD_MESSAGE = "If an account exists with that email, a password reset link has been sent."
_RESEND_GENERIC_MESSAGE = "If an account exists, a verification email has been sent."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _verification_expiry() -> datetime:
    return _now() + timedelta(hours=_settings.verification_token_ttl_hours)


def _with_session(response: JSONResponse, issuer: SessionIssuer, claims: IdentityClaims) -> JSONResponse:
    set_auth_cookies(response, issuer.issue_pair(claims))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


async def _send_quietly(send, *args) -> None:
    """Await an email send; a failure is logged and otherwise ignored."""
    try:
        sent = await send(*args)
    except Exception:
        logger.exception("Email send raised")
        return
    if not sent:
        logger.warning("Email could not be delivered; the request continues")


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
async def register(
    request: Request,
    body: RegisterRequest,
    _limit: str = Depends(RateLimit("register", "Too many registration attempts. Please try again later.")),
) -> JSONResponse:
    """Create an unverified account and start a session for it.

    The duplicate-email check here is only a fast path. Two concurrent
    registrations for the same address can both pass it; the UNIQUE index on
    users.email then rejects the second insert and it is answered with the
    same 409.
    """
    store: UserStore = request.app.state.user_store
    mailer: Mailer = request.app.state.mailer

    if await run_in_threadpool(store.find_by_email, body.email) is not None:
        raise Conflict("Email already registered", errors=_DUPLICATE_EMAIL)

    raw_token = generate_token()
    user = User(
        name=body.name,
        email=body.email,
        password=body.password,
        verification_token_hash=hash_token(raw_token),
        verification_expires=_verification_expiry(),
    )
    try:
        user = await run_in_threadpool(store.create, user)
    except IntegrityError:
        raise Conflict("Email already registered", errors=_DUPLICATE_EMAIL)
    logger.info("Registered user %s", user.id)

    await _send_quietly(mailer.send_verification_email, user.email, user.name, raw_token)

    response = envelope_response(
        201,
        message="Account created successfully. Please check your email to verify your account.",
        data=UserOut.from_user(user),
    )
    return _with_session(response, request.app.state.issuer, user.identity())


@router.post("/auth/login")
def login(
    request: Request,
    body: LoginRequest,
    limit_key: str = Depends(RateLimit("login", "Too many login attempts. Please try again later.")),
) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password are both 401 but name different fields,
    so the form can point at the right input. An unverified account with the
    right password gets 403 and requires_verification=true instead of a
    session. Only a successful login clears the client's login counter.
    """
    store: UserStore = request.app.state.user_store
    try:
        user = authenticate_user(store, body.email, body.password)
    except CredentialsError as exc:
        logger.info("Login failed (%s)", exc.field)
        raise AuthenticationError("Invalid credentials", errors={exc.field: exc.message})

    if not user.is_verified:
        raise AuthorizationError(
            "Please verify your email before logging in",
            errors={"email": "Email not verified. Check your inbox for the verification link."},
            requires_verification=True,
        )

    request.app.state.rate_limiter.reset(limit_key)
    user.last_login_at = _now()
    store.save(user)

    response = envelope_response(message="Login successful", data=UserOut.from_user(user))
    return _with_session(response, request.app.state.issuer, user.identity())


@router.post("/auth/logout")
def logout() -> JSONResponse:
    """Expire both cookies. Tokens already issued stay valid until their exp."""
    response = envelope_response(message="Logged out successfully")
    clear_auth_cookies(response)
    return response


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(request: Request, claims: IdentityClaims = Depends(get_current_claims)) -> JSONResponse:
    """Return the fresh user record behind the presented access token."""
    store: UserStore = request.app.state.user_store
    user = store.find_by_id(claims.subject)
    if user is None:
        raise NotFound("User not found")
    return envelope_response(data=UserOut.from_user(user))


@router.post("/auth/refresh")
def refresh(request: Request) -> JSONResponse:
    """Rotate the session: a valid refresh cookie buys a new access/refresh pair.

    The new pair carries the same identity claims as the presented token,
    verified flag included. The old refresh token is not revoked.
    """
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not refresh_token:
        raise AuthenticationError("No refresh token provided")

    issuer: SessionIssuer = request.app.state.issuer
    tokens = issuer.rotate(refresh_token)
    if tokens is None:
        raise AuthenticationError("Invalid or expired refresh token")

    response = envelope_response(message="Token refreshed successfully")
    set_auth_cookies(response, tokens)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify-email")
def verify_email(
    request: Request,
    token: str | None = None,
    _limit: str = Depends(RateLimit("auth")),
) -> JSONResponse:
    """Confirm the account holding this verification token.

    The token is single-use: its hash and expiry are cleared on success, so a
    second click answers 400 like any unknown token.
    """
    if not token:
        raise ValidationError("Verification token is required", errors={"token": "Verification token is required"})

    store: UserStore = request.app.state.user_store
    user = store.find_by_verification_token(token)
    if user is None or (user.verification_expires is not None and user.verification_expires <= _now()):
        raise ValidationError("Invalid or expired verification token")

    user.is_verified = True
    user.verification_token_hash = None
    user.verification_expires = None
    store.save(user)
    logger.info("User %s verified their email", user.id)
    return envelope_response(message="Email verified successfully. You can now log in.")


@router.post("/auth/verify-email")
async def resend_verification(
    request: Request,
    body: EmailRequest,
    _limit: str = Depends(RateLimit("auth")),
) -> JSONResponse:
    """Mint a fresh verification token and email it. Replaces any earlier token."""
    store: UserStore = request.app.state.user_store
    user = await run_in_threadpool(store.find_by_email, body.email)
    if user is None:
        return envelope_response(message=_RESEND_GENERIC_MESSAGE)
    if user.is_verified:
        return envelope_response(message="Email is already verified.")

    raw_token = generate_token()
    user.verification_token_hash = hash_token(raw_token)
    user.verification_expires = _verification_expiry()
    await run_in_threadpool(store.save, user)

    await _send_quietly(request.app.state.mailer.send_verification_email, user.email, user.name, raw_token)
    return envelope_response(message="Verification email sent. Please check your inbox.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password")
async def forgot_password(
    request: Request,
    body: EmailRequest,
    _limit: str = Depends(RateLimit("password_reset")),
) -> JSONResponse:
    """Email a reset link. The response never reveals whether the account exists."""
    store: UserStore = request.app.state.user_store
    user = await run_in_threadpool(store.find_by_email, body.email)
    if user is not None:
        raw_token = generate_token()
        user.reset_token_hash = hash_token(raw_token)
        user.reset_expires = _now() + timedelta(minutes=_settings.reset_token_ttl_minutes)
        await run_in_threadpool(store.save, user)
        await _send_quietly(request.app.state.mailer.send_password_reset_email, user.email, user.name, raw_token)
    return envelope_response(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password")
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    _limit: str = Depends(RateLimit("auth")),
) -> JSONResponse:
    """Replace the password of the account holding an unexpired reset token.

    The plaintext goes into User.password; UserStore.save() hashes it. The
    token hash and expiry are cleared in the same write, so the link works once.
    """
    store: UserStore = request.app.state.user_store
    user = store.find_by_reset_token(body.token)
    if user is None:
        raise ValidationError(
            "Invalid or expired reset token",
            errors={"token": "This reset link is invalid or has expired"},
        )

    user.password = body.password
    user.reset_token_hash = None
    user.reset_expires = None
    store.save(user)
    logger.info("Password reset for user %s", user.id)
    return envelope_response(message="Password reset successfully. You can now log in with your new password.")
