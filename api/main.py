"""
api/main.py -- FastAPI application entry point for DevSolve.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. route_guard           -- page access decision from the access_token cookie
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Rate limiting is not middleware: each route declares its budget with the
api.limiter.RateLimit dependency.

Lifespan handles startup (stores, limiter, mailer, session issuer, sweep task)
and shutdown (cancel sweep task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.errors import ApiError, InternalError, RateLimited, validation_errors
from api.models import HealthResponse, envelope_response
from api.routes.auth import router as auth_router
from api.routes.questions import router as questions_router
from api.routes.users import router as users_router
from auth.codec import HmacTokenCodec
from auth.email import Mailer
from auth.guard import decide, is_bypassed, state_for
from auth.ratelimit import build_rate_limiter
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import ACCESS_TOKEN_COOKIE
from core.config import get_settings
from qa.store import QAStore

VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("devsolve.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Evict elapsed rate-limit windows every `interval` seconds.

    Expired entries are already ignored by check(); the sweep only bounds
    memory. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        removed = app.state.rate_limiter.sweep()
        if removed:
            logger.debug("Rate limiter sweep removed %d entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores, limiter, mailer and issuer on startup; release them on shutdown.

    The sweep task is created last since it reads app.state.rate_limiter.
    """
    logger.info("DevSolve API starting up")
    app.state.user_store = UserStore()
    app.state.qa_store = QAStore()
    logger.info("Database initialized")
    app.state.rate_limiter = build_rate_limiter(settings.rate_limit_storage_uri)
    app.state.mailer = Mailer(settings)
    if not app.state.mailer.configured:
        logger.warning("SMTP not configured -- verification and reset emails will only be logged")
    app.state.issuer = SessionIssuer.from_settings(settings)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.rate_limit_sweep_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.user_store.close()
    app.state.qa_store.close()
    logger.info("DevSolve API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DevSolve API",
    description="Developer Q&A with email-verified accounts and cookie-based token sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both push onto the front of the stack,
# so the last one registered is the first to see a request.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Route guard middleware
#
# Verifies the access_token cookie with the restricted HMAC codec -- it never
# touches app.state, so it works before lifespan resources exist and costs
# no DB call per request. See auth/guard.py for the decision table.
# ---------------------------------------------------------------------------

_guard_codec = HmacTokenCodec(settings.secret_key)


@app.middleware("http")
async def route_guard(request: Request, call_next):
    path = request.url.path
    if not is_bypassed(path):
        payload = _guard_codec.verify(request.cookies.get(ACCESS_TOKEN_COOKIE, ""))
        decision = decide(path, state_for(payload))
        if not decision.allow:
            return RedirectResponse(decision.location, status_code=302)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered last so it wraps the guard and also records its redirects.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(questions_router, prefix="/api", tags=["Questions"])
app.include_router(users_router, prefix="/api", tags=["Users"])
# Pages come from web/routes.py; asgi.py mounts them, so api/ never imports web/.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so API clients can parse errors
# uniformly: {"success": false, "message": ..., "errors"?: {...}}.
# ---------------------------------------------------------------------------


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    response = envelope_response(
        exc.status_code,
        message=exc.message,
        errors=exc.errors,
        **exc.extra,
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a {field: message} map when body or query params fail validation."""
    return envelope_response(400, message="Validation failed", errors=validation_errors(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTPException (including routing 404/405) in the envelope."""
    response = envelope_response(exc.status_code, message=str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """A store failure becomes InternalError; driver detail stays in the log."""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return await api_error_handler(request, InternalError())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; the client only ever sees a generic 500 envelope."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return await api_error_handler(request, InternalError())


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app itself rather than a router, and carries no RateLimit
# dependency: load balancer health checks are never throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database_ok = request.app.state.user_store.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
