"""
api/limiter.py -- Per-endpoint rate limiting as a FastAPI dependency.

Usage:
    @router.post("/auth/login")
    def login(request: Request, body: LoginRequest,
              limit_key: str = Depends(RateLimit("login"))): ...

FastAPI resolves dependencies before it validates the request body, so a
throttled client gets 429 even when its payload is malformed. The dependency
returns the counter key so a handler can reset it (login does, on success).

The limiter itself lives on app.state.rate_limiter (set in lifespan) so tests
can swap in a fresh instance with an injectable clock.

Client identity is the socket peer address, never a request header: a client
can send any X-Forwarded-For it likes and would get a fresh bucket per value.
Behind a reverse proxy, run uvicorn with --proxy-headers and
--forwarded-allow-ips so request.client is rewritten for trusted proxies only.
A peer-less request (no request.client) falls into the shared "unknown" bucket.
"""

from __future__ import annotations

import logging

from fastapi import Request

from api.errors import RateLimited
from auth.ratelimit import RATE_LIMIT_CONFIGS, rate_limit_key

logger = logging.getLogger("devsolve.api.limiter")


def client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimit:
    """Dependency that charges one request against an endpoint's fixed window."""

    def __init__(self, endpoint: str, message: str | None = None) -> None:
        self.endpoint = endpoint
        self.config = RATE_LIMIT_CONFIGS[endpoint]
        self.message = message

    def __call__(self, request: Request) -> str:
        key = rate_limit_key(client_identifier(request), self.endpoint)
        result = request.app.state.rate_limiter.check(key, self.config)
        if not result.allowed:
            logger.warning("Rate limit exceeded for %s (retry in %ds)", key, result.retry_after_seconds)
            raise RateLimited(result.retry_after_seconds, self.message)
        return key
