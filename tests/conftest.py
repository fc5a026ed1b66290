"""
tests/conftest.py -- Shared test fixtures for DevSolve integration tests.

This module provides:
  - FakeClock: injectable monotonic clock for the rate limiter
  - RecordingMailer: in-memory stand-in for auth.email.Mailer
  - _make_test_stores(): isolated named shared-memory DBs for users + Q&A
  - _patch_lifespan(): wires test collaborators into app.state
  - harness / client: a fresh app state and TestClient per test
  - create_user: factory for persisted accounts
  - issuer: SessionIssuer bound to the app's secret, for minting test tokens

Route tests use a named shared-memory SQLite URI
(file:<name>?mode=memory&cache=shared&uri=true). Fixtures write from
the test thread while TestClient serves requests from its own event-loop
thread, each on its own connection; a plain :memory: URL would give each
thread a separate, empty database. The uuid
in the name keeps tests from seeing each other's rows.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import: DEBUG lets
get_settings() auto-generate SECRET_KEY, and the minimum bcrypt cost keeps
password hashing fast enough for a test suite.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set these before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User
from auth.ratelimit import MemoryRateLimiter
from auth.sessions import SessionIssuer
from auth.store import UserStore
from core.config import get_settings
from qa.store import QAStore

DEFAULT_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock (seconds) that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class SentEmail:
    kind: str  # "verification" | "reset"
    to: str
    name: str
    token: str


class RecordingMailer:
    """Records account emails instead of sending them.

    fail=True makes every send report failure, like an SMTP outage.
    """

    configured = True

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[SentEmail] = []

    async def send(self, to: str, subject: str, html: str) -> bool:
        return not self.fail

    async def send_verification_email(self, to: str, name: str, raw_token: str) -> bool:
        self.sent.append(SentEmail("verification", to, name, raw_token))
        return not self.fail

    async def send_password_reset_email(self, to: str, name: str, raw_token: str) -> bool:
        self.sent.append(SentEmail("reset", to, name, raw_token))
        return not self.fail

    def last(self, kind: str, to: str) -> SentEmail:
        matches = [e for e in self.sent if e.kind == kind and e.to == to]
        assert matches, f"no {kind} email recorded for {to}; sent={self.sent}"
        return matches[-1]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, QAStore]:
    """Return a UserStore and QAStore over one fresh named in-memory database.

    Both stores point at the same named database, as they would at the same
    file in production.
    """
    url = f"sqlite:///file:test_devsolve_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), QAStore(db_url=url)


def _patch_lifespan(user_store, qa_store, rate_limiter, mailer):
    """Build a lifespan that installs the given test collaborators on app.state.

    The sweep_task is a long-sleeping coroutine that keeps the shutdown path
    identical to production (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.qa_store = qa_store
        app.state.rate_limiter = rate_limiter
        app.state.mailer = mailer
        app.state.issuer = SessionIssuer.from_settings(get_settings())
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppHarness:
    client: TestClient
    user_store: UserStore
    qa_store: QAStore
    mailer: RecordingMailer
    rate_limiter: MemoryRateLimiter
    clock: FakeClock


@pytest.fixture
def harness() -> Generator[AppHarness, None, None]:
    """Yield a TestClient over a fresh database, limiter and mailer.

    Function-scoped: cookies, rate-limit counters and rows never leak between
    tests. follow_redirects=False so guard redirects can be asserted on.
    """
    user_store, qa_store = _make_test_stores(uuid.uuid4().hex)
    clock = FakeClock()
    rate_limiter = MemoryRateLimiter(clock=clock)
    mailer = RecordingMailer()

    app.router.lifespan_context = _patch_lifespan(user_store, qa_store, rate_limiter, mailer)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppHarness(
            client=client,
            user_store=user_store,
            qa_store=qa_store,
            mailer=mailer,
            rate_limiter=rate_limiter,
            clock=clock,
        )

    qa_store.close()
    user_store.close()


@pytest.fixture
def client(harness: AppHarness) -> TestClient:
    return harness.client


@pytest.fixture
def create_user(harness: AppHarness) -> Callable[..., User]:
    """Factory: persist a user directly through the store (no HTTP, no email)."""
    counter = iter(range(1, 10_000))

    def _create(
        email: str | None = None,
        password: str = DEFAULT_PASSWORD,
        name: str = "Test User",
        verified: bool = True,
        role: str = "user",
    ) -> User:
        email = email or f"user{next(counter)}@example.com"
        user = User(name=name, email=email, password=password, is_verified=verified, role=role)
        return harness.user_store.create(user)

    return _create


@pytest.fixture
def issuer() -> SessionIssuer:
    return SessionIssuer.from_settings(get_settings())


@pytest.fixture
def login(client: TestClient) -> Callable:
    """POST /api/auth/login for an account; cookies land in the client jar."""

    def _login(email: str, password: str = DEFAULT_PASSWORD):
        return client.post("/api/auth/login", json={"email": email, "password": password})

    return _login
