"""
tests/test_ratelimit.py -- Unit tests for auth/ratelimit.py.

Covers:
  - first request opens a window; remaining counts down to 0
  - request max+1 is denied until the window elapses (now >= reset_at)
  - reset() forgets a key immediately
  - sweep() evicts only elapsed windows
  - keys are independent per endpoint and per client
  - concurrent checks never lose an increment
  - StorageRateLimiter over the limits "memory://" backend
"""

from __future__ import annotations

import threading

import pytest

from auth.ratelimit import (
    RATE_LIMIT_CONFIGS,
    MemoryRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    StorageRateLimiter,
    build_rate_limiter,
    rate_limit_key,
)

FIVE_PER_MINUTE = RateLimitConfig(window_ms=60_000, max_requests=5)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> MemoryRateLimiter:
    return MemoryRateLimiter(clock=clock)


class TestFixedWindow:
    def test_first_request_opens_window(self, limiter: MemoryRateLimiter) -> None:
        result = limiter.check("login:1.2.3.4", FIVE_PER_MINUTE)
        assert result == RateLimitResult(allowed=True, remaining=4, reset_in_ms=60_000)

    def test_remaining_counts_down_then_denies(self, limiter: MemoryRateLimiter) -> None:
        remaining = [limiter.check("k", FIVE_PER_MINUTE).remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]
        denied = limiter.check("k", FIVE_PER_MINUTE)
        assert denied.allowed is False
        assert denied.remaining == 0

    def test_denied_reports_time_left(self, limiter: MemoryRateLimiter, clock: FakeClock) -> None:
        for _ in range(5):
            limiter.check("k", FIVE_PER_MINUTE)
        clock.advance(20)
        denied = limiter.check("k", FIVE_PER_MINUTE)
        assert denied.reset_in_ms == 40_000
        assert denied.retry_after_seconds == 40

    def test_window_elapses_at_reset_instant(self, limiter: MemoryRateLimiter, clock: FakeClock) -> None:
        for _ in range(6):
            limiter.check("k", FIVE_PER_MINUTE)
        clock.advance(59)
        assert limiter.check("k", FIVE_PER_MINUTE).allowed is False
        clock.advance(1)
        result = limiter.check("k", FIVE_PER_MINUTE)
        assert result.allowed is True, "now == reset_at must open a new window"
        assert result.remaining == 4

    def test_reset_forgets_key(self, limiter: MemoryRateLimiter) -> None:
        for _ in range(6):
            limiter.check("k", FIVE_PER_MINUTE)
        limiter.reset("k")
        assert limiter.check("k", FIVE_PER_MINUTE).remaining == 4

    def test_reset_unknown_key_is_noop(self, limiter: MemoryRateLimiter) -> None:
        limiter.reset("never-seen")
        assert len(limiter) == 0

    def test_keys_are_independent(self, limiter: MemoryRateLimiter) -> None:
        for _ in range(6):
            limiter.check(rate_limit_key("1.1.1.1", "login"), FIVE_PER_MINUTE)
        assert limiter.check(rate_limit_key("2.2.2.2", "login"), FIVE_PER_MINUTE).allowed
        assert limiter.check(rate_limit_key("1.1.1.1", "register"), FIVE_PER_MINUTE).allowed


class TestSweep:
    def test_sweep_removes_only_elapsed_entries(self, limiter: MemoryRateLimiter, clock: FakeClock) -> None:
        short = RateLimitConfig(window_ms=1_000, max_requests=1)
        limiter.check("short", short)
        limiter.check("long", FIVE_PER_MINUTE)
        clock.advance(1)
        assert limiter.sweep() == 1
        assert len(limiter) == 1
        clock.advance(60)
        assert limiter.sweep() == 1
        assert len(limiter) == 0

    def test_sweep_on_empty_limiter(self, limiter: MemoryRateLimiter) -> None:
        assert limiter.sweep() == 0


def test_concurrent_checks_do_not_lose_updates() -> None:
    limiter = MemoryRateLimiter()
    config = RateLimitConfig(window_ms=60_000, max_requests=1_000)
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        for _ in range(100):
            limiter.check("shared", config)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # 800 increments so far -> the next check is number 801.
    assert limiter.check("shared", config).remaining == 1_000 - 801


def test_endpoint_configs() -> None:
    assert RATE_LIMIT_CONFIGS["login"] == RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5)
    assert RATE_LIMIT_CONFIGS["auth"] == RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=10)
    assert RATE_LIMIT_CONFIGS["register"] == RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=3)
    assert RATE_LIMIT_CONFIGS["password_reset"] == RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=3)
    assert RATE_LIMIT_CONFIGS["api"] == RateLimitConfig(window_ms=60 * 1000, max_requests=100)


def test_retry_after_rounds_up() -> None:
    assert RateLimitResult(allowed=False, remaining=0, reset_in_ms=1_001).retry_after_seconds == 2
    assert RateLimitResult(allowed=False, remaining=0, reset_in_ms=0).retry_after_seconds == 1


class TestStorageBackend:
    """Same algorithm over limits' in-memory storage."""

    def test_counts_and_denies(self) -> None:
        limiter = StorageRateLimiter("memory://")
        config = RateLimitConfig(window_ms=60_000, max_requests=2)
        first = limiter.check("k", config)
        assert first.allowed and first.remaining == 1
        assert limiter.check("k", config).remaining == 0
        denied = limiter.check("k", config)
        assert denied.allowed is False
        assert 0 < denied.retry_after_seconds <= 60

    def test_reset_clears_counter(self) -> None:
        limiter = StorageRateLimiter("memory://")
        config = RateLimitConfig(window_ms=60_000, max_requests=1)
        limiter.check("k", config)
        assert limiter.check("k", config).allowed is False
        limiter.reset("k")
        assert limiter.check("k", config).allowed is True

    def test_build_rate_limiter_picks_backend(self) -> None:
        assert isinstance(build_rate_limiter("memory://"), MemoryRateLimiter)
