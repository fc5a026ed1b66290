"""
auth/ratelimit.py -- Fixed-window request throttling keyed by (endpoint, client).

Algorithm (both backends):
  - First request for a key, or the first one after its window has elapsed:
    count = 1 and a new window of window_ms opens.
  - Otherwise count += 1. count > max_requests -> not allowed, remaining = 0.
    Else allowed, remaining = max_requests - count.
  - A window has elapsed once now >= window_reset_at.

Fixed window, not sliding: a burst straddling a window boundary can admit up
to 2 x max_requests. Acceptable for abuse throttling of auth endpoints.

Backends:
  MemoryRateLimiter  -- dict + lock, single process. The default.
  StorageRateLimiter -- the same algorithm over a `limits` storage backend
                        (redis://, memcached://, ...) so several instances
                        share counters.

build_rate_limiter() picks one from RATE_LIMIT_STORAGE_URI.

Layer rule: no imports from api/, web/, or qa/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from limits.storage import storage_from_string

logger = logging.getLogger("devsolve.auth.ratelimit")


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int

    @property
    def retry_after_seconds(self) -> int:
        """Seconds until the window resets, rounded up (Retry-After header value)."""
        return max(1, math.ceil(self.reset_in_ms / 1000))


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=10),
    "login": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5),
    "register": RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=3),
    "password_reset": RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=3),
    "api": RateLimitConfig(window_ms=60 * 1000, max_requests=100),
}


def rate_limit_key(identifier: str, endpoint: str) -> str:
    return f"{endpoint}:{identifier}"


class RateLimiter(Protocol):
    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult: ...

    def reset(self, key: str) -> None: ...

    def sweep(self) -> int: ...


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    count: int
    reset_at_ms: float


class MemoryRateLimiter:
    """Fixed-window counters held in a dict.

    One lock guards every check so concurrent requests for the same key can
    never lose an increment. The clock is injectable (seconds, monotonic by
    default) so tests can step through windows without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        with self._lock:
            now = self._now_ms()
            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_at_ms:
                self._entries[key] = _Entry(count=1, reset_at_ms=now + config.window_ms)
                return RateLimitResult(
                    allowed=True,
                    remaining=config.max_requests - 1,
                    reset_in_ms=config.window_ms,
                )
            entry.count += 1
            reset_in = int(entry.reset_at_ms - now)
            if entry.count > config.max_requests:
                return RateLimitResult(allowed=False, remaining=0, reset_in_ms=reset_in)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - entry.count,
                reset_in_ms=reset_in,
            )

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop every entry whose window has elapsed. Returns the number removed."""
        with self._lock:
            now = self._now_ms()
            expired = [key for key, entry in self._entries.items() if now >= entry.reset_at_ms]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Shared-storage backend
# ---------------------------------------------------------------------------


class StorageRateLimiter:
    """Fixed-window counters kept in a `limits` storage backend.

    The storage's atomic incr() opens the window (sets the expiry) on the
    first hit and leaves it alone afterwards, which is exactly the fixed
    window above. Windows are rounded up to whole seconds because shared
    backends such as Redis only expire keys at second granularity.
    """

    def __init__(self, storage_uri: str) -> None:
        self._storage = storage_from_string(storage_uri)
        self.storage_uri = storage_uri

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        window_seconds = max(1, math.ceil(config.window_ms / 1000))
        count = self._storage.incr(key, window_seconds)
        reset_in = max(0, int((self._storage.get_expiry(key) - time.time()) * 1000))
        if count > config.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_in_ms=reset_in)
        return RateLimitResult(allowed=True, remaining=config.max_requests - count, reset_in_ms=reset_in)

    def reset(self, key: str) -> None:
        self._storage.clear(key)

    def sweep(self) -> int:
        # Expiry is enforced by the storage backend itself.
        return 0


def build_rate_limiter(storage_uri: str) -> RateLimiter:
    """Return the limiter for RATE_LIMIT_STORAGE_URI ("memory://" -> in-process)."""
    if storage_uri == "memory://":
        return MemoryRateLimiter()
    logger.info("Rate limiter using shared storage %s", storage_uri.split("@")[-1])
    return StorageRateLimiter(storage_uri)
