"""
Rate-limit decision engine.

One capability, RateLimiter.check(key, policy) -> RateLimitDecision, with
two backends:
- WindowRateLimiter: fixed windows over a per-process table
- CacheRateLimiter: counters in the key-value store (shared via Redis)

Request-level adapters (dependency, middleware) live in src.api.rate_limit
and only translate a decision into headers or a 429.
"""

import math
import random
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from .config import Settings, get_settings
from .metrics import get_metrics
from .models import RateLimitPolicy

logger = structlog.get_logger()

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_rate_limit_key(prefix: str, identity: str, path: str | None = None) -> str:
    """Compose `{prefix}:{identity}:{path}` (path omitted for per-client keys)."""
    if path is None:
        return f"{prefix}:{identity}"
    return f"{prefix}:{identity}:{path}"


@dataclass
class RateLimitEntry:
    """Counter for one key in the current window."""

    count: int
    reset_time: int  # Epoch milliseconds at which the window ends


@dataclass(frozen=True)
class RateLimitDecision:
    """Admit/reject outcome plus everything needed for the response headers."""

    allowed: bool
    key: str
    limit: int
    remaining: int
    reset: int  # Unix seconds at which the window resets
    retry_after: int = 0  # Seconds; only meaningful when rejected

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset),
        }

    def rejection_payload(self) -> dict[str, Any]:
        return {
            "statusCode": 429,
            "message": RATE_LIMIT_MESSAGE,
            "error": "Too Many Requests",
            "retryAfter": self.retry_after,
        }


class RateLimitExceeded(Exception):
    """Raised by request adapters when a decision rejects the request."""

    def __init__(self, decision: RateLimitDecision):
        super().__init__(RATE_LIMIT_MESSAGE)
        self.decision = decision


class RateLimiter(ABC):
    """Decide whether one more request under `key` fits its policy."""

    @abstractmethod
    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision: ...

    async def close(self) -> None:
        return None

    @staticmethod
    def _record(policy: RateLimitPolicy, decision: RateLimitDecision):
        outcome = "admitted" if decision.allowed else "rejected"
        get_metrics().increment(
            "rate_limit_checks_total",
            {"prefix": policy.key_prefix, "outcome": outcome},
        )
        if not decision.allowed:
            logger.info(
                "rate_limit_rejected",
                key=decision.key,
                limit=decision.limit,
                retry_after=decision.retry_after,
            )


class WindowRateLimiter(RateLimiter):
    """
    Fixed-window counters kept in this process.

    Algorithm per check:
        absent or now > reset_time  -> new window, count = 1, admit
        count >= max_requests       -> reject, retry after the window ends
        otherwise                   -> count += 1, admit

    Expired entries are swept opportunistically (cleanup_probability per
    check) so the table stays bounded without a dedicated timer.
    """

    def __init__(
        self,
        cleanup_probability: float = 0.01,
        clock: Callable[[], int] = _now_ms,
        rand: Callable[[], float] = random.random,
    ):
        self.cleanup_probability = cleanup_probability
        self._clock = clock
        self._rand = rand
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(entry.count, entry.reset_time) if entry else None

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self._clock()

        if self._rand() < self.cleanup_probability:
            self.sweep(now)

        limit = policy.max_requests
        with self._lock:
            entry = self._entries.get(key)

            if entry is None or now > entry.reset_time:
                entry = RateLimitEntry(count=1, reset_time=now + policy.window_ms)
                self._entries[key] = entry
                allowed = True
                retry_after = 0
            elif entry.count >= limit:
                allowed = False
                retry_after = max(0, math.ceil((entry.reset_time - now) / 1000))
            else:
                entry.count += 1
                allowed = True
                retry_after = 0

            decision = RateLimitDecision(
                allowed=allowed,
                key=key,
                limit=limit,
                remaining=max(0, limit - entry.count),
                reset=math.ceil(entry.reset_time / 1000),
                retry_after=retry_after,
            )

        self._record(policy, decision)
        return decision

    def sweep(self, now: int | None = None) -> int:
        """Remove entries whose window has ended. Returns the number removed."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [k for k, e in self._entries.items() if now > e.reset_time]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("rate_limit_table_swept", removed=len(expired))
        return len(expired)

    def reset(self, key: str | None = None):
        """Forget one key, or every key when None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


class CacheRateLimiter(RateLimiter):
    """
    Counters held in the key-value store.

    With Redis behind the store every API process shares the same counters.
    Rejected requests are counted too (the store increments before checking),
    which does not change the admit/reject outcome within a window.
    """

    def __init__(self, store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        status = await self.store.is_rate_limited(
            key,
            policy.max_requests,
            policy.window_seconds,
        )
        decision = RateLimitDecision(
            allowed=not status.limited,
            key=key,
            limit=policy.max_requests,
            remaining=status.remaining,
            reset=math.ceil(status.reset_at),
            retry_after=max(0, math.ceil(status.reset_at - self._clock())) if status.limited else 0,
        )
        self._record(policy, decision)
        return decision


def create_rate_limiter(settings: Settings | None = None, store=None) -> RateLimiter:
    """Build the limiter configured by `rate_limit_backend`."""
    settings = settings or get_settings()
    if settings.rate_limit_backend == "cache":
        if store is None:
            raise ValueError("cache rate limit backend requires a key-value store")
        logger.info("rate_limiter_created", backend="cache", store=store.backend)
        return CacheRateLimiter(store)

    if settings.rate_limit_backend != "memory":
        logger.warning("unknown_rate_limit_backend", backend=settings.rate_limit_backend)
    logger.info("rate_limiter_created", backend="memory")
    return WindowRateLimiter(cleanup_probability=settings.rate_limit_cleanup_probability)


# Singleton
_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """
    Get the process-wide limiter.

    The app lifespan installs the configured backend with set_rate_limiter();
    before that (or without a lifespan, as in unit tests) an in-memory
    limiter is created on first use.
    """
    global _limiter
    if _limiter is None:
        _limiter = WindowRateLimiter(
            cleanup_probability=get_settings().rate_limit_cleanup_probability,
        )
    return _limiter


def set_rate_limiter(limiter: RateLimiter | None):
    global _limiter
    _limiter = limiter


def reset_rate_limiter():
    set_rate_limiter(None)
