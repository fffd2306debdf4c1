"""
Key-value storage for cache entries and rate-limit counters.

Two interchangeable backends behind one KeyValueStore interface:
- RemoteStore: Redis, shared by every API process
- InMemoryStore: per-process table swept on a timer

The backend is chosen once when the store is built. Every operation absorbs
backend faults: the error is logged and a safe default (None, False, 0, or
the caller's own limit and window) is returned so request handling carries
on as if the cache were empty.
"""

import asyncio
import contextlib
import inspect
import json
import math
import re
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
import structlog

from src.core import Settings, get_settings
from src.core.metrics import get_metrics

logger = structlog.get_logger()

RATE_LIMIT_KEY_PREFIX = "ratelimit:"
DEFAULT_COUNTER_TTL_SECONDS = 3600


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a shared-counter rate-limit check."""

    limited: bool
    remaining: int
    reset_in: int  # Seconds until the window ends
    reset_at: float  # Epoch seconds at which the window ends


def glob_to_regex(pattern: str) -> re.Pattern:
    """
    Translate a key glob into an anchored regex.

    Only `*` (any run) and `?` (one character) are wildcards; everything
    else matches literally, so "ratelimit:user:*" never matches
    "xratelimit:user:1" or "ratelimitXuser:1".
    """
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


class KeyValueStore(ABC):
    """Async key-value capability used by caching and rate limiting."""

    backend = "abstract"

    def __init__(self, default_ttl: int = 3600, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the deserialized value, or None on miss, expiry, or error."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Serialize and store a value with a TTL (default_ttl when omitted)."""

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a `*` / `?` glob. Returns the count removed."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment a counter, creating it at 1 with a long TTL."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        """Refresh the TTL of an existing key without touching its value."""

    @abstractmethod
    async def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> RateLimitStatus:
        """Count one hit against `ratelimit:<key>` and report the window state."""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]: ...

    @abstractmethod
    async def flush(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Any | Awaitable[Any]],
        ttl_seconds: int | None = None,
    ) -> Any:
        """
        Cache-aside helper.

        Concurrent misses on the same key each run the factory; there is no
        in-flight de-duplication.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = factory()
        if inspect.isawaitable(value):
            value = await value
        await self.set(key, value, ttl_seconds)
        return value

    def _record_error(self, operation: str, key: str, error: Exception):
        logger.warning(
            "key_store_operation_failed",
            backend=self.backend,
            operation=operation,
            key=key,
            error=str(error),
        )
        get_metrics().increment("cache_errors_total", {"operation": operation})

    def _ttl(self, ttl_seconds: int | None) -> int:
        return self.default_ttl if ttl_seconds is None else ttl_seconds

    def _unlimited(self, limit: int, window_seconds: int) -> RateLimitStatus:
        # Fail open: a store fault never rejects a request
        return RateLimitStatus(
            limited=False,
            remaining=limit,
            reset_in=window_seconds,
            reset_at=self._clock() + window_seconds,
        )


# =============================================================
# IN-MEMORY
# =============================================================


@dataclass
class _MemoryEntry:
    value: str  # JSON text, same as what Redis would hold
    expires_at: float  # Epoch seconds


class InMemoryStore(KeyValueStore):
    """
    Process-local fallback store.

    Values are kept serialized so callers get a fresh copy on every get, as
    they would from Redis. Expired entries are dropped lazily on access and
    in bulk by the periodic sweeper.
    """

    backend = "memory"

    def __init__(
        self,
        default_ttl: int = 3600,
        sweep_interval: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(default_ttl, clock)
        self.sweep_interval = sweep_interval
        self._entries: dict[str, _MemoryEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def _live_entry(self, key: str, now: float) -> _MemoryEntry | None:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now > entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _incr_entry(self, key: str, now: float) -> _MemoryEntry:
        # Caller holds the lock
        entry = self._live_entry(key, now)
        if entry is None:
            entry = _MemoryEntry(value="1", expires_at=now + DEFAULT_COUNTER_TTL_SECONDS)
            self._entries[key] = entry
            return entry
        try:
            current = int(entry.value)
        except ValueError:
            current = 0
        entry.value = str(current + 1)
        return entry

    async def get(self, key: str) -> Any | None:
        try:
            with self._lock:
                entry = self._live_entry(key, self._clock())
            if entry is None:
                return None
            return json.loads(entry.value)
        except Exception as e:
            self._record_error("get", key, e)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            serialized = json.dumps(value)
            with self._lock:
                self._entries[key] = _MemoryEntry(
                    value=serialized,
                    expires_at=self._clock() + self._ttl(ttl_seconds),
                )
        except Exception as e:
            self._record_error("set", key, e)

    async def delete(self, key: str) -> None:
        try:
            with self._lock:
                self._entries.pop(key, None)
        except Exception as e:
            self._record_error("delete", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        try:
            regex = glob_to_regex(pattern)
            with self._lock:
                matched = [k for k in self._entries if regex.match(k)]
                for k in matched:
                    del self._entries[k]
            return len(matched)
        except Exception as e:
            self._record_error("delete_pattern", pattern, e)
            return 0

    async def exists(self, key: str) -> bool:
        try:
            with self._lock:
                return self._live_entry(key, self._clock()) is not None
        except Exception as e:
            self._record_error("exists", key, e)
            return False

    async def incr(self, key: str) -> int:
        try:
            with self._lock:
                return int(self._incr_entry(key, self._clock()).value)
        except Exception as e:
            self._record_error("incr", key, e)
            return 0

    async def expire(self, key: str, seconds: int) -> None:
        try:
            with self._lock:
                now = self._clock()
                entry = self._live_entry(key, now)
                if entry is not None:
                    entry.expires_at = now + seconds
        except Exception as e:
            self._record_error("expire", key, e)

    async def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> RateLimitStatus:
        full_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        try:
            # Increment and window start happen under one lock acquisition
            with self._lock:
                now = self._clock()
                entry = self._incr_entry(full_key, now)
                count = int(entry.value)
                if count == 1:
                    entry.expires_at = now + window_seconds
                reset_at = entry.expires_at
            return RateLimitStatus(
                limited=count > limit,
                remaining=max(0, limit - count),
                reset_in=max(0, math.ceil(reset_at - now)),
                reset_at=reset_at,
            )
        except Exception as e:
            self._record_error("is_rate_limited", full_key, e)
            return self._unlimited(limit, window_seconds)

    def sweep_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now > e.expires_at]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("key_store_swept", removed=len(expired), remaining=len(self._entries))
        get_metrics().set_gauge("cache_entries", value=float(len(self._entries)))
        return len(expired)

    def start_sweeper(self):
        """Start the periodic sweep task. Must be called from a running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    async def get_stats(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "redis_enabled": False,
            "memory_entries": len(self._entries),
        }

    async def flush(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("key_store_flushed", backend=self.backend)

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None


# =============================================================
# REDIS
# =============================================================

# INCR and window start in one server-side step, so two concurrent first
# hits cannot both observe "no TTL yet". A key left without a TTL is repaired.
_RATE_LIMIT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local pttl = redis.call('PTTL', KEYS[1])
if count == 1 or pttl < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
    pttl = tonumber(ARGV[1]) * 1000
end
return {count, pttl}
"""

_INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""


class RemoteStore(KeyValueStore):
    """Redis-backed store shared by all API processes."""

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        default_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(default_ttl, clock)
        self.client = client
        self._rate_limit_script = client.register_script(_RATE_LIMIT_SCRIPT)
        self._incr_script = client.register_script(_INCR_SCRIPT)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0, default_ttl: int = 3600) -> "RemoteStore":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client, default_ttl=default_ttl)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> Any | None:
        try:
            data = await self.client.get(key)
            return json.loads(data) if data is not None else None
        except Exception as e:
            self._record_error("get", key, e)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=self._ttl(ttl_seconds))
        except Exception as e:
            self._record_error("set", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except Exception as e:
            self._record_error("delete", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete matching keys, found with SCAN (non-blocking, unlike KEYS)."""
        try:
            keys = [k async for k in self.client.scan_iter(match=pattern, count=100)]
            if not keys:
                return 0
            return int(await self.client.delete(*keys))
        except Exception as e:
            self._record_error("delete_pattern", pattern, e)
            return 0

    async def exists(self, key: str) -> bool:
        try:
            return await self.client.exists(key) == 1
        except Exception as e:
            self._record_error("exists", key, e)
            return False

    async def incr(self, key: str) -> int:
        try:
            return int(await self._incr_script(keys=[key], args=[DEFAULT_COUNTER_TTL_SECONDS]))
        except Exception as e:
            self._record_error("incr", key, e)
            return 0

    async def expire(self, key: str, seconds: int) -> None:
        try:
            await self.client.expire(key, seconds)
        except Exception as e:
            self._record_error("expire", key, e)

    async def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> RateLimitStatus:
        full_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        try:
            count, pttl = await self._rate_limit_script(keys=[full_key], args=[window_seconds])
            count = int(count)
            remaining_s = int(pttl) / 1000
            return RateLimitStatus(
                limited=count > limit,
                remaining=max(0, limit - count),
                reset_in=max(0, math.ceil(remaining_s)),
                reset_at=self._clock() + remaining_s,
            )
        except Exception as e:
            self._record_error("is_rate_limited", full_key, e)
            return self._unlimited(limit, window_seconds)

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "backend": self.backend,
            "redis_enabled": True,
            "memory_entries": 0,
        }
        try:
            stats["redis_info"] = await self.client.info("memory")
        except Exception as e:
            self._record_error("info", "memory", e)
        return stats

    async def flush(self) -> None:
        try:
            await self.client.flushdb()
            logger.info("key_store_flushed", backend=self.backend)
        except Exception as e:
            self._record_error("flush", "*", e)

    async def close(self) -> None:
        try:
            await self.client.aclose()
            logger.info("key_store_redis_closed")
        except Exception as e:
            logger.warning("key_store_close_failed", error=str(e))


# =============================================================
# FACTORY
# =============================================================


async def create_key_value_store(settings: Settings | None = None) -> KeyValueStore:
    """
    Build the store for this process.

    Redis is used only when enabled AND configured AND reachable; anything
    else degrades to the in-memory store, whose sweeper starts here.
    """
    settings = settings or get_settings()

    if settings.use_redis:
        remote = None
        try:
            # A malformed URL fails here, before any connection attempt
            remote = RemoteStore.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
                default_ttl=settings.cache_default_ttl_seconds,
            )
            await remote.ping()
            logger.info("key_store_redis_connected")
            return remote
        except Exception as e:
            logger.warning("key_store_redis_unavailable", error=str(e))
            if remote is not None:
                await remote.close()
    else:
        logger.info("key_store_memory_fallback", reason="redis disabled or not configured")

    store = InMemoryStore(
        default_ttl=settings.cache_default_ttl_seconds,
        sweep_interval=settings.cache_sweep_interval_seconds,
    )
    store.start_sweeper()
    return store


# Singleton
_store: KeyValueStore | None = None


async def get_key_value_store() -> KeyValueStore:
    """Get or create the key-value store singleton."""
    global _store
    if _store is None:
        _store = await create_key_value_store()
    return _store


def reset_key_value_store():
    """Forget the singleton (does not close it)."""
    global _store
    _store = None
