"""Fixed-window rate limiting with interchangeable backing stores.

Every store implements ``check(key, window_ms, max_requests)``:

1. Look up the entry for ``key``.
2. If it is absent or its window has passed, start a new window with
   ``count=1`` and return ``remaining=max-1``.
3. If ``count >= max`` reject without incrementing (rejected requests are
   not counted).
4. Otherwise increment and return ``remaining=max-count``.

Two stores are provided:

- ``InMemoryRateLimitStore`` keeps counters in process memory, bounded to
  ``max_keys`` distinct keys.  Counts are not shared across replicas.
- ``RedisRateLimitStore`` runs the same algorithm as one Lua script so the
  read/compare/increment is atomic on the server.  It fails open: when
  Redis errors or stalls the request is allowed and the result is flagged
  ``degraded``.

The store is chosen once at startup by ``build_rate_limit_store``.
Callers go through ``RateLimiter``, which composes identity keys
(``user:<id>:<route>`` / ``ip:<addr>:<route>``) and applies named presets.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Union

from keyguard.core.config import Settings
from keyguard.core.exceptions import BackendUnavailable
from keyguard.services.cache import close_redis, create_redis_client
from keyguard.utils.helpers import now_ms

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    remaining: int
    reset: int  # epoch ms
    # True when the answer is a fail-open fallback rather than a real count
    degraded: bool = False

    def retry_after_seconds(self, now: Optional[int] = None) -> int:
        now = now_ms() if now is None else now
        return max(1, math.ceil((self.reset - now) / 1000))


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int


RATE_LIMITS: Dict[str, RateLimitRule] = {
    "RECEIPTS_CREATE": RateLimitRule(window_ms=60 * 1000, max_requests=60),
    "RECEIPTS_READ": RateLimitRule(window_ms=60 * 1000, max_requests=300),
    "REPORTS_CREATE": RateLimitRule(window_ms=60 * 1000, max_requests=20),
    "OCR_PROCESS": RateLimitRule(window_ms=60 * 1000, max_requests=30),
    "AUTH_ATTEMPTS": RateLimitRule(window_ms=15 * 60 * 1000, max_requests=5),
    "GENERAL_API": RateLimitRule(window_ms=60 * 1000, max_requests=100),
    "KEY_ADMIN": RateLimitRule(window_ms=60 * 1000, max_requests=10),
}


def _validate_args(window_ms: int, max_requests: int) -> None:
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")
    if max_requests <= 0:
        raise ValueError("max_requests must be positive")


class RateLimitStore(Protocol):
    backend_name: str

    async def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        ...

    async def close(self) -> None:
        ...


# -----------------------------------------------------------------------------
# In-memory backend


class InMemoryRateLimitStore:
    """Single-process fixed-window counters.

    The whole check runs under one lock with no awaits inside, so concurrent
    checks of the same key never lose an increment.  Expired entries are
    swept on every call; when the map is full, the 20% of entries closest
    to expiry are evicted before a new key is inserted.
    """

    backend_name = "memory"

    def __init__(self, max_keys: int = 10_000, evict_fraction: float = 0.2, clock: Clock = now_ms) -> None:
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self.max_keys = max_keys
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: str) -> Optional[RateLimitEntry]:
        """Return a copy of the live entry for ``key`` (tests, diagnostics)."""
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(entry.count, entry.reset_time) if entry else None

    async def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        _validate_args(window_ms, max_requests)
        with self._lock:
            return self._check_locked(key, window_ms, max_requests)

    def _check_locked(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        now = self._clock()
        self._sweep(now)
        entry = self._entries.get(key)
        if entry is None:
            if len(self._entries) >= self.max_keys:
                self._evict_nearest_expiry()
            reset = now + window_ms
            self._entries[key] = RateLimitEntry(count=1, reset_time=reset)
            return RateLimitResult(ok=True, remaining=max_requests - 1, reset=reset)
        if entry.count >= max_requests:
            return RateLimitResult(ok=False, remaining=0, reset=entry.reset_time)
        entry.count += 1
        return RateLimitResult(ok=True, remaining=max_requests - entry.count, reset=entry.reset_time)

    def _sweep(self, now: int) -> None:
        expired = [k for k, e in self._entries.items() if e.reset_time <= now]
        for k in expired:
            del self._entries[k]

    def _evict_nearest_expiry(self) -> None:
        to_remove = max(1, int(len(self._entries) * self.evict_fraction))
        victims = sorted(self._entries.items(), key=lambda kv: kv[1].reset_time)[:to_remove]
        for k, _ in victims:
            del self._entries[k]
        logger.debug("[rate_limit] evicted %d entries at capacity %d", len(victims), self.max_keys)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


# -----------------------------------------------------------------------------
# Redis backend

# KEYS[1] = counter hash; ARGV = now_ms, window_ms, max.  Returns
# {allowed, count, reset_ms}.  Rejections leave the hash untouched.
_CHECK_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max = tonumber(ARGV[3])
local entry = redis.call('HMGET', KEYS[1], 'count', 'reset')
local count = tonumber(entry[1])
local reset = tonumber(entry[2])
if count and reset and reset > now then
  if count >= max then
    return {0, count, reset}
  end
  count = redis.call('HINCRBY', KEYS[1], 'count', 1)
  return {1, count, reset}
end
reset = now + window
redis.call('HSET', KEYS[1], 'count', 1, 'reset', reset)
redis.call('PEXPIRE', KEYS[1], window)
return {1, 1, reset}
"""


class RedisRateLimitStore:
    """Shared fixed-window counters in Redis.

    The Redis server is the system of record; nothing is cached locally.
    Any error or a call exceeding ``timeout_seconds`` fails open.
    """

    backend_name = "redis"

    def __init__(self, client, timeout_seconds: float = 0.5, prefix: str = "rl:", clock: Clock = now_ms) -> None:
        self._client = client
        self._script = client.register_script(_CHECK_SCRIPT)
        self.timeout_seconds = timeout_seconds
        self.prefix = prefix
        self._clock = clock

    async def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        _validate_args(window_ms, max_requests)
        now = self._clock()
        try:
            allowed, count, reset = await self._eval(key, now, window_ms, max_requests)
        except BackendUnavailable as exc:
            logger.warning("[rate_limit] %s; failing open for key=%s", exc, key)
            return RateLimitResult(ok=True, remaining=max_requests - 1, reset=now + window_ms, degraded=True)
        if not allowed:
            return RateLimitResult(ok=False, remaining=0, reset=reset)
        return RateLimitResult(ok=True, remaining=max(0, max_requests - count), reset=reset)

    async def _eval(self, key: str, now: int, window_ms: int, max_requests: int) -> tuple[bool, int, int]:
        try:
            reply = await asyncio.wait_for(
                self._script(keys=[f"{self.prefix}{key}"], args=[now, window_ms, max_requests]),
                timeout=self.timeout_seconds,
            )
            allowed, count, reset = reply
            return bool(int(allowed)), int(count), int(reset)
        except Exception as exc:  # includes asyncio.TimeoutError
            raise BackendUnavailable("redis rate limiter", exc) from exc

    async def close(self) -> None:
        await close_redis(self._client)


def build_rate_limit_store(cfg: Settings) -> Union[InMemoryRateLimitStore, RedisRateLimitStore]:
    """Select the backend from configuration (called once at startup)."""
    if cfg.RATE_LIMIT_REDIS_URL:
        client = create_redis_client(
            cfg.RATE_LIMIT_REDIS_URL,
            cfg.RATE_LIMIT_REDIS_TOKEN,
            timeout_seconds=cfg.RATE_LIMIT_REMOTE_TIMEOUT_SECONDS,
        )
        logger.info("[rate_limit] using redis backend")
        return RedisRateLimitStore(client, timeout_seconds=cfg.RATE_LIMIT_REMOTE_TIMEOUT_SECONDS)
    logger.info("[rate_limit] using in-memory backend (max_keys=%d)", cfg.RATE_LIMIT_MAX_KEYS)
    return InMemoryRateLimitStore(max_keys=cfg.RATE_LIMIT_MAX_KEYS)


# -----------------------------------------------------------------------------
# Facade


class RateLimiter:
    """Entry point used by request handlers."""

    def __init__(self, store: RateLimitStore) -> None:
        self.store = store

    @property
    def backend_name(self) -> str:
        return self.store.backend_name

    async def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        return await self.store.check(key, window_ms, max_requests)

    async def limit_by_user(self, user_id: Union[int, str], route: str, rule: RateLimitRule) -> RateLimitResult:
        return await self.check(user_key(user_id, route), rule.window_ms, rule.max_requests)

    async def limit_by_ip(self, ip: str, route: str, rule: RateLimitRule) -> RateLimitResult:
        return await self.check(ip_key(ip, route), rule.window_ms, rule.max_requests)

    async def close(self) -> None:
        await self.store.close()


def user_key(user_id: Union[int, str], route: str) -> str:
    return f"user:{user_id}:{route}"


def ip_key(ip: str, route: str) -> str:
    return f"ip:{ip}:{route}"
