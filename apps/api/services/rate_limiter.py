"""
Fixed-window rate limiter over Redis with a local fallback.

The first attempt in a fresh window sets the count to 1 and starts a window
of `window_seconds`; later attempts in the same window increment the count,
and attempts past `limit` are rejected with the same reset time. Windows are
fixed rather than sliding: at most `limit` attempts are admitted between two
resets of one key.

Redis holds the shared counters so the ceiling applies across workers. When
Redis is unreachable or slow the limiter degrades to a bounded per-process
window table; it never raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

KEY_PREFIX = "gate:rate"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    backend: str = "redis"

    @property
    def reset_epoch(self) -> int:
        return int(math.ceil(self.reset_at))

    def retry_after(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(int(math.ceil(self.reset_at - current)), 1)

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        values = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_epoch),
        }
        if not self.allowed:
            values["Retry-After"] = str(self.retry_after(now))
        return values


class LocalWindowStore:
    """Per-process window table, LRU-bounded to `max_keys`."""

    def __init__(self, max_keys: int = 5000, clock: Callable[[], float] = time.time):
        self.max_keys = max(int(max_keys), 1)
        self.clock = clock
        self._windows: "OrderedDict[str, Tuple[int, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def attempt(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            allowed = count < limit
            if allowed:
                count += 1
            self._windows[key] = (count, reset_at)
            self._windows.move_to_end(key)
            while len(self._windows) > self.max_keys:
                self._windows.popitem(last=False)
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            backend="local",
        )


def _default_redis_client() -> redis.Redis:
    return redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
    )


class RateLimiter:
    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        local_store: Optional[LocalWindowStore] = None,
        clock: Callable[[], float] = time.time,
        timeout_seconds: Optional[float] = None,
    ):
        self._redis = redis_client
        self.clock = clock
        self.local = local_store or LocalWindowStore(settings.RATE_LIMIT_LOCAL_MAX_KEYS, clock=clock)
        self.timeout_seconds = float(timeout_seconds or settings.REDIS_TIMEOUT_SECONDS)
        self.degraded = False

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = _default_redis_client()
        return self._redis

    async def _redis_attempt(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        window_ms = max(int(window_seconds * 1000), 1)
        client = self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pttl(key)
            count, ttl_ms = await pipe.execute()
        count = int(count)
        ttl_ms = int(ttl_ms)
        if ttl_ms < 0:
            await client.pexpire(key, window_ms)
            ttl_ms = window_ms
        now = self.clock()
        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_at=now + ttl_ms / 1000.0,
        )

    async def attempt(self, namespace: str, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Count one attempt for (namespace, key)."""
        ceiling = max(int(limit), 1)
        window = max(float(window_seconds), 1.0)
        full_key = f"{KEY_PREFIX}:{namespace}:{key}"
        try:
            result = await asyncio.wait_for(
                self._redis_attempt(full_key, ceiling, window),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            if not self.degraded:
                logger.warning("Rate limiter falling back to per-process windows: %s", exc)
            self.degraded = True
            return self.local.attempt(full_key, ceiling, window)

        if self.degraded:
            logger.info("Rate limiter shared store recovered")
            self.degraded = False
        return result


rate_limiter = RateLimiter()
