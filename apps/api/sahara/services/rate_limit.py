"""Sliding-window rate limiting.

Two interchangeable stores: an in-process ``MemoryRateLimitStore`` and a
``RedisRateLimitStore`` backed by one sorted set per key. The store is chosen
from ``RATE_LIMIT_REDIS_URL``.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass

import redis
from fastapi import Depends, HTTPException, Request, Response

from sahara.auth import AuthContext, get_optional_auth
from sahara.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: int
    identifier: str = "ip"  # "ip" | "user" | "both"
    key_prefix: str = "api"


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch seconds when the oldest in-window hit expires
    retry_after: int | None = None


RATE_LIMIT_TIERS: dict[str, RateLimitConfig] = {
    "free": RateLimitConfig(limit=20, window_seconds=60),
    "pro": RateLimitConfig(limit=100, window_seconds=60),
    "studio": RateLimitConfig(limit=500, window_seconds=60),
    "unlimited": RateLimitConfig(limit=10000, window_seconds=60),
}


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class RateLimitStore:
    """Records hits and reports the in-window count for a key."""

    def hit(
        self, key: str, *, limit: int, window_seconds: int, now: float
    ) -> tuple[bool, int, float]:
        """Record a hit unless *limit* is reached.

        Returns ``(allowed, count_in_window, oldest_hit_timestamp)``.
        """
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    """Per-process store.

    Keys whose newest hit has left its window are swept at most once per
    ``sweep_interval_seconds``, so idle identifiers do not accumulate.
    """

    def __init__(self, sweep_interval_seconds: float = 60.0) -> None:
        self._hits: dict[str, tuple[int, deque[float]]] = {}
        self._lock = threading.Lock()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep: float | None = None

    def _sweep(self, now: float) -> None:
        stale = [
            key
            for key, (window_seconds, hits) in self._hits.items()
            if not hits or hits[-1] <= now - window_seconds
        ]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key, *, limit, window_seconds, now):
        with self._lock:
            if self._last_sweep is None or now - self._last_sweep >= self.sweep_interval_seconds:
                self._sweep(now)

            entry = self._hits.get(key)
            hits = entry[1] if entry else deque()
            cutoff = now - window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= limit:
                return False, len(hits), hits[0]

            hits.append(now)
            self._hits[key] = (window_seconds, hits)
            return True, len(hits), hits[0]


# Trim, count and add atomically. The oldest score is returned as a string:
# Lua numbers are truncated to integers in replies.
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('EXPIRE', key, window)
  count = count + 1
  allowed = 1
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  return {allowed, count, oldest[2]}
end
return {allowed, count, ARGV[1]}
"""


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, client: redis.Redis) -> None:
        self.redis = client
        self._hit_script = client.register_script(SLIDING_WINDOW_LUA)

    def hit(self, key, *, limit, window_seconds, now):
        allowed, count, oldest = self._hit_script(
            keys=[key],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex[:8]}"],
        )
        return bool(allowed), int(count), float(oldest)


_store: RateLimitStore | None = None


def get_rate_limit_store() -> RateLimitStore:
    global _store
    if _store is None:
        if settings.RATE_LIMIT_REDIS_URL:
            _store = RedisRateLimitStore(redis.Redis.from_url(settings.RATE_LIMIT_REDIS_URL))
        else:
            _store = MemoryRateLimitStore()
    return _store


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_rate_limit(
    identifier: str,
    config: RateLimitConfig,
    *,
    store: RateLimitStore | None = None,
    now: float | None = None,
) -> RateLimitResult:
    store = store or get_rate_limit_store()
    now = time.time() if now is None else now
    key = f"ratelimit:{config.key_prefix}:{identifier}"

    allowed, count, oldest = store.hit(
        key, limit=config.limit, window_seconds=config.window_seconds, now=now
    )
    reset_at = oldest + config.window_seconds
    if not allowed:
        return RateLimitResult(
            success=False,
            limit=config.limit,
            remaining=0,
            reset=math.ceil(reset_at),
            retry_after=max(math.ceil(reset_at - now), 1),
        )
    return RateLimitResult(
        success=True,
        limit=config.limit,
        remaining=max(config.limit - count, 0),
        reset=math.ceil(reset_at),
    )


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def get_identifier(request: Request, kind: str, user_id: str | None = None) -> str:
    ip = get_client_ip(request)
    if kind == "user":
        return f"user:{user_id}" if user_id else f"ip:{ip}"
    if kind == "both":
        return f"user:{user_id or 'anonymous'}:ip:{ip}"
    return f"ip:{ip}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def rate_limit(config: RateLimitConfig):
    """Build a FastAPI dependency enforcing *config* for the decorated route."""

    def dependency(
        request: Request,
        response: Response,
        auth: AuthContext = Depends(get_optional_auth),
    ) -> RateLimitResult:
        identifier = get_identifier(request, config.identifier, auth.user_id)
        result = check_rate_limit(identifier, config)
        headers = rate_limit_headers(result)
        if not result.success:
            logger.warning("Rate limit exceeded for %s on %s", identifier, config.key_prefix)
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "Too many requests",
                    "message": (
                        f"Rate limit exceeded. Try again in {result.retry_after} seconds."
                    ),
                    "retryAfter": result.retry_after,
                },
                headers=headers,
            )
        response.headers.update(headers)
        return result

    return dependency
