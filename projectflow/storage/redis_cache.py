from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# GCRA limiter: one key per caller holds the theoretical arrival time (TAT).
# A request is admitted when TAT - burst*interval is not in the future.
_GCRA_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local interval = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local tat = tonumber(redis.call('GET', key))
if tat == nil or tat < now then
  tat = now
end

local next_tat = tat + interval * cost
local allow_at = next_tat - interval * burst
if allow_at > now then
  return {0, 0, math.ceil(allow_at - now)}
end

redis.call('SET', key, tostring(next_tat), 'EX', math.max(1, math.ceil(next_tat - now)))
return {1, math.floor((now - allow_at) / interval), 0}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


class _KeySpace:
    """Key naming and argument packing shared by the async and sync clients."""

    prefix = "pf"

    def rate_key(self, key: str) -> str:
        # Hashed so caller-supplied values (client ids, IPs) cannot collide on delimiters
        return f"{self.prefix}:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def denylist_key(self, jti: str) -> str:
        return f"{self.prefix}:identity:denylist:{jti}"

    @staticmethod
    def limiter_args(limit: int, window_seconds: int, cost: int) -> list:
        return [time.time(), float(window_seconds) / float(limit), limit, max(1, cost)]

    @staticmethod
    def seconds_until(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def limiter_result(raw, return_remaining: bool) -> RateLimitResult:
        allowed, remaining, retry_after = (int(part or 0) for part in raw)
        if return_remaining:
            return bool(allowed), max(0, remaining), retry_after
        return bool(allowed)


class RedisCache(_KeySpace):
    """Async Redis client for rate limits and the identity-token denylist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._limiter = self.client.register_script(_GCRA_SCRIPT)

    def verify_connection(self) -> None:
        """Ping through a short-lived blocking client; callers may not own a loop."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._limiter(
            keys=[self.rate_key(key)], args=self.limiter_args(limit, window_seconds, cost)
        )
        return self.limiter_result(raw, return_remaining)

    async def denylist_token(self, jti: str, expires_at: datetime) -> None:
        """Deny ``jti`` until the token would have expired anyway."""
        await self.client.set(self.denylist_key(jti), "1", ex=self.seconds_until(expires_at))

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(self.denylist_key(jti)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(_KeySpace):
    """Blocking twin of RedisCache with the same awaitable surface.

    Used in test mode so per-test event loops never own the connection pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._limiter = self.client.register_script(_GCRA_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._limiter(
            keys=[self.rate_key(key)], args=self.limiter_args(limit, window_seconds, cost)
        )
        return self.limiter_result(raw, return_remaining)

    async def denylist_token(self, jti: str, expires_at: datetime) -> None:
        self.client.set(self.denylist_key(jti), "1", ex=self.seconds_until(expires_at))

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(self.client.exists(self.denylist_key(jti)))

    async def close(self) -> None:
        self.client.close()


CacheBackend = Union[RedisCache, SyncRedisCache]


def describe_backend(cache: Optional[CacheBackend]) -> str:
    if cache is None:
        return "none"
    return "redis-sync" if isinstance(cache, SyncRedisCache) else "redis"
