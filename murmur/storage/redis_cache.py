from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from murmur.storage.errors import AlreadyRevoked


class RedisCache:
    """Thin Redis wrapper for token revocation and rate limits."""

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. The result is clamped to at least
        1 second since Redis rejects zero or negative expiries.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _revoked_key(jti: str) -> str:
        return f"auth:revoked:{jti}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user-supplied parts cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_token(self, jti: str, expires_at: datetime) -> None:
        """Record ``jti`` as revoked until ``expires_at``.

        Raises:
            AlreadyRevoked: the jti is already recorded
        """
        created = await self.client.set(
            self._revoked_key(jti), "1", ex=self._ttl_seconds(expires_at), nx=True
        )
        if not created:
            raise AlreadyRevoked(jti)

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(self._revoked_key(jti)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def revoke_token(self, jti: str, expires_at: datetime) -> None:
        created = self._sync_client.set(
            RedisCache._revoked_key(jti),
            "1",
            ex=RedisCache._ttl_seconds(expires_at),
            nx=True,
        )
        if not created:
            raise AlreadyRevoked(jti)

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._revoked_key(jti)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = time.time()
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[now, refill_rate, limit, max(1, cost)]
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
