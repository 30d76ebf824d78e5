from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the per-address abuse counter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: insert on first sighting, increment otherwise,
    # reset once the window has elapsed. Returns {needs_verification, count}.
    _IP_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local threshold = tonumber(ARGV[3])

local first_seen = tonumber(redis.call('HGET', key, 'first_seen'))
if first_seen == nil then
  redis.call('HSET', key, 'first_seen', now, 'count', 1)
  redis.call('EXPIRE', key, math.max(math.ceil(window) * 2, 1))
  return {0, 1}
end

local count = redis.call('HINCRBY', key, 'count', 1)
if first_seen + window < now then
  redis.call('HSET', key, 'first_seen', now, 'count', 1)
  redis.call('EXPIRE', key, math.max(math.ceil(window) * 2, 1))
  return {0, 1}
end

if count > threshold then
  return {1, count}
end
return {0, count}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._ip_window = self.client.register_script(self._IP_WINDOW_SCRIPT)

    @staticmethod
    def _ip_key(address: str) -> str:
        """Hash the address so IPv6 colons never collide with key delimiters."""

        digest = hashlib.sha256(address.encode()).hexdigest()
        return f"ip:window:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def observe_ip(
        self,
        address: str,
        window_seconds: int,
        threshold: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int]:
        """Record one sighting of ``address``; return (needs_verification, count)."""

        flagged, count = await self._ip_window(
            keys=[self._ip_key(address)],
            args=[time.time() if now is None else now, window_seconds, threshold],
        )
        return bool(int(flagged)), int(count)

    async def reset_ip(self, address: str) -> None:
        await self.client.delete(self._ip_key(address))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._ip_window = self._sync_client.register_script(
            RedisCache._IP_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def observe_ip(
        self,
        address: str,
        window_seconds: int,
        threshold: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int]:
        flagged, count = self._ip_window(
            keys=[RedisCache._ip_key(address)],
            args=[time.time() if now is None else now, window_seconds, threshold],
        )
        return bool(int(flagged)), int(count)

    async def reset_ip(self, address: str) -> None:
        self._sync_client.delete(RedisCache._ip_key(address))

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        """Close Redis connection."""
        self.close_sync()
