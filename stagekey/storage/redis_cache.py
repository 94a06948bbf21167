from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisWindowStore:
    """Sliding-window rate counters kept in Redis sorted sets.

    Each key is a sorted set of admission timestamps. Pruning, counting and the
    conditional insert run inside one Lua script, so concurrent callers in any
    number of processes can never both be admitted past the budget.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. tostring(now - window))
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
  end
  return {0, count, tostring(retry_after)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
return {1, count + 1, '0'}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared windows."""
        # A short-lived sync client keeps the async client off any temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(namespace: str, key: str) -> str:
        """Hash the subject so emails or usernames cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{namespace}:{digest}"

    async def hit(
        self, namespace: str, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, float]:
        """Admit one event for ``key`` if it is under budget.

        Returns ``(allowed, count, retry_after_seconds)``.
        """
        now = time.time()
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        allowed, count, retry_after = await self._sliding_window(
            keys=[self._normalize_rate_key(namespace, key)],
            args=[now, window_seconds, limit, member],
        )
        return bool(int(allowed)), int(count), max(0.0, float(retry_after))

    async def reset(self, namespace: str, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(namespace, key))

    async def close(self) -> None:
        """Close the connection pool; call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
