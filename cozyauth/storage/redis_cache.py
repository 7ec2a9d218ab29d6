from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from cozyauth.storage.errors import StorageError


class RedisCache:
    """Redis-backed ephemeral store for OAuth state, magic links and sessions.

    Values are JSON objects written with an explicit TTL. Single-use records
    are consumed with ``take`` (GETDEL) so two concurrent readers can never
    both observe the same entry.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    _GET_AND_DELETE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc
        return self._decode(raw)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc

    async def take(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script on servers
        that reject the command. A corrupted value is still deleted and
        reported as absent.
        """
        try:
            try:
                raw = await self.client.getdel(key)
            except RedisError as exc:
                if "unknown command" not in str(exc).lower():
                    raise
                raw = await self.client.eval(self._GET_AND_DELETE_SCRIPT, 1, key)
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc
        return self._decode(raw)

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime of ``key`` in seconds, or None if absent."""
        try:
            remaining = await self.client.ttl(key)
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Hashed so user-supplied components cannot collide via delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Consume one token from the bucket for ``key``; False when empty."""
        refill_rate = float(limit) / float(window_seconds)
        try:
            allowed, _tokens, _reset_after = await self._token_bucket(
                keys=[self._normalize_rate_key(key)],
                args=[time.time(), refill_rate, limit, 1],
            )
        except RedisError as exc:
            raise StorageError("ephemeral store unavailable") from exc
        return bool(int(allowed))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
