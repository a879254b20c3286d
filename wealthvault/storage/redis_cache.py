from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

_BLACKLIST_PREFIX = "auth:blacklist:"


class RedisCache:
    """Thin Redis wrapper holding revoked-token hashes.

    Keys expire with the token they describe, so the cache never outlives the
    durable blacklist row.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(token_hash: str) -> str:
        return f"{_BLACKLIST_PREFIX}{token_hash}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache tier."""
        # short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def set_blacklisted(self, token_hash: str, reason: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(self._key(token_hash), reason, ex=ttl_seconds)

    async def get_blacklisted(self, token_hash: str) -> Optional[str]:
        return await self.client.get(self._key(token_hash))

    async def clear_blacklist(self) -> int:
        removed = 0
        async for key in self.client.scan_iter(match=f"{_BLACKLIST_PREFIX}*", count=500):
            removed += await self.client.delete(key)
        return removed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests and operator scripts.

    Uses a synchronous client internally to avoid event loop binding issues,
    but exposes async methods so it can be awaited like :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def set_blacklisted(self, token_hash: str, reason: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._sync_client.set(RedisCache._key(token_hash), reason, ex=ttl_seconds)

    async def get_blacklisted(self, token_hash: str) -> Optional[str]:
        return self._sync_client.get(RedisCache._key(token_hash))

    async def clear_blacklist(self) -> int:
        removed = 0
        for key in self._sync_client.scan_iter(match=f"{_BLACKLIST_PREFIX}*", count=500):
            removed += self._sync_client.delete(key)
        return removed

    async def close(self) -> None:
        self._sync_client.close()
