from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from pairauth.service.errors import StoreUnavailable


class RedisCache:
    """Thin Redis wrapper exposing the TTL key-value interface.

    Only the primitives the revocation guard needs: an atomic
    ``SET key value NX EX ttl`` and an existence check. Every Redis failure,
    including socket timeouts, is raised as ``StoreUnavailable``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            created = await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return bool(created)

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None when the key is absent."""
        try:
            remaining = await self.client.ttl(key)
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return _normalize_ttl(remaining)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues under the FastAPI test client, but exposes async methods so it can
    be awaited uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0, client: Optional[Redis] = None):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            created = self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return bool(created)

    async def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self.client.ttl(key)
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return _normalize_ttl(remaining)

    async def close(self) -> None:
        self.client.close()


def _normalize_ttl(remaining: Optional[int]) -> Optional[int]:
    # Redis answers -2 for a missing key and -1 for a key without expiry
    if remaining is None or remaining == -2:
        return None
    return int(remaining)
