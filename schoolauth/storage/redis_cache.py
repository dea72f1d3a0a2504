from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_REVOKED_PREFIX = "revoked:token:"


class RedisCache:
    """Thin async Redis wrapper holding the token revocation list."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def revoke_token(self, key: str, ttl_seconds: int) -> None:
        """Record ``key`` as revoked; the entry expires after ``ttl_seconds``."""
        if ttl_seconds > 0:
            await self.client.set(f"{_REVOKED_PREFIX}{key}", "1", ex=ttl_seconds)

    async def is_token_revoked(self, key: str) -> bool:
        return bool(await self.client.exists(f"{_REVOKED_PREFIX}{key}"))

    async def remove_revocation(self, key: str) -> None:
        await self.client.delete(f"{_REVOKED_PREFIX}{key}")

    async def clear_revocations(self) -> int:
        removed = 0
        async for redis_key in self.client.scan_iter(match=f"{_REVOKED_PREFIX}*"):
            removed += await self.client.delete(redis_key)
        return removed

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Redis cache on a synchronous client, exposing the same async interface.

    Used under TEST_MODE where each test may run on its own event loop and an
    async connection pool bound to a previous loop would fail.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def revoke_token(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(f"{_REVOKED_PREFIX}{key}", "1", ex=ttl_seconds)

    async def is_token_revoked(self, key: str) -> bool:
        return bool(self.client.exists(f"{_REVOKED_PREFIX}{key}"))

    async def remove_revocation(self, key: str) -> None:
        self.client.delete(f"{_REVOKED_PREFIX}{key}")

    async def clear_revocations(self) -> int:
        removed = 0
        for redis_key in self.client.scan_iter(match=f"{_REVOKED_PREFIX}*"):
            removed += self.client.delete(redis_key)
        return removed

    async def close(self) -> None:
        self.client.close()

