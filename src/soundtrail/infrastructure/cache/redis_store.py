"""Redis-backed key-value store for idempotency markers and rate-limit tracking."""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from soundtrail.domain.exceptions import KeyValueStoreUnavailable
from soundtrail.domain.ports import IKeyValueStore

logger = logging.getLogger(__name__)


# Hey future me - every Redis failure becomes KeyValueStoreUnavailable here. The idempotency gate
# catches exactly that and degrades to "allow", so a Redis outage costs us redundant work for an
# hour, never a crashed batch. Don't let raw RedisError leak upwards.
class RedisKeyValueStore(IKeyValueStore):
    """IKeyValueStore on top of redis.asyncio."""

    def __init__(self, client: aioredis.Redis) -> None:
        """
        Initialize store.

        Args:
            client: redis.asyncio client created with decode_responses=True
        """
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        """Create a store from a redis:// URL (connects lazily)."""
        return cls(aioredis.from_url(url, decode_responses=True, max_connections=50))

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except RedisError as e:
            raise KeyValueStoreUnavailable(f"Redis GET {key} failed: {e}") from e
        return value if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=max(1, ttl_seconds))
        except RedisError as e:
            raise KeyValueStoreUnavailable(f"Redis SET {key} failed: {e}") from e

    async def incr(self, key: str) -> int:
        try:
            return int(await self._client.incr(key))
        except RedisError as e:
            raise KeyValueStoreUnavailable(f"Redis INCR {key} failed: {e}") from e

    async def close(self) -> None:
        """Close the connection pool."""
        await self._client.aclose()
        logger.debug("Redis connection pool closed")
