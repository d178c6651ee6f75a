"""Key-value store adapters."""

from soundtrail.infrastructure.cache.redis_store import RedisKeyValueStore

__all__ = ["RedisKeyValueStore"]
