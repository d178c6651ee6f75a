"""Hourly idempotency markers and advisory rate-limit tracking.

Both are best-effort. With no store configured, or with Redis down, the gate lets every job
through and the tracker forgets everything. Correctness doesn't depend on either: a duplicate
run inside the hour is just redundant work, because the play_events unique constraint still
keeps each play stored exactly once.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from soundtrail.domain.entities import utc_now
from soundtrail.domain.exceptions import KeyValueStoreUnavailable
from soundtrail.domain.ports import IKeyValueStore

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60
_COMPLETE = "true"


# Hey future me - the key is per UTC hour, NOT local hour. A scheduler host switching to DST would
# otherwise produce the same key twice in one autumn night (or skip one in spring).
def job_key(user_id: str, at: datetime) -> str:
    """Idempotency key for a user's archive job in the hour containing at.

    Format: archive_{user_id}_{YYYY_MM_DD_HH}
    """
    at = at.astimezone(UTC) if at.tzinfo else at.replace(tzinfo=UTC)
    return f"archive_{user_id}_{at:%Y_%m_%d_%H}"


class IdempotencyGate:
    """At-most-once-per-hour marker for user archive jobs."""

    def __init__(
        self,
        store: IKeyValueStore | None,
        ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS,
    ) -> None:
        """Initialize gate.

        Args:
            store: Key-value store, or None to run without idempotency markers
            ttl_seconds: How long a completion marker lives
        """
        self._store = store
        self._ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._store is not None

    @staticmethod
    def job_key(user_id: str, at: datetime) -> str:
        return job_key(user_id, at)

    async def is_complete(self, key: str) -> bool:
        """True if key was marked complete. False when the store is absent or down."""
        if self._store is None:
            return False
        try:
            return await self._store.get(key) == _COMPLETE
        except KeyValueStoreUnavailable as e:
            logger.warning(f"Idempotency check unavailable, allowing job {key}: {e.message}")
            return False

    async def mark_complete(self, key: str) -> None:
        """Mark key complete for ttl_seconds. Silently skipped when the store is absent or down."""
        if self._store is None:
            return
        try:
            await self._store.set(key, _COMPLETE, self._ttl_seconds)
        except KeyValueStoreUnavailable as e:
            logger.warning(f"Could not mark job {key} complete: {e.message}")


class RateLimitTracker:
    """Remembers which users Spotify is currently throttling (advisory only)."""

    DAILY_COUNT_KEY = "rate_limit:daily_count"

    def __init__(
        self,
        store: IKeyValueStore | None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._now = now

    @staticmethod
    def _key(user_id: str) -> str:
        return f"rate_limit:{user_id}"

    def _now_ms(self) -> int:
        return int(self._now().timestamp() * 1000)

    async def track(self, user_id: str, retry_after: int) -> None:
        """Record that user_id is rate limited for retry_after seconds."""
        if self._store is None:
            return
        limited_until_ms = self._now_ms() + retry_after * 1000
        try:
            await self._store.set(self._key(user_id), str(limited_until_ms), retry_after)
            await self._store.incr(self.DAILY_COUNT_KEY)
        except KeyValueStoreUnavailable as e:
            logger.debug(f"Rate limit tracking unavailable: {e.message}")

    async def is_rate_limited(self, user_id: str) -> bool:
        """True while a tracked rate limit for user_id hasn't run out yet."""
        if self._store is None:
            return False
        try:
            value = await self._store.get(self._key(user_id))
        except KeyValueStoreUnavailable as e:
            logger.debug(f"Rate limit lookup unavailable: {e.message}")
            return False
        if not value:
            return False
        try:
            return self._now_ms() < int(value)
        except ValueError:
            return False
