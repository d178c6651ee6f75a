"""Just-in-time access token freshness.

Hey future me - this is the ONE place that decides whether a user's token gets refreshed.
Both paths go through it:
- background workers call ensure_fresh_token() right before every Spotify call. That's the
  guarantee - workers don't run inside anybody's session, so nothing else keeps their token warm.
- the interactive/session path calls refresh_if_needed(), the best-effort variant that logs and
  swallows refresh failures instead of failing the page.
Calling either redundantly is fine: a fresh token is simply returned as-is.
"""

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime

from soundtrail.application.services.token_utils import (
    REFRESH_BUFFER_SECONDS,
    minutes_until_expiry,
    needs_refresh,
)
from soundtrail.domain.entities import utc_now
from soundtrail.domain.exceptions import (
    DomainException,
    EntityNotFoundException,
    NoExpiryRecordedError,
    NoRefreshTokenError,
)
from soundtrail.domain.ports import ITokenRefresher
from soundtrail.infrastructure.persistence import Database, UserRepository

logger = logging.getLogger(__name__)


class TokenFreshnessService:
    """Guarantees a usable access token for a user before an API call."""

    def __init__(
        self,
        database: Database,
        refresher: ITokenRefresher,
        buffer_seconds: int = REFRESH_BUFFER_SECONDS,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize freshness service.

        Args:
            database: Database for reading and persisting token state
            refresher: Token refresh manager
            buffer_seconds: Refresh this many seconds before expiry
            now: Clock, injectable for tests
        """
        self._database = database
        self._refresher = refresher
        self._buffer_seconds = buffer_seconds
        self._now = now
        # Per-user lock: two callers in this process asking for the same user at once
        # must not both spend the refresh token (the second could be using a rotated-away one).
        # Weak values: an entry lives only while some caller holds or waits on its lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def ensure_fresh_token(self, user_id: str) -> str:
        """Return a valid access token for user_id, refreshing it first if needed.

        Args:
            user_id: Internal user id

        Returns:
            An access token that is valid for at least the buffer period

        Raises:
            EntityNotFoundException: No such user
            NoRefreshTokenError: User has no refresh token stored
            NoExpiryRecordedError: User has no token expiry stored
            TokenRefreshError: Spotify rejected the refresh
        """
        lock = self._lock_for(user_id)
        async with lock:
            async with self._database.session_scope() as session:
                user = await UserRepository(session).get_by_id(user_id)

            if user is None:
                raise EntityNotFoundException("User", user_id)
            if not user.refresh_token:
                raise NoRefreshTokenError(user_id)
            if user.token_expires_at is None:
                raise NoExpiryRecordedError(user_id)

            now = self._now()
            if user.access_token and not needs_refresh(
                user.token_expires_at, now=now, buffer_seconds=self._buffer_seconds
            ):
                return user.access_token

            logger.info(
                f"Refreshing token for user {user_id} "
                f"(expires in {minutes_until_expiry(user.token_expires_at, now)} min)"
            )
            # No session is held open while we talk to Spotify
            refreshed = await self._refresher.refresh(user.refresh_token)

            async with self._database.session_scope() as session:
                await UserRepository(session).update_tokens(
                    user_id,
                    access_token=refreshed.access_token,
                    refresh_token=refreshed.refresh_token,
                    expires_at=refreshed.expires_at,
                )

            logger.info(f"Token refreshed for user {user_id}")
            return refreshed.access_token

    async def refresh_if_needed(self, user_id: str) -> str | None:
        """Best-effort variant for the session path.

        Returns:
            A fresh access token, or None if the token couldn't be made fresh
        """
        try:
            return await self.ensure_fresh_token(user_id)
        except DomainException as e:
            logger.warning(f"Proactive token refresh failed for user {user_id}: {e.message}")
            return None
