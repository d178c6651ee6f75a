"""Per-user circuit breaker with failure-type dependent exponential cooldown.

This is NOT a service-wide kill switch. Each user carries their own counter on the users row;
a user in cooldown is simply left out of the next scheduling pass while everyone else runs.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from soundtrail.domain.entities import FailureType, User, cooldown_remaining, utc_now
from soundtrail.domain.exceptions import SpotifyApiError, TokenRefreshError, TokenStateError
from soundtrail.infrastructure.persistence import Database, UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CooldownConfig:
    """Cooldown bounds in minutes."""

    base_minutes: int
    max_minutes: int


# Hey future me - AUTH backs off longest because a revoked consent or dead refresh token won't fix
# itself in ten minutes; only the user signing in again helps. NETWORK (429/5xx) is transient and
# retries soonest. UNKNOWN sits in between.
COOLDOWN_CONFIG: dict[FailureType, CooldownConfig] = {
    FailureType.AUTH: CooldownConfig(base_minutes=30, max_minutes=240),
    FailureType.NETWORK: CooldownConfig(base_minutes=10, max_minutes=60),
    FailureType.UNKNOWN: CooldownConfig(base_minutes=20, max_minutes=180),
}


def cooldown_minutes(failure_type: FailureType | str | None, consecutive_failures: int) -> int:
    """Cooldown for a user after consecutive_failures failures of failure_type.

    min(base * 2^(n-1), max). Zero failures means no cooldown. An unknown or missing type
    uses the UNKNOWN bounds.
    """
    if consecutive_failures <= 0:
        return 0
    try:
        config = COOLDOWN_CONFIG[FailureType(failure_type)]
    except ValueError:
        config = COOLDOWN_CONFIG[FailureType.UNKNOWN]
    # Past 2^32 every config is long capped; keeps the int small
    exponent = min(consecutive_failures - 1, 32)
    return min(config.base_minutes * 2**exponent, config.max_minutes)


# Listen up, this is THE failure classification. Keep it in one place - the worker, the executor
# and the tests all agree on it through here.
def classify_failure(exc: BaseException) -> FailureType:
    """Map an exception from an archive attempt to a FailureType.

    Token state / refresh problems and 401 -> AUTH; 429 or >= 500 -> NETWORK; everything
    else (including transport errors that survived every retry) -> UNKNOWN.
    """
    if isinstance(exc, TokenStateError | TokenRefreshError):
        return FailureType.AUTH
    if isinstance(exc, SpotifyApiError):
        if exc.status_code == 401:
            return FailureType.AUTH
        if exc.status_code == 429 or exc.status_code >= 500:
            return FailureType.NETWORK
        return FailureType.UNKNOWN
    return FailureType.UNKNOWN


class CircuitBreaker:
    """Filters users in cooldown and records archive outcomes."""

    def __init__(self, database: Database, now: Callable[[], datetime] = utc_now) -> None:
        """Initialize circuit breaker.

        Args:
            database: Database holding the per-user failure counters
            now: Clock, injectable for tests
        """
        self._database = database
        self._now = now

    def remaining_cooldown(self, user: User, now: datetime | None = None) -> timedelta:
        """Time left until user is eligible again (zero when eligible)."""
        if user.consecutive_failures <= 0 or user.last_failed_at is None:
            return timedelta(0)
        cooldown = timedelta(
            minutes=cooldown_minutes(user.last_failure_type, user.consecutive_failures)
        )
        return cooldown_remaining(user.last_failed_at, cooldown, now or self._now())

    def is_eligible(self, user: User, now: datetime | None = None) -> bool:
        """True if user is not in a failure cooldown."""
        return self.remaining_cooldown(user, now) <= timedelta(0)

    def filter_eligible(self, users: Sequence[User]) -> list[User]:
        """Users not currently cooling down, in their original order."""
        now = self._now()
        eligible: list[User] = []
        for user in users:
            remaining = self.remaining_cooldown(user, now)
            if remaining > timedelta(0):
                logger.info(
                    f"User {user.id} in cooldown for {round(remaining.total_seconds() / 60)} "
                    f"more minutes ({user.consecutive_failures} x "
                    f"{user.last_failure_type.value if user.last_failure_type else 'UNKNOWN'})"
                )
                continue
            eligible.append(user)
        return eligible

    async def record_failure(self, user_id: str, failure_type: FailureType) -> None:
        """Increment the user's failure counter and stamp type and time."""
        async with self._database.session_scope() as session:
            await UserRepository(session).record_failure(user_id, failure_type, self._now())

    async def record_success(self, user_id: str) -> None:
        """Reset the user's failure tracking."""
        async with self._database.session_scope() as session:
            await UserRepository(session).record_success(user_id, self._now())
