"""Token expiry helpers."""

import math
from datetime import datetime, timedelta

from soundtrail.domain.entities import ensure_utc_aware, utc_now

# Refresh this long before the token actually expires
REFRESH_BUFFER_SECONDS = 5 * 60


# Hey future me - the boundary is INCLUSIVE. A token that expires in exactly 5 minutes already
# needs a refresh. A background API call can easily take a minute with retries, and Spotify
# rejects the token the second it expires - better one refresh too many than a 401 mid-run.
def needs_refresh(
    expires_at: datetime,
    now: datetime | None = None,
    buffer_seconds: int = REFRESH_BUFFER_SECONDS,
) -> bool:
    """Check whether a token expiring at expires_at must be refreshed before use.

    Args:
        expires_at: Absolute expiry of the access token
        now: Reference time (defaults to the current UTC time)
        buffer_seconds: Safety buffer before expiry

    Returns:
        True if now is within buffer_seconds of expires_at (or past it)
    """
    now = now or utc_now()
    expires_at = ensure_utc_aware(expires_at) or now
    return now >= expires_at - timedelta(seconds=buffer_seconds)


def minutes_until_expiry(expires_at: datetime, now: datetime | None = None) -> int:
    """Whole minutes until expiry, rounded down. Negative once expired."""
    now = now or utc_now()
    expires_at = ensure_utc_aware(expires_at) or now
    return math.floor((expires_at - now).total_seconds() / 60)
