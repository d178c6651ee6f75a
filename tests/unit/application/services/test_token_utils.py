"""Tests for token expiry helpers."""

from datetime import UTC, datetime, timedelta

from soundtrail.application.services.token_utils import (
    REFRESH_BUFFER_SECONDS,
    minutes_until_expiry,
    needs_refresh,
)

NOW = datetime(2024, 3, 10, 10, 0, tzinfo=UTC)


class TestNeedsRefresh:
    """Test the 5-minute refresh buffer."""

    def test_buffer_is_five_minutes(self) -> None:
        """Default buffer matches the documented five minutes."""
        assert REFRESH_BUFFER_SECONDS == 300

    def test_six_minutes_left_is_fresh(self) -> None:
        """Outside the buffer the token is used as-is."""
        assert needs_refresh(NOW + timedelta(minutes=6), now=NOW) is False

    def test_four_minutes_left_needs_refresh(self) -> None:
        """Inside the buffer the token is refreshed."""
        assert needs_refresh(NOW + timedelta(minutes=4), now=NOW) is True

    def test_exactly_five_minutes_left_needs_refresh(self) -> None:
        """The boundary is inclusive."""
        assert needs_refresh(NOW + timedelta(minutes=5), now=NOW) is True

    def test_expired_token_needs_refresh(self) -> None:
        """An already expired token obviously needs a refresh."""
        assert needs_refresh(NOW - timedelta(seconds=1), now=NOW) is True

    def test_naive_expiry_is_treated_as_utc(self) -> None:
        """SQLite returns naive datetimes; they must compare as UTC."""
        naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert needs_refresh(naive, now=NOW) is False

    def test_custom_buffer(self) -> None:
        """A zero buffer only refreshes at or after expiry."""
        assert needs_refresh(NOW + timedelta(seconds=1), now=NOW, buffer_seconds=0) is False
        assert needs_refresh(NOW, now=NOW, buffer_seconds=0) is True


class TestMinutesUntilExpiry:
    """Test minutes_until_expiry."""

    def test_rounds_down(self) -> None:
        """Partial minutes are floored."""
        assert minutes_until_expiry(NOW + timedelta(minutes=4, seconds=59), now=NOW) == 4

    def test_negative_after_expiry(self) -> None:
        """Expired tokens report negative minutes."""
        assert minutes_until_expiry(NOW - timedelta(seconds=30), now=NOW) == -1
