"""Tests for the SQLAlchemy repositories against a real SQLite database."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from soundtrail.domain.entities import FailureType
from soundtrail.domain.exceptions import UniqueViolationError
from soundtrail.infrastructure.persistence import (
    AlbumRepository,
    ArtistRepository,
    Database,
    PlayEventRepository,
    TrackRepository,
    UserRepository,
)
from soundtrail.infrastructure.persistence.models import AlbumModel
from soundtrail.infrastructure.persistence.repositories import _flush_unique, is_unique_violation
from tests.helpers import NOW, UserFactory


class TestIsUniqueViolation:
    """Test unique-violation detection across drivers."""

    def test_sqlite_message(self) -> None:
        """SQLite reports unique violations only through the message."""
        exc = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: artists.spotify_id"))
        assert is_unique_violation(exc) is True

    def test_postgres_sqlstate(self) -> None:
        """asyncpg exposes SQLSTATE 23505."""

        class PgError(Exception):
            sqlstate = "23505"

        exc = IntegrityError("INSERT", {}, PgError("boom"))
        assert is_unique_violation(exc) is True

    def test_foreign_key_violation_is_not_unique(self) -> None:
        """A foreign key failure must not be mistaken for a lost race."""
        exc = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
        assert is_unique_violation(exc) is False


class TestUserRepository:
    """Test UserRepository."""

    async def test_upsert_from_oauth_updates_existing_user(self, db: Database) -> None:
        """Signing in twice with the same Spotify account updates one row."""
        async with db.session_scope() as session:
            first = await UserRepository(session).upsert_from_oauth(
                "sp-1", "a1", "r1", NOW, email="a@example.com"
            )
        async with db.session_scope() as session:
            second = await UserRepository(session).upsert_from_oauth(
                "sp-1", "a2", "r2", NOW + timedelta(hours=1), name="Alice"
            )

        assert second.id == first.id
        assert second.access_token == "a2"
        assert second.refresh_token == "r2"
        assert second.name == "Alice"

    async def test_update_tokens_always_overwrites_refresh_token(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """The refresh token is written unconditionally."""
        user = await user_factory(refresh_token="old-refresh")
        async with db.session_scope() as session:
            await UserRepository(session).update_tokens(
                user.id, "new-access", "new-refresh", NOW + timedelta(hours=1)
            )
        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)

        assert stored is not None
        assert stored.access_token == "new-access"
        assert stored.refresh_token == "new-refresh"
        assert stored.token_expires_at == NOW + timedelta(hours=1)

    async def test_delete_cascades_play_events(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """Deleting a user removes their play events."""
        user = await user_factory()
        async with db.session_scope() as session:
            track = await TrackRepository(session).upsert("t1", "Song", 1000, None)
            await PlayEventRepository(session).add(user.id, track.id, NOW)

        async with db.session_scope() as session:
            assert await UserRepository(session).delete(user.id) is True
        async with db.session_scope() as session:
            assert await PlayEventRepository(session).count_for_user(user.id) == 0
            assert await UserRepository(session).delete(user.id) is False

    async def test_list_schedulable_order(self, db: Database, user_factory: UserFactory) -> None:
        """Requested first, then fewest failures, then never/oldest polled."""
        polled_recently = await user_factory(last_polled_at=NOW - timedelta(minutes=5))
        never_polled = await user_factory(last_polled_at=None)
        failing = await user_factory(consecutive_failures=2, last_polled_at=None)
        requested = await user_factory(
            archive_requested=True,
            consecutive_failures=1,
            last_polled_at=NOW,
        )
        polled_long_ago = await user_factory(last_polled_at=NOW - timedelta(hours=3))

        async with db.session_scope() as session:
            users = await UserRepository(session).list_schedulable()

        assert [u.id for u in users] == [
            requested.id,
            never_polled.id,
            polled_long_ago.id,
            polled_recently.id,
            failing.id,
        ]

    async def test_list_schedulable_skips_inactive_and_tokenless(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """Inactive users and users without a refresh token are never scheduled."""
        active = await user_factory()
        await user_factory(is_active=False)
        await user_factory(refresh_token=None)

        async with db.session_scope() as session:
            users = await UserRepository(session).list_schedulable()

        assert [u.id for u in users] == [active.id]

    async def test_record_failure_increments_atomically(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """Concurrent failures for the same user all land in the counter."""
        user = await user_factory()

        async def fail_once() -> None:
            async with db.session_scope() as session:
                await UserRepository(session).record_failure(user.id, FailureType.NETWORK, NOW)

        await asyncio.gather(*(fail_once() for _ in range(5)))

        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)
        assert stored is not None
        assert stored.consecutive_failures == 5
        assert stored.last_failure_type == FailureType.NETWORK
        assert stored.last_failed_at == NOW

    async def test_record_success_resets_failure_tracking(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """A success clears the counter and failure stamps."""
        user = await user_factory(
            consecutive_failures=3, last_failure_type="AUTH", last_failed_at=NOW
        )
        async with db.session_scope() as session:
            await UserRepository(session).record_success(user.id, NOW)
        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)

        assert stored is not None
        assert stored.consecutive_failures == 0
        assert stored.last_failure_type is None
        assert stored.last_failed_at is None
        assert stored.last_successful_at == NOW

    async def test_mark_polled_clears_manual_request(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """Polling a user satisfies a pending manual request."""
        user = await user_factory()
        async with db.session_scope() as session:
            await UserRepository(session).request_archive(user.id, NOW)
        async with db.session_scope() as session:
            await UserRepository(session).mark_polled(user.id, NOW + timedelta(minutes=1))
        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)

        assert stored is not None
        assert stored.archive_requested is False
        assert stored.archive_requested_at is None
        assert stored.last_polled_at == NOW + timedelta(minutes=1)


class TestReferenceDataRepositories:
    """Test artist, album and track upserts."""

    async def test_artist_upsert_without_genres_keeps_stored_genres(self, db: Database) -> None:
        """A track credit (genres=None) must not wipe genres from a full lookup."""
        async with db.session_scope() as session:
            await ArtistRepository(session).upsert("ar1", "Band", "indie,shoegaze")
        async with db.session_scope() as session:
            artist = await ArtistRepository(session).upsert("ar1", "Band (Renamed)")

        assert artist.name == "Band (Renamed)"
        assert artist.genre_list == ["indie", "shoegaze"]

    async def test_duplicate_insert_raises_unique_violation(self, db: Database) -> None:
        """Two sessions inserting the same spotify_id: the later flush loses."""
        async with db.session_scope() as session:
            await AlbumRepository(session).upsert("al1", "Album", None)

        with pytest.raises(UniqueViolationError):
            async with db.session_scope() as session:
                # Bypass the select so the insert really collides
                session.add(AlbumModel(spotify_id="al1", name="Album again"))
                await _flush_unique(session, "Album", "al1")

    async def test_replace_artists_replaces_whole_set(self, db: Database) -> None:
        """Old links are dropped; new links keep order and collapse duplicates."""
        async with db.session_scope() as session:
            artists = ArtistRepository(session)
            a = await artists.upsert("a", "A")
            b = await artists.upsert("b", "B")
            c = await artists.upsert("c", "C")
            track = await TrackRepository(session).upsert("t1", "Song", 1000, None)
            await TrackRepository(session).replace_artists(track.id, [a.id, b.id])

        async with db.session_scope() as session:
            linked = await TrackRepository(session).replace_artists(
                track.id, [c.id, a.id, c.id]
            )
        async with db.session_scope() as session:
            stored = await TrackRepository(session).get_by_spotify_id("t1")

        assert linked == [c.id, a.id]
        assert stored is not None
        assert stored.artist_ids == [c.id, a.id]


    async def test_replace_artists_translates_link_collision(self) -> None:
        """A concurrent replace that inserted the same link first raises the domain error."""
        session = AsyncMock()
        session.execute.side_effect = [
            None,
            IntegrityError(
                "INSERT", {}, Exception("UNIQUE constraint failed: track_artists.track_id")
            ),
        ]

        with pytest.raises(UniqueViolationError):
            await TrackRepository(session).replace_artists("track-1", ["artist-1"])

    async def test_replace_artists_propagates_other_integrity_errors(self) -> None:
        """A missing artist row is a real storage failure, not a race."""
        session = AsyncMock()
        session.execute.side_effect = [
            None,
            IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed")),
        ]

        with pytest.raises(IntegrityError):
            await TrackRepository(session).replace_artists("track-1", ["artist-1"])

class TestPlayEventRepository:
    """Test PlayEventRepository."""

    async def test_same_play_twice_raises_unique_violation(
        self, db: Database, user_factory: UserFactory
    ) -> None:
        """(user, track, played_at) is stored at most once."""
        user = await user_factory()
        async with db.session_scope() as session:
            track = await TrackRepository(session).upsert("t1", "Song", 1000, None)
            await PlayEventRepository(session).add(user.id, track.id, NOW)

        with pytest.raises(UniqueViolationError):
            async with db.session_scope() as session:
                await PlayEventRepository(session).add(user.id, track.id, NOW)

        async with db.session_scope() as session:
            assert await PlayEventRepository(session).count_for_user(user.id) == 1
