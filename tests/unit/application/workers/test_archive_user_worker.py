"""Tests for the single-user archive worker."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pytest_mock import MockerFixture

from soundtrail.application.services import (
    CircuitBreaker,
    IdempotencyGate,
    MetadataReconciler,
    TokenFreshnessService,
)
from soundtrail.application.workers import ArchiveUserWorker
from soundtrail.domain.dtos import AlbumDTO, ArtistDTO, ArtistRefDTO, PlayHistoryItemDTO, TrackDTO
from soundtrail.domain.entities import ArchiveStatus, FailureType
from soundtrail.domain.exceptions import SpotifyApiError, SpotifyRateLimitError, TokenRefreshError
from soundtrail.domain.ports import ISpotifyApiClient
from soundtrail.infrastructure.persistence import (
    ArtistRepository,
    Database,
    PlayEventRepository,
    UserRepository,
)
from tests.helpers import NOW, FakeKeyValueStore, UserFactory


def play(
    track_id: str, minutes_ago: int, artist_ids: tuple[str, ...] = ("ar1",)
) -> PlayHistoryItemDTO:
    """One recently-played entry."""
    return PlayHistoryItemDTO(
        track=TrackDTO(
            spotify_id=track_id,
            name=f"Song {track_id}",
            duration_ms=200_000,
            album=AlbumDTO(spotify_id=f"al-{track_id}", name="Album"),
            artists=[ArtistRefDTO(spotify_id=a, name=a) for a in artist_ids],
        ),
        played_at=NOW - timedelta(minutes=minutes_ago),
    )


@pytest.fixture
def freshness() -> AsyncMock:
    mock = AsyncMock(spec=TokenFreshnessService)
    mock.ensure_fresh_token.return_value = "fresh-token"
    return mock


@pytest.fixture
def spotify() -> AsyncMock:
    mock = AsyncMock(spec=ISpotifyApiClient)
    mock.get_recently_played.return_value = []
    mock.get_artists.return_value = []
    return mock


@pytest.fixture
def reconciler(db: Database) -> MetadataReconciler:
    return MetadataReconciler(db)


@pytest.fixture
def worker(
    db: Database,
    freshness: AsyncMock,
    spotify: AsyncMock,
    reconciler: MetadataReconciler,
    kv_store: FakeKeyValueStore,
) -> ArchiveUserWorker:
    """Worker at 10:45 UTC with real storage and breaker, mocked Spotify."""
    return ArchiveUserWorker(
        database=db,
        freshness=freshness,
        spotify=spotify,
        reconciler=reconciler,
        gate=IdempotencyGate(kv_store),
        breaker=CircuitBreaker(db, now=lambda: NOW),
        now=lambda: NOW,
    )


async def load_user(db: Database, user_id: str):
    async with db.session_scope() as session:
        return await UserRepository(session).get_by_id(user_id)


class TestIdempotency:
    """Test the hourly skip."""

    async def test_completed_hour_is_skipped_without_token_or_api_calls(
        self,
        worker: ArchiveUserWorker,
        freshness: AsyncMock,
        spotify: AsyncMock,
        kv_store: FakeKeyValueStore,
        user_factory: UserFactory,
    ) -> None:
        """At 10:45 with archive_{user}_..._10 marked, nothing else happens."""
        user = await user_factory()
        kv_store.data[f"archive_{user.id}_2024_03_10_10"] = "true"

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.SKIPPED
        assert result.reason == "already_completed"
        freshness.ensure_fresh_token.assert_not_called()
        spotify.get_recently_played.assert_not_called()

    async def test_store_down_still_archives(
        self, worker: ArchiveUserWorker, kv_store: FakeKeyValueStore, user_factory: UserFactory
    ) -> None:
        """An unreachable idempotency store doesn't stop the run."""
        user = await user_factory()
        kv_store.fail = True

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.SUCCESS


class TestFailures:
    """Test failure classification and breaker bookkeeping."""

    async def test_token_failure_is_auth(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        freshness: AsyncMock,
        spotify: AsyncMock,
        kv_store: FakeKeyValueStore,
        user_factory: UserFactory,
    ) -> None:
        """A failed refresh ends the run as AUTH and is recorded on the user."""
        user = await user_factory()
        freshness.ensure_fresh_token.side_effect = TokenRefreshError(error_code="invalid_grant")

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.FAILED
        assert result.failure_type == FailureType.AUTH
        assert result.reason == "AUTH"
        spotify.get_recently_played.assert_not_called()
        assert kv_store.data == {}

        stored = await load_user(db, user.id)
        assert stored.consecutive_failures == 1
        assert stored.last_failure_type == FailureType.AUTH
        assert stored.last_failed_at == NOW

    async def test_any_token_error_is_auth(
        self, worker: ArchiveUserWorker, freshness: AsyncMock, user_factory: UserFactory
    ) -> None:
        """Whatever breaks while getting a token, the fix is re-consent."""
        user = await user_factory()
        freshness.ensure_fresh_token.side_effect = RuntimeError("database hiccup")

        result = await worker.archive(user.id)

        assert result.failure_type == FailureType.AUTH

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (SpotifyRateLimitError(30), FailureType.NETWORK),
            (SpotifyApiError("upstream down", 503), FailureType.NETWORK),
            (SpotifyApiError("bad request", 400), FailureType.UNKNOWN),
        ],
    )
    async def test_fetch_failures_are_classified(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        spotify: AsyncMock,
        user_factory: UserFactory,
        error: Exception,
        expected: FailureType,
    ) -> None:
        """Errors from recently-played map onto the failure buckets."""
        user = await user_factory()
        spotify.get_recently_played.side_effect = error

        result = await worker.archive(user.id)

        assert result.failure_type == expected
        stored = await load_user(db, user.id)
        assert stored.last_failure_type == expected
        assert stored.last_polled_at is None

    async def test_artist_lookup_failure_fails_the_run(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        spotify: AsyncMock,
        user_factory: UserFactory,
    ) -> None:
        """No partial archive when the artist lookup gives up."""
        user = await user_factory()
        spotify.get_recently_played.return_value = [play("t1", 5)]
        spotify.get_artists.side_effect = SpotifyApiError("bad gateway", 502)

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.FAILED
        async with db.session_scope() as session:
            assert await PlayEventRepository(session).count_for_user(user.id) == 0


class TestSuccess:
    """Test successful runs."""

    async def test_nothing_played_is_success_with_zero(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        spotify: AsyncMock,
        kv_store: FakeKeyValueStore,
        user_factory: UserFactory,
    ) -> None:
        """An empty history still counts as a completed poll."""
        user = await user_factory(consecutive_failures=2, last_failure_type="NETWORK")

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.SUCCESS
        assert result.songs_archived == 0
        spotify.get_artists.assert_not_called()
        assert kv_store.data[f"archive_{user.id}_2024_03_10_10"] == "true"
        stored = await load_user(db, user.id)
        assert stored.last_polled_at == NOW
        assert stored.consecutive_failures == 0

    async def test_full_run_stores_plays_and_metadata(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        freshness: AsyncMock,
        spotify: AsyncMock,
        user_factory: UserFactory,
    ) -> None:
        """Plays, tracks and genre-enriched artists all land in storage."""
        user = await user_factory(archive_requested=True, archive_requested_at=NOW)
        spotify.get_recently_played.return_value = [
            play("t1", 5, ("ar1", "ar2")),
            play("t2", 10, ("ar2",)),
        ]
        spotify.get_artists.return_value = [
            ArtistDTO("ar1", "First", ["indie"]),
            ArtistDTO("ar2", "Second", ["jazz", "soul"]),
        ]

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.SUCCESS
        assert result.songs_archived == 2
        spotify.get_recently_played.assert_awaited_once_with("fresh-token", 50, user_id=user.id)
        spotify.get_artists.assert_awaited_once_with(
            "fresh-token", ["ar1", "ar2"], user_id=user.id
        )

        async with db.session_scope() as session:
            assert await PlayEventRepository(session).count_for_user(user.id) == 2
            artist = await ArtistRepository(session).get_by_spotify_id("ar2")
        assert artist is not None
        assert artist.genre_list == ["jazz", "soul"]

        stored = await load_user(db, user.id)
        assert stored.archive_requested is False
        assert stored.last_successful_at == NOW

    async def test_rerun_does_not_duplicate_plays(
        self,
        db: Database,
        worker: ArchiveUserWorker,
        spotify: AsyncMock,
        kv_store: FakeKeyValueStore,
        user_factory: UserFactory,
    ) -> None:
        """With the marker gone (e.g. Redis flushed), overlapping history is stored once."""
        user = await user_factory()
        spotify.get_recently_played.return_value = [play("t1", 5), play("t2", 10)]

        await worker.archive(user.id)
        kv_store.data.clear()
        spotify.get_recently_played.return_value = [play("t3", 1), play("t1", 5)]
        second = await worker.archive(user.id)

        assert second.songs_archived == 1
        async with db.session_scope() as session:
            assert await PlayEventRepository(session).count_for_user(user.id) == 3

    async def test_one_bad_track_does_not_fail_the_run(
        self,
        worker: ArchiveUserWorker,
        spotify: AsyncMock,
        reconciler: MetadataReconciler,
        user_factory: UserFactory,
        mocker: MockerFixture,
    ) -> None:
        """A single track that can't be stored is logged and skipped."""
        user = await user_factory()
        spotify.get_recently_played.return_value = [play("bad", 5), play("good", 10)]
        original = reconciler.upsert_track

        async def flaky_upsert(track: TrackDTO):
            if track.spotify_id == "bad":
                raise ValueError("malformed track")
            return await original(track)

        mocker.patch.object(reconciler, "upsert_track", side_effect=flaky_upsert)

        result = await worker.archive(user.id)

        assert result.status == ArchiveStatus.SUCCESS
        assert result.songs_archived == 1
