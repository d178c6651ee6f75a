"""Repository implementations for domain entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from soundtrail.domain.entities import (
    Album,
    Artist,
    FailureType,
    PlayEvent,
    Track,
    User,
    ensure_utc_aware,
    utc_now,
)
from soundtrail.domain.exceptions import UniqueViolationError

from .models import (
    AlbumModel,
    ArtistModel,
    PlayEventModel,
    TrackArtistModel,
    TrackModel,
    UserModel,
)

# SQLSTATE for unique_violation (PostgreSQL / asyncpg)
_PG_UNIQUE_VIOLATION = "23505"


# Hey future me - drivers disagree on how to say "unique constraint". asyncpg exposes sqlstate
# 23505, psycopg exposes pgcode, SQLite only gives us the message "UNIQUE constraint failed: ...".
# A FK or NOT NULL IntegrityError must NOT match here - those are real bugs and have to propagate.
def is_unique_violation(exc: IntegrityError) -> bool:
    """Check whether an IntegrityError was caused by a unique constraint."""
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        if getattr(orig, attr, None) == _PG_UNIQUE_VIOLATION:
            return True
    message = str(orig).lower()
    return "unique constraint" in message or "duplicate key" in message


async def _flush_unique(session: AsyncSession, entity_type: str, key: Any) -> None:
    """Flush pending inserts, translating unique violations to the domain error."""
    try:
        await session.flush()
    except IntegrityError as e:
        if is_unique_violation(e):
            raise UniqueViolationError(entity_type, key) from e
        raise


class UserRepository:
    """Repository for User entities."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: UserModel) -> User:
        return User(
            id=model.id,
            spotify_id=model.spotify_id,
            access_token=model.access_token,
            refresh_token=model.refresh_token,
            token_expires_at=ensure_utc_aware(model.token_expires_at),
            email=model.email,
            name=model.name,
            image_url=model.image_url,
            is_active=model.is_active,
            consecutive_failures=model.consecutive_failures,
            last_failure_type=(
                FailureType(model.last_failure_type) if model.last_failure_type else None
            ),
            last_failed_at=ensure_utc_aware(model.last_failed_at),
            last_successful_at=ensure_utc_aware(model.last_successful_at),
            last_polled_at=ensure_utc_aware(model.last_polled_at),
            archive_requested=model.archive_requested,
            archive_requested_at=ensure_utc_aware(model.archive_requested_at),
            created_at=ensure_utc_aware(model.created_at) or utc_now(),
            updated_at=ensure_utc_aware(model.updated_at) or utc_now(),
        )

    async def get_by_id(self, user_id: str) -> User | None:
        """Get a user by internal id."""
        model = await self.session.get(UserModel, user_id)
        return self._to_entity(model) if model else None

    async def get_by_spotify_id(self, spotify_id: str) -> User | None:
        """Get a user by Spotify account id."""
        result = await self.session.execute(
            select(UserModel).where(UserModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    # Hey future me, this is the sign-in path. Keyed by the Spotify account id, NOT by our id -
    # the OAuth callback only knows who Spotify says the user is. Signing in again re-activates
    # a deactivated account and resets nothing on the circuit breaker side on purpose: a user
    # who re-consents after an AUTH failure gets their counters reset by the next successful run.
    async def upsert_from_oauth(
        self,
        spotify_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        email: str | None = None,
        name: str | None = None,
        image_url: str | None = None,
    ) -> User:
        """Create or update a user after a successful OAuth sign-in."""
        result = await self.session.execute(
            select(UserModel).where(UserModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = UserModel(spotify_id=spotify_id)
            self.session.add(model)

        model.access_token = access_token
        model.refresh_token = refresh_token
        model.token_expires_at = expires_at
        model.email = email
        model.name = name
        model.image_url = image_url
        model.is_active = True

        await _flush_unique(self.session, "User", spotify_id)
        return self._to_entity(model)

    async def update_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Persist a refreshed token pair.

        refresh_token is written unconditionally. The refresh manager already substituted
        the old token when Spotify didn't rotate it, so a None here would be a bug upstream.
        """
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                token_expires_at=expires_at,
            )
        )

    async def delete(self, user_id: str) -> bool:
        """Delete a user. Play events cascade. Returns False if the user didn't exist."""
        result = await self.session.execute(delete(UserModel).where(UserModel.id == user_id))
        return bool(result.rowcount)

    async def set_active(self, user_id: str, is_active: bool) -> None:
        """Activate or deactivate a user."""
        await self.session.execute(
            update(UserModel).where(UserModel.id == user_id).values(is_active=is_active)
        )

    # Listen up, ordering matters here! Manual requests first, then healthy accounts (fewest
    # consecutive failures), then the stalest (never polled = NULL goes first). The circuit
    # breaker filters AFTER this, so the order survives filtering.
    async def list_schedulable(self) -> list[User]:
        """Active users with stored credentials, in scheduling priority order."""
        result = await self.session.execute(
            select(UserModel)
            .where(UserModel.is_active.is_(True))
            .where(UserModel.refresh_token.is_not(None))
            .order_by(
                UserModel.archive_requested.desc(),
                UserModel.consecutive_failures.asc(),
                UserModel.last_polled_at.asc().nulls_first(),
                UserModel.created_at.asc(),
            )
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    # Hey future me - atomic increment, NOT read-modify-write! Two overlapping runs failing for the
    # same user both land; neither overwrites the other's count with a stale value.
    async def record_failure(
        self, user_id: str, failure_type: FailureType, failed_at: datetime
    ) -> None:
        """Increment the failure counter and stamp type and time."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                consecutive_failures=UserModel.consecutive_failures + 1,
                last_failure_type=failure_type.value,
                last_failed_at=failed_at,
            )
        )

    async def record_success(self, user_id: str, succeeded_at: datetime) -> None:
        """Reset the failure counter and stamp the success time."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                consecutive_failures=0,
                last_failure_type=None,
                last_failed_at=None,
                last_successful_at=succeeded_at,
            )
        )

    async def mark_polled(self, user_id: str, polled_at: datetime) -> None:
        """Stamp last_polled_at and clear a pending manual archive request."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                last_polled_at=polled_at,
                archive_requested=False,
                archive_requested_at=None,
            )
        )

    async def request_archive(self, user_id: str, requested_at: datetime) -> None:
        """Flag a user for priority archiving."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(archive_requested=True, archive_requested_at=requested_at)
        )


class ArtistRepository:
    """Repository for Artist reference data."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: ArtistModel) -> Artist:
        return Artist(
            id=model.id, spotify_id=model.spotify_id, name=model.name, genres=model.genres
        )

    async def get_by_spotify_id(self, spotify_id: str) -> Artist | None:
        """Get an artist by Spotify id."""
        result = await self.session.execute(
            select(ArtistModel).where(ArtistModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    # Hey future me - genres=None means "we don't know" (artist seen only as a track credit),
    # NOT "no genres". Keep whatever a full /v1/artists lookup stored earlier in that case,
    # otherwise every track upsert would wipe the genres the artist pass just wrote.
    async def upsert(self, spotify_id: str, name: str, genres: str | None = None) -> Artist:
        """Create or update an artist keyed by Spotify id.

        Raises:
            UniqueViolationError: A concurrent writer inserted the same artist first
        """
        result = await self.session.execute(
            select(ArtistModel).where(ArtistModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = ArtistModel(spotify_id=spotify_id, name=name, genres=genres or "")
            self.session.add(model)
        else:
            model.name = name
            if genres is not None:
                model.genres = genres
        await _flush_unique(self.session, "Artist", spotify_id)
        return self._to_entity(model)


class AlbumRepository:
    """Repository for Album reference data."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: AlbumModel) -> Album:
        return Album(
            id=model.id, spotify_id=model.spotify_id, name=model.name, image_url=model.image_url
        )

    async def get_by_spotify_id(self, spotify_id: str) -> Album | None:
        """Get an album by Spotify id."""
        result = await self.session.execute(
            select(AlbumModel).where(AlbumModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def upsert(self, spotify_id: str, name: str, image_url: str | None) -> Album:
        """Create or update an album keyed by Spotify id.

        Raises:
            UniqueViolationError: A concurrent writer inserted the same album first
        """
        result = await self.session.execute(
            select(AlbumModel).where(AlbumModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = AlbumModel(spotify_id=spotify_id, name=name, image_url=image_url)
            self.session.add(model)
        else:
            model.name = name
            model.image_url = image_url
        await _flush_unique(self.session, "Album", spotify_id)
        return self._to_entity(model)


class TrackRepository:
    """Repository for Track reference data."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def _artist_ids(self, track_id: str) -> list[str]:
        result = await self.session.execute(
            select(TrackArtistModel.artist_id)
            .where(TrackArtistModel.track_id == track_id)
            .order_by(TrackArtistModel.position)
        )
        return list(result.scalars().all())

    async def _to_entity(self, model: TrackModel) -> Track:
        return Track(
            id=model.id,
            spotify_id=model.spotify_id,
            name=model.name,
            duration_ms=model.duration_ms,
            album_id=model.album_id,
            artist_ids=await self._artist_ids(model.id),
        )

    async def get_by_spotify_id(self, spotify_id: str) -> Track | None:
        """Get a track by Spotify id."""
        result = await self.session.execute(
            select(TrackModel).where(TrackModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        return await self._to_entity(model) if model else None

    async def upsert(
        self, spotify_id: str, name: str, duration_ms: int, album_id: str | None
    ) -> Track:
        """Create or update a track keyed by Spotify id (artists untouched).

        Raises:
            UniqueViolationError: A concurrent writer inserted the same track first
        """
        result = await self.session.execute(
            select(TrackModel).where(TrackModel.spotify_id == spotify_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = TrackModel(
                spotify_id=spotify_id, name=name, duration_ms=duration_ms, album_id=album_id
            )
            self.session.add(model)
        else:
            model.name = name
            model.duration_ms = duration_ms
            model.album_id = album_id
        await _flush_unique(self.session, "Track", spotify_id)
        return await self._to_entity(model)

    # Hey future me - REPLACE, not merge. Delete every existing link, insert the new set in order.
    # Duplicate ids (Spotify occasionally repeats an artist credit) collapse to first occurrence,
    # otherwise the composite primary key would reject the insert.
    # A concurrent replace of the same track can still collide on that key: its delete did not
    # see our uncommitted links. That surfaces as UniqueViolationError for the caller to retry.
    async def replace_artists(self, track_id: str, artist_ids: list[str]) -> list[str]:
        """Replace a track's artist associations with artist_ids."""
        unique_ids = list(dict.fromkeys(artist_ids))
        await self.session.execute(
            delete(TrackArtistModel).where(TrackArtistModel.track_id == track_id)
        )
        if unique_ids:
            try:
                await self.session.execute(
                    insert(TrackArtistModel),
                    [
                        {"track_id": track_id, "artist_id": artist_id, "position": position}
                        for position, artist_id in enumerate(unique_ids)
                    ],
                )
            except IntegrityError as e:
                if is_unique_violation(e):
                    raise UniqueViolationError("TrackArtist", track_id) from e
                raise
        return unique_ids


class PlayEventRepository:
    """Repository for PlayEvent records."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add(self, user_id: str, track_id: str, played_at: datetime) -> PlayEvent:
        """Insert a play event.

        Raises:
            UniqueViolationError: This (user, track, played_at) is already recorded
        """
        model = PlayEventModel(user_id=user_id, track_id=track_id, played_at=played_at)
        self.session.add(model)
        await _flush_unique(
            self.session, "PlayEvent", (user_id, track_id, played_at.isoformat())
        )
        return PlayEvent(
            id=model.id,
            user_id=model.user_id,
            track_id=model.track_id,
            played_at=ensure_utc_aware(model.played_at) or played_at,
        )

    async def count_for_user(self, user_id: str) -> int:
        """Number of stored play events for a user."""
        result = await self.session.execute(
            select(func.count()).select_from(PlayEventModel).where(
                PlayEventModel.user_id == user_id
            )
        )
        return int(result.scalar_one())

