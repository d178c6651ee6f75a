"""Race-tolerant upserts of Spotify metadata into normalized storage.

Hey future me - artists, albums and tracks are GLOBAL. Fifty workers archiving fifty different
users will hit the same popular artist within milliseconds of each other. We never lock for
that. The pattern everywhere is "optimistic upsert, re-read on conflict":

1. open a short session, select-by-spotify-id, insert or update, flush
2. if the flush hits the unique constraint, someone else won the race - that session rolls
   back, we open a NEW session and read the winner's row

Every step runs in its own session_scope() so a lost race only rolls back that one insert,
and no transaction ever stays open across a Spotify round-trip. Any error that is NOT a unique
violation propagates: that's a genuine storage failure and the caller has to see it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from soundtrail.domain.dtos import AlbumDTO, ArtistDTO, ArtistRefDTO, TrackDTO
from soundtrail.domain.entities import Album, Artist, PlayEvent, Track
from soundtrail.domain.exceptions import EntityNotFoundException, UniqueViolationError
from soundtrail.infrastructure.persistence import (
    AlbumRepository,
    ArtistRepository,
    Database,
    PlayEventRepository,
    TrackRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MetadataReconciler:
    """Upserts artists, albums, tracks and play events."""

    def __init__(self, database: Database) -> None:
        """Initialize reconciler.

        Args:
            database: Database providing short-lived session scopes
        """
        self._database = database

    async def _upsert_or_reread(
        self,
        write: Callable[[AsyncSession], Awaitable[T]],
        reread: Callable[[AsyncSession], Awaitable[T | None]],
        entity_type: str,
        spotify_id: str,
    ) -> T:
        try:
            async with self._database.session_scope() as session:
                return await write(session)
        except UniqueViolationError:
            logger.debug(f"Lost insert race for {entity_type} {spotify_id}, re-reading")

        async with self._database.session_scope() as session:
            existing = await reread(session)
        if existing is None:
            # Winner's row vanished between the conflict and our read - nothing sane to return
            raise EntityNotFoundException(entity_type, spotify_id)
        return existing

    async def upsert_artist(self, artist: ArtistDTO | ArtistRefDTO) -> Artist:
        """Create or update an artist.

        A full ArtistDTO writes genres. An ArtistRefDTO (track credit, no genres) leaves
        stored genres alone.
        """
        genres = artist.genres_joined if isinstance(artist, ArtistDTO) else None
        return await self._upsert_or_reread(
            lambda s: ArtistRepository(s).upsert(artist.spotify_id, artist.name, genres),
            lambda s: ArtistRepository(s).get_by_spotify_id(artist.spotify_id),
            "Artist",
            artist.spotify_id,
        )

    async def upsert_album(self, album: AlbumDTO) -> Album:
        """Create or update an album."""
        return await self._upsert_or_reread(
            lambda s: AlbumRepository(s).upsert(album.spotify_id, album.name, album.image_url),
            lambda s: AlbumRepository(s).get_by_spotify_id(album.spotify_id),
            "Album",
            album.spotify_id,
        )

    # Listen up, order matters: album, then artists, then the track row, then the artist links.
    # The links are REPLACED with exactly this response's artists - even if we lost the race
    # on the track row itself, the set we observed is the latest truth and gets written.
    async def upsert_track(self, track: TrackDTO) -> Track:
        """Create or update a track with its album and artists."""
        album = await self.upsert_album(track.album) if track.album else None
        artists = await asyncio.gather(*(self.upsert_artist(a) for a in track.artists))
        album_id = album.id if album else None

        record = await self._upsert_or_reread(
            lambda s: TrackRepository(s).upsert(
                track.spotify_id, track.name, track.duration_ms, album_id
            ),
            lambda s: TrackRepository(s).get_by_spotify_id(track.spotify_id),
            "Track",
            track.spotify_id,
        )

        await self._replace_track_artists(record, [artist.id for artist in artists])
        return record

    # Hey future me - two workers replacing the links of the same track can collide on the
    # (track_id, artist_id) key. The loser retries once in a fresh session, where the winner's
    # links are committed and visible to its delete. If that collides too, another replace is
    # still in flight with an equally fresh view; the track row itself is fine, so we log and
    # move on rather than cost the caller its play event.
    async def _replace_track_artists(self, record: Track, artist_ids: list[str]) -> None:
        for attempt in (1, 2):
            try:
                async with self._database.session_scope() as session:
                    record.artist_ids = await TrackRepository(session).replace_artists(
                        record.id, artist_ids
                    )
                return
            except UniqueViolationError:
                logger.debug(
                    f"Artist links of track {record.spotify_id} changed concurrently "
                    f"(attempt {attempt})"
                )
        logger.warning(
            f"Could not replace artist links of track {record.spotify_id}, keeping stored links"
        )

    async def create_play_event(
        self, user_id: str, track_spotify_id: str, played_at: datetime
    ) -> PlayEvent | None:
        """Record a play. Returns None if this exact play is already stored.

        Raises:
            EntityNotFoundException: The track hasn't been upserted yet
        """
        try:
            async with self._database.session_scope() as session:
                track = await TrackRepository(session).get_by_spotify_id(track_spotify_id)
                if track is None:
                    raise EntityNotFoundException("Track", track_spotify_id)
                return await PlayEventRepository(session).add(user_id, track.id, played_at)
        except UniqueViolationError:
            return None
