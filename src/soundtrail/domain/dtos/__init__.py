"""
Data Transfer Objects for Spotify API payloads.

Hey future me - these are the "dumb data carriers" between the Spotify client and the
reconciler. The client converts raw JSON into these right at the edge, so nothing further
in has to know Spotify's JSON shape. They validate the bare minimum (ids present) and
nothing else - the API is allowed to send partial data.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from soundtrail.domain.exceptions import ValidationException


@dataclass(frozen=True)
class ArtistRefDTO:
    """Artist as embedded in a track object (no genres)."""

    spotify_id: str
    name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ArtistRefDTO":
        if not data.get("id"):
            raise ValidationException("Spotify artist without id")
        return cls(spotify_id=data["id"], name=data.get("name") or "")


@dataclass(frozen=True)
class ArtistDTO:
    """Full artist object from /v1/artists."""

    spotify_id: str
    name: str
    genres: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ArtistDTO":
        if not data.get("id"):
            raise ValidationException("Spotify artist without id")
        return cls(
            spotify_id=data["id"],
            name=data.get("name") or "",
            genres=list(data.get("genres") or []),
        )

    @property
    def genres_joined(self) -> str:
        """Genres in the denormalized comma-joined form we store."""
        return ",".join(self.genres)


@dataclass(frozen=True)
class AlbumDTO:
    """Album as embedded in a track object."""

    spotify_id: str
    name: str
    image_url: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "AlbumDTO":
        if not data.get("id"):
            raise ValidationException("Spotify album without id")
        # Spotify orders images largest first - the first one is the cover we want
        images = data.get("images") or []
        image_url = images[0].get("url") if images else None
        return cls(spotify_id=data["id"], name=data.get("name") or "", image_url=image_url)


@dataclass(frozen=True)
class TrackDTO:
    """Track object with its album and artists."""

    spotify_id: str
    name: str
    duration_ms: int
    album: AlbumDTO | None
    artists: list[ArtistRefDTO]

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "TrackDTO":
        if not data.get("id"):
            raise ValidationException("Spotify track without id")
        album_data = data.get("album")
        album = AlbumDTO.from_api(album_data) if album_data and album_data.get("id") else None
        artists = [
            ArtistRefDTO.from_api(artist)
            for artist in data.get("artists") or []
            if artist.get("id")
        ]
        return cls(
            spotify_id=data["id"],
            name=data.get("name") or "",
            duration_ms=int(data.get("duration_ms") or 0),
            album=album,
            artists=artists,
        )

    @property
    def artist_ids(self) -> list[str]:
        return [artist.spotify_id for artist in self.artists]


@dataclass(frozen=True)
class PlayHistoryItemDTO:
    """One entry of /v1/me/player/recently-played."""

    track: TrackDTO
    played_at: datetime

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PlayHistoryItemDTO":
        played_at_raw = data.get("played_at")
        if not played_at_raw:
            raise ValidationException("Play history item without played_at")
        played_at = datetime.fromisoformat(played_at_raw)
        if played_at.tzinfo is None:
            played_at = played_at.replace(tzinfo=UTC)
        return cls(track=TrackDTO.from_api(data.get("track") or {}), played_at=played_at)


__all__ = [
    "AlbumDTO",
    "ArtistDTO",
    "ArtistRefDTO",
    "PlayHistoryItemDTO",
    "TrackDTO",
]
