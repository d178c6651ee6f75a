"""Persistence layer: SQLAlchemy models, repositories and session management."""

from soundtrail.infrastructure.persistence.database import Database
from soundtrail.infrastructure.persistence.repositories import (
    AlbumRepository,
    ArtistRepository,
    PlayEventRepository,
    TrackRepository,
    UserRepository,
)

__all__ = [
    "AlbumRepository",
    "ArtistRepository",
    "Database",
    "PlayEventRepository",
    "TrackRepository",
    "UserRepository",
]
