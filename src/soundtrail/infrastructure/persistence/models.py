"""SQLAlchemy ORM models for soundtrail."""

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from soundtrail.domain.entities import utc_now


def new_id() -> str:
    """Generate a new UUID primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Hey future me, UserModel carries THREE concerns: the OAuth token pair, the circuit breaker
# counters and the manual archive flag. They all live on one row on purpose - the breaker
# update is a single UPDATE ... SET consecutive_failures = consecutive_failures + 1, no
# separate table to join or lock. refresh_token must ALWAYS be overwritten with whatever the
# refresh manager returned, never conditionally - see UserRepository.update_tokens.
class UserModel(Base):
    """A connected Spotify account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # OAuth tokens (SENSITIVE - consider encrypting in production)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    # Circuit breaker
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_failed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_successful_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_polled_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    # Manual "archive now" request
    archive_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archive_requested_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    play_events: Mapped[list["PlayEventModel"]] = relationship(
        "PlayEventModel",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # Scheduler ordering: archive_requested desc, failures asc, last_polled asc
        Index("ix_users_schedule_order", "is_active", "consecutive_failures", "last_polled_at"),
    )


# Listen up, ArtistModel/AlbumModel/TrackModel are GLOBAL reference data shared by every user.
# Two workers archiving different users will race to insert the same spotify_id - the unique
# constraint is what makes that race safe (loser gets IntegrityError, re-reads the winner's row).
class ArtistModel(Base):
    """Artist reference data."""

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    # Denormalized comma-joined genre list
    genres: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class AlbumModel(Base):
    """Album reference data."""

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class TrackModel(Base):
    """Track reference data."""

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    album_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("albums.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    album: Mapped["AlbumModel | None"] = relationship("AlbumModel")
    artist_links: Mapped[list["TrackArtistModel"]] = relationship(
        "TrackArtistModel",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TrackArtistModel.position",
    )


# Hey future me - this is the many-to-many between tracks and artists. position keeps the order
# Spotify lists the artists in ("Artist feat. Other"). The whole set is REPLACED on every track
# upsert (delete + insert), never merged - a track's artists always mirror the latest API answer.
class TrackArtistModel(Base):
    """Association between a track and one of its artists."""

    __tablename__ = "track_artists"

    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True
    )
    artist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PlayEventModel(Base):
    """One play of a track by a user."""

    __tablename__ = "play_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    played_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )

    user: Mapped["UserModel"] = relationship("UserModel", back_populates="play_events")

    __table_args__ = (
        # The idempotency guarantee for play recording - a play is never stored twice
        UniqueConstraint("user_id", "track_id", "played_at", name="uq_play_events_user_track_played"),
        Index("ix_play_events_user_played_at", "user_id", "played_at"),
    )
