"""initial schema - users, reference data, play events

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

Hey future me - this is the whole schema in one go:
- users: OAuth token pair + circuit breaker counters + manual archive flag on ONE row
- artists / albums / tracks: global reference data, unique on spotify_id (the race-safety net)
- track_artists: ordered many-to-many, replaced wholesale on every track upsert
- play_events: unique on (user_id, track_id, played_at) - the reason re-archiving is harmless
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables and indexes."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("spotify_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("image_url", sa.String(512), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_failure_type", sa.String(20), nullable=True),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archive_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("archive_requested_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_spotify_id", "users", ["spotify_id"], unique=True)
    op.create_index(
        "ix_users_schedule_order",
        "users",
        ["is_active", "consecutive_failures", "last_polled_at"],
    )

    op.create_table(
        "artists",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("spotify_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("genres", sa.Text, nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index("ix_artists_spotify_id", "artists", ["spotify_id"], unique=True)

    op.create_table(
        "albums",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("spotify_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("image_url", sa.String(512), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_albums_spotify_id", "albums", ["spotify_id"], unique=True)

    op.create_table(
        "tracks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("spotify_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "album_id",
            sa.String(36),
            sa.ForeignKey("albums.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_tracks_spotify_id", "tracks", ["spotify_id"], unique=True)
    op.create_index("ix_tracks_album_id", "tracks", ["album_id"])

    op.create_table(
        "track_artists",
        sa.Column(
            "track_id",
            sa.String(36),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "artist_id",
            sa.String(36),
            sa.ForeignKey("artists.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_track_artists_artist_id", "track_artists", ["artist_id"])

    op.create_table(
        "play_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "track_id",
            sa.String(36),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("played_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "track_id", "played_at", name="uq_play_events_user_track_played"
        ),
    )
    op.create_index("ix_play_events_track_id", "play_events", ["track_id"])
    op.create_index("ix_play_events_user_played_at", "play_events", ["user_id", "played_at"])


def downgrade() -> None:
    """Drop everything (children first)."""
    op.drop_index("ix_play_events_user_played_at", table_name="play_events")
    op.drop_index("ix_play_events_track_id", table_name="play_events")
    op.drop_table("play_events")
    op.drop_index("ix_track_artists_artist_id", table_name="track_artists")
    op.drop_table("track_artists")
    op.drop_index("ix_tracks_album_id", table_name="tracks")
    op.drop_index("ix_tracks_spotify_id", table_name="tracks")
    op.drop_table("tracks")
    op.drop_index("ix_albums_spotify_id", table_name="albums")
    op.drop_table("albums")
    op.drop_index("ix_artists_spotify_id", table_name="artists")
    op.drop_table("artists")
    op.drop_index("ix_users_schedule_order", table_name="users")
    op.drop_index("ix_users_spotify_id", table_name="users")
    op.drop_table("users")
