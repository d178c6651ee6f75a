"""Configuration module for soundtrail."""

from .settings import (
    ArchiveSettings,
    DatabaseSettings,
    ObservabilitySettings,
    RedisSettings,
    Settings,
    SpotifySettings,
    get_settings,
)

__all__ = [
    "ArchiveSettings",
    "DatabaseSettings",
    "ObservabilitySettings",
    "RedisSettings",
    "Settings",
    "SpotifySettings",
    "get_settings",
]
