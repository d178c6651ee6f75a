"""soundtrail - hourly Spotify listening-history archiver."""

__version__ = "0.4.0"
