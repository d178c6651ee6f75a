"""External integration client implementations."""

from soundtrail.infrastructure.integrations.retrying_spotify_client import (
    RetryingSpotifyClient,
    compute_backoff,
)
from soundtrail.infrastructure.integrations.spotify_client import SpotifyClient

__all__ = [
    "RetryingSpotifyClient",
    "SpotifyClient",
    "compute_backoff",
]
