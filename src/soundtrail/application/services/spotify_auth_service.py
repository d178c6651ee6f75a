"""Spotify token refresh.

Hey future me - this service owns the refresh-token grant and NOTHING else. It doesn't read
or write the database: TokenFreshnessService decides WHEN to refresh and persists the result.

The one rule that matters here: Spotify MAY rotate the refresh token. If the response carries
a new one, the old one is dead the moment we got the response. If it doesn't, the old one stays
valid. Either way RefreshedToken.refresh_token is the one to store - returning None for
"not rotated" is exactly how you lose a user's refresh token for good.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from soundtrail.domain.entities import RefreshedToken, utc_now
from soundtrail.domain.exceptions import TokenRefreshError
from soundtrail.domain.ports import ITokenRefresher
from soundtrail.infrastructure.integrations.spotify_client import SpotifyClient

logger = logging.getLogger(__name__)

# Spotify access tokens live one hour; used when a response omits expires_in
DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenRefreshManager(ITokenRefresher):
    """Exchanges refresh tokens for new access tokens, handling rotation."""

    def __init__(
        self,
        client: SpotifyClient,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize refresh manager.

        Args:
            client: Spotify client that talks to the token endpoint
            now: Clock, injectable for tests
        """
        self._client = client
        self._now = now

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Exchange refresh_token for a new access token.

        Args:
            refresh_token: The currently stored refresh token

        Returns:
            RefreshedToken with the rotated refresh token, or the one passed in when
            Spotify didn't rotate it, and expires_at = now + expires_in

        Raises:
            TokenRefreshError: The token endpoint rejected the refresh (e.g. invalid_grant)
            ConfigurationError: Client credentials are missing
        """
        data = await self._client.request_token_refresh(refresh_token)

        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError(
                "Token endpoint returned no access_token", error_code="invalid_response"
            )

        rotated = data.get("refresh_token")
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)

        if rotated and rotated != refresh_token:
            logger.info("Spotify rotated the refresh token")

        return RefreshedToken(
            access_token=access_token,
            refresh_token=rotated or refresh_token,
            expires_at=self._now() + timedelta(seconds=expires_in),
        )
