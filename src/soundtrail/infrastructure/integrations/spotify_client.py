"""Spotify HTTP client: Web API reads and the OAuth refresh-token grant."""

import logging
from typing import Any, cast

import httpx

from soundtrail.config.settings import SpotifySettings
from soundtrail.domain.dtos import ArtistDTO, PlayHistoryItemDTO
from soundtrail.domain.exceptions import (
    ConfigurationError,
    SpotifyApiError,
    SpotifyAuthError,
    SpotifyRateLimitError,
    TokenRefreshError,
    ValidationException,
)

logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None, default: int) -> int:
    """Parse a Retry-After header given in seconds, falling back to default."""
    if not value:
        return default
    try:
        return max(0, int(float(value)))
    except ValueError:
        return default


class SpotifyClient:
    """Single-shot HTTP client for the Spotify endpoints the archiver uses.

    No retries here - every non-success response is turned into a typed exception and
    raised. RetryingSpotifyClient decides what to do with them.
    """

    # Hey future me, this init is deceptively simple - we DON'T create the HTTP client here
    # because we need to be async-friendly. The actual client gets lazy-loaded in _get_client().
    # transport is only for tests (httpx.MockTransport), production leaves it None.
    def __init__(
        self,
        settings: SpotifySettings,
        default_retry_after: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Spotify client.

        Args:
            settings: Spotify configuration settings
            default_retry_after: Seconds to assume when a 429 has no Retry-After header
            transport: Optional httpx transport override
        """
        self.settings = settings
        self.default_retry_after = default_retry_after
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout, transport=self._transport
            )
        return self._client

    # Hey, this close() is IMPORTANT - if you don't call it, you'll leak connections and
    # eventually run out of file descriptors. The app lifespan calls it on shutdown.
    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _api_get(
        self, path: str, access_token: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """GET a Web API path and classify the response.

        Raises:
            SpotifyAuthError: 401, the access token is stale or revoked
            SpotifyRateLimitError: 429, carries the Retry-After seconds
            SpotifyApiError: any other non-2xx
            httpx.TransportError: network level failure
        """
        client = await self._get_client()
        response = await client.get(
            f"{self.settings.api_base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if response.status_code == 401:
            raise SpotifyAuthError("Unauthorized - token may be expired")

        if response.status_code == 429:
            retry_after = parse_retry_after(
                response.headers.get("Retry-After"), self.default_retry_after
            )
            raise SpotifyRateLimitError(retry_after)

        if not response.is_success:
            message = "Spotify API error"
            try:
                error = response.json().get("error")
                if isinstance(error, dict):
                    message = error.get("message") or message
            except ValueError:
                pass
            raise SpotifyApiError(f"{message} ({path})", response.status_code)

        return cast(dict[str, Any], response.json())

    async def get_recently_played(
        self, access_token: str, limit: int = 50
    ) -> list[PlayHistoryItemDTO]:
        """
        Get the user's recently played tracks (newest first).

        Args:
            access_token: OAuth access token
            limit: Number of items, clamped to Spotify's page maximum

        Returns:
            Play history items. Entries without a track id (local files) are dropped.
        """
        limit = max(1, min(limit, self.settings.recently_played_limit))
        data = await self._api_get(
            "/me/player/recently-played", access_token, params={"limit": limit}
        )
        items: list[PlayHistoryItemDTO] = []
        for index, item in enumerate(data.get("items") or []):
            try:
                track = item.get("track") or {}
                if not track.get("id") or item.get("is_local") or track.get("is_local"):
                    logger.debug("Skipping recently-played item without Spotify id")
                    continue
                items.append(PlayHistoryItemDTO.from_api(item))
            except (ValidationException, ValueError, TypeError, AttributeError, KeyError) as e:
                # One malformed entry costs only that play, the rest of the page is archived
                logger.warning(f"Skipping malformed recently-played item #{index}: {e!r}")
        return items

    async def get_artists(self, access_token: str, artist_ids: list[str]) -> list[ArtistDTO]:
        """
        Get full artist objects for ONE chunk of ids.

        Args:
            access_token: OAuth access token
            artist_ids: At most artists_chunk_size ids

        Returns:
            Artist details; ids Spotify doesn't know come back as null and are dropped
        """
        if not artist_ids:
            return []
        data = await self._api_get(
            "/artists", access_token, params={"ids": ",".join(artist_ids)}
        )
        return [ArtistDTO.from_api(artist) for artist in data.get("artists") or [] if artist]

    # Listen up, this is the refresh-token grant. Client credentials go in the body (Spotify
    # accepts both body and Basic auth). Spotify returns 400 {"error": "invalid_grant"} when the
    # refresh token is revoked - we pull the error code out of the body so callers can tell
    # "user must re-consent" apart from "token endpoint had a bad moment".
    async def request_token_refresh(self, refresh_token: str) -> dict[str, Any]:
        """
        Exchange a refresh token at the OAuth token endpoint.

        Args:
            refresh_token: Refresh token from a previous authentication

        Returns:
            Raw token response (access_token, expires_in, optional refresh_token)

        Raises:
            ConfigurationError: Client credentials are not configured
            TokenRefreshError: Any non-success response
        """
        if not self.settings.has_credentials:
            raise ConfigurationError(
                "Spotify client credentials not configured. "
                "Set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET."
            )

        client = await self._get_client()
        response = await client.post(
            self.settings.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if not response.is_success:
            error_code: str | None = None
            description = response.reason_phrase
            try:
                body = response.json()
                error_code = body.get("error")
                description = body.get("error_description") or description
            except ValueError:
                pass
            raise TokenRefreshError(
                message=f"Token refresh failed: {error_code or response.status_code} {description}",
                error_code=error_code,
                http_status=response.status_code,
            )

        return cast(dict[str, Any], response.json())
