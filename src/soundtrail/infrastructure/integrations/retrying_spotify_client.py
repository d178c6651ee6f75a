"""Retry policy around SpotifyClient."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from soundtrail.config.settings import ArchiveSettings
from soundtrail.domain.dtos import ArtistDTO, PlayHistoryItemDTO
from soundtrail.domain.exceptions import SpotifyApiError, SpotifyAuthError, SpotifyRateLimitError
from soundtrail.domain.ports import ISpotifyApiClient
from soundtrail.infrastructure.integrations.spotify_client import SpotifyClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

RateLimitHook = Callable[[str, int], Awaitable[None]]


def compute_backoff(
    attempt: int,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    jitter_seconds: float = 1.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with additive jitter.

    delay = min(base * 2^attempt, max) + rand() * jitter, attempt is 0-based.
    """
    # Cap the exponent so a silly attempt number can't build a huge float
    exponential = min(base_seconds * (2 ** min(attempt, 32)), max_seconds)
    return exponential + rand() * jitter_seconds


# Hey future me - this is THE retry policy for Spotify reads. The rules:
# - 401 -> raise immediately. Retrying with the same stale token is pointless, the worker
#   refreshes BEFORE calling us (ensure-fresh), never after.
# - 429 -> sleep exactly Retry-After, try again, and DON'T burn a retry for it. A separate cap
#   (max_rate_limit_waits) stops a permanently throttled app from looping forever.
# - anything else (5xx, 4xx, transport errors) -> exponential backoff + jitter, up to
#   max_retries retries, then re-raise the last error for the worker to classify.
# Jitter spreads the retries of workers that started in the same second.
class RetryingSpotifyClient(ISpotifyApiClient):
    """ISpotifyApiClient with backoff, Retry-After handling and parallel artist chunks."""

    def __init__(
        self,
        client: SpotifyClient,
        settings: ArchiveSettings,
        on_rate_limited: RateLimitHook | None = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize the retrying client.

        Args:
            client: Base client that classifies responses
            settings: Retry/backoff knobs
            on_rate_limited: Optional async hook called with (user_id, retry_after) on every 429
            rand: Random source for jitter (tests pass a constant)
        """
        self._client = client
        self._settings = settings
        self._on_rate_limited = on_rate_limited
        self._rand = rand
        # Swapped out in tests so nobody waits for real
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()

    def backoff_delay(self, attempt: int) -> float:
        """Backoff before retry number attempt + 1."""
        return compute_backoff(
            attempt,
            base_seconds=self._settings.backoff_base_seconds,
            max_seconds=self._settings.backoff_max_seconds,
            jitter_seconds=self._settings.backoff_jitter_seconds,
            rand=self._rand,
        )

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        user_id: str | None = None,
    ) -> T:
        max_retries = self._settings.max_retries
        attempt = 0
        rate_limit_waits = 0

        while True:
            try:
                return await operation()
            except SpotifyAuthError:
                raise
            except SpotifyRateLimitError as e:
                if self._on_rate_limited is not None and user_id is not None:
                    await self._on_rate_limited(user_id, e.retry_after)
                if rate_limit_waits >= self._settings.max_rate_limit_waits:
                    logger.error(
                        f"Spotify kept rate limiting {description} after "
                        f"{rate_limit_waits} waits, giving up"
                    )
                    raise
                rate_limit_waits += 1
                logger.warning(
                    f"Spotify 429 on {description}, waiting {e.retry_after}s (Retry-After)"
                )
                await self._sleep(e.retry_after)
            except (SpotifyApiError, httpx.TransportError) as e:
                if attempt >= max_retries:
                    logger.warning(
                        f"{description} failed after {max_retries} retries: {e}"
                    )
                    raise
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"{description} failed (attempt {attempt}/{max_retries}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)

    async def get_recently_played(
        self, access_token: str, limit: int = 50, user_id: str | None = None
    ) -> list[PlayHistoryItemDTO]:
        """Fetch recently played tracks with retries."""
        return await self._with_retry(
            lambda: self._client.get_recently_played(access_token, limit),
            "recently-played",
            user_id,
        )

    # Listen up, /v1/artists takes at most 50 ids per call. We split into chunks and fire them
    # all at once - each chunk gets its own retry loop, so one throttled chunk doesn't restart
    # the others. If any chunk finally fails, the whole call fails once its siblings have
    # settled; the worker then archives nothing for this run and the breaker records it.
    async def get_artists(
        self, access_token: str, artist_ids: list[str], user_id: str | None = None
    ) -> list[ArtistDTO]:
        """Fetch artist details in parallel chunks with retries."""
        unique_ids = list(dict.fromkeys(artist_ids))
        if not unique_ids:
            return []
        size = self._client.settings.artists_chunk_size
        chunks = [unique_ids[i : i + size] for i in range(0, len(unique_ids), size)]

        results = await asyncio.gather(
            *(
                self._with_retry(
                    lambda chunk=chunk: self._client.get_artists(access_token, chunk),
                    f"artists chunk {index + 1}/{len(chunks)}",
                    user_id,
                )
                for index, chunk in enumerate(chunks)
            ),
            return_exceptions=True,
        )
        # Every chunk has settled by now, so nothing is left running unobserved
        artists: list[ArtistDTO] = []
        for chunk_result in results:
            if isinstance(chunk_result, BaseException):
                raise chunk_result
            artists.extend(chunk_result)
        return artists
