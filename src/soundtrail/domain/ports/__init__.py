"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod

from soundtrail.domain.dtos import ArtistDTO, PlayHistoryItemDTO
from soundtrail.domain.entities import BatchPayload, RefreshedToken


# Hey future me, ISpotifyApiClient is a PORT - the worker depends on this, not on httpx. The real
# implementation (base client + retrying wrapper) lives in infrastructure/integrations. Tests pass
# an AsyncMock(spec=ISpotifyApiClient) and never touch the network.
class ISpotifyApiClient(ABC):
    """Read-only access to the two Spotify endpoints the archiver needs."""

    @abstractmethod
    async def get_recently_played(
        self, access_token: str, limit: int = 50, user_id: str | None = None
    ) -> list[PlayHistoryItemDTO]:
        """Fetch the user's most recent plays (newest first).

        user_id is only used for rate-limit bookkeeping, the token identifies the account.
        """
        pass

    @abstractmethod
    async def get_artists(
        self, access_token: str, artist_ids: list[str], user_id: str | None = None
    ) -> list[ArtistDTO]:
        """Fetch full artist objects (with genres) for the given ids."""
        pass


class ITokenRefresher(ABC):
    """Exchanges a refresh token for a fresh access token."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Refresh an access token.

        Raises:
            TokenRefreshError: The token endpoint rejected the refresh
        """
        pass


# Listen up, this is the tiny slice of Redis we actually use. Keeping it this small means the
# in-memory fake in tests is ten lines and the gate never grows Redis-isms. Implementations
# raise KeyValueStoreUnavailable when the backend is down - callers decide how to degrade.
class IKeyValueStore(ABC):
    """Minimal key-value store with expiry."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        pass


class IBatchDispatcher(ABC):
    """Delivers a batch for execution after a delay (queue, cron, or in-process)."""

    @abstractmethod
    async def dispatch(self, payload: BatchPayload, delay_seconds: int) -> None:
        """Schedule payload to run delay_seconds from now."""
        pass


__all__ = [
    "IBatchDispatcher",
    "IKeyValueStore",
    "ISpotifyApiClient",
    "ITokenRefresher",
]
