"""Tests for TokenFreshnessService."""

import asyncio
import gc
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from soundtrail.application.services import TokenFreshnessService
from soundtrail.domain.entities import RefreshedToken
from soundtrail.domain.exceptions import (
    EntityNotFoundException,
    NoExpiryRecordedError,
    NoRefreshTokenError,
    TokenRefreshError,
)
from soundtrail.domain.ports import ITokenRefresher
from soundtrail.infrastructure.persistence import Database, UserRepository
from tests.helpers import NOW, UserFactory


@pytest.fixture
def refresher() -> AsyncMock:
    """Token refresher that hands out a rotated token pair."""
    mock = AsyncMock(spec=ITokenRefresher)
    mock.refresh.return_value = RefreshedToken(
        access_token="refreshed-access",
        refresh_token="rotated-refresh",
        expires_at=NOW + timedelta(hours=1),
    )
    return mock


@pytest.fixture
def service(db: Database, refresher: AsyncMock) -> TokenFreshnessService:
    """Freshness service pinned to NOW."""
    return TokenFreshnessService(db, refresher, now=lambda: NOW)


class TestEnsureFreshToken:
    """Test the just-in-time freshness guarantee."""

    async def test_fresh_token_is_returned_without_refresh(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """Six minutes left - no refresh, stored token returned."""
        user = await user_factory(
            access_token="still-good", token_expires_at=NOW + timedelta(minutes=6)
        )

        assert await service.ensure_fresh_token(user.id) == "still-good"
        refresher.refresh.assert_not_called()

    async def test_token_inside_buffer_is_refreshed_and_persisted(
        self,
        db: Database,
        service: TokenFreshnessService,
        refresher: AsyncMock,
        user_factory: UserFactory,
    ) -> None:
        """Four minutes left - refresh, store the rotated pair, return the new token."""
        user = await user_factory(
            refresh_token="original-refresh", token_expires_at=NOW + timedelta(minutes=4)
        )

        assert await service.ensure_fresh_token(user.id) == "refreshed-access"
        refresher.refresh.assert_awaited_once_with("original-refresh")

        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)
        assert stored is not None
        assert stored.access_token == "refreshed-access"
        assert stored.refresh_token == "rotated-refresh"
        assert stored.token_expires_at == NOW + timedelta(hours=1)

    async def test_unrotated_refresh_token_is_written_back(
        self,
        db: Database,
        service: TokenFreshnessService,
        refresher: AsyncMock,
        user_factory: UserFactory,
    ) -> None:
        """When Spotify keeps the refresh token, the stored one survives the refresh."""
        refresher.refresh.return_value = RefreshedToken(
            access_token="refreshed-access",
            refresh_token="original-refresh",
            expires_at=NOW + timedelta(hours=1),
        )
        user = await user_factory(refresh_token="original-refresh", token_expires_at=NOW)

        await service.ensure_fresh_token(user.id)

        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)
        assert stored is not None
        assert stored.refresh_token == "original-refresh"

    async def test_missing_access_token_forces_refresh(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """A far-off expiry is no use without an access token."""
        user = await user_factory(access_token=None)

        assert await service.ensure_fresh_token(user.id) == "refreshed-access"
        refresher.refresh.assert_awaited_once()

    async def test_unknown_user(self, service: TokenFreshnessService) -> None:
        """Unknown ids raise EntityNotFoundException."""
        with pytest.raises(EntityNotFoundException):
            await service.ensure_fresh_token("missing")

    async def test_missing_refresh_token(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """No refresh token means no background access at all."""
        user = await user_factory(refresh_token=None)

        with pytest.raises(NoRefreshTokenError):
            await service.ensure_fresh_token(user.id)
        refresher.refresh.assert_not_called()

    async def test_missing_expiry(
        self, service: TokenFreshnessService, user_factory: UserFactory
    ) -> None:
        """Freshness can't be judged without a recorded expiry."""
        user = await user_factory(token_expires_at=None)

        with pytest.raises(NoExpiryRecordedError):
            await service.ensure_fresh_token(user.id)

    async def test_refresh_failure_propagates(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """The worker needs to see TokenRefreshError to classify it as AUTH."""
        refresher.refresh.side_effect = TokenRefreshError(error_code="invalid_grant")
        user = await user_factory(token_expires_at=NOW)

        with pytest.raises(TokenRefreshError):
            await service.ensure_fresh_token(user.id)

    async def test_concurrent_callers_refresh_once(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """Two callers for the same user don't both spend the refresh token."""
        user = await user_factory(token_expires_at=NOW)

        first, second = await asyncio.gather(
            service.ensure_fresh_token(user.id), service.ensure_fresh_token(user.id)
        )

        assert first == second == "refreshed-access"
        refresher.refresh.assert_awaited_once()

    async def test_locks_are_released_after_use(
        self, service: TokenFreshnessService, user_factory: UserFactory
    ) -> None:
        """Lock bookkeeping doesn't grow with every user ever refreshed."""
        users = [await user_factory(token_expires_at=NOW) for _ in range(3)]

        await asyncio.gather(*(service.ensure_fresh_token(user.id) for user in users))
        gc.collect()

        assert len(service._locks) == 0


class TestRefreshIfNeeded:
    """Test the best-effort session path."""

    async def test_returns_token_on_success(
        self, service: TokenFreshnessService, user_factory: UserFactory
    ) -> None:
        """Works like ensure_fresh_token when nothing goes wrong."""
        user = await user_factory(access_token="still-good")

        assert await service.refresh_if_needed(user.id) == "still-good"

    async def test_swallows_refresh_failure(
        self, service: TokenFreshnessService, refresher: AsyncMock, user_factory: UserFactory
    ) -> None:
        """A failed refresh returns None instead of raising."""
        refresher.refresh.side_effect = TokenRefreshError()
        user = await user_factory(token_expires_at=NOW)

        assert await service.refresh_if_needed(user.id) is None
