"""Shared test fixtures.

Hey future me - storage tests run against a real SQLite file (aiosqlite) in tmp_path, not mocks
and not :memory:. The reconciler and the breaker are all about what the database does on
conflict and on concurrent increments. A mocked session would happily "pass" both, and an
in-memory database squeezes every session through one shared connection, so concurrent
sessions would commit and roll back each other's work.
"""

from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update

from soundtrail.config import Settings
from soundtrail.domain.entities import User
from soundtrail.infrastructure.persistence import Database, UserRepository
from soundtrail.infrastructure.persistence.models import UserModel
from tests.helpers import NOW, FakeKeyValueStore, UserFactory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with a throwaway SQLite file and dummy Spotify credentials."""
    return Settings(
        database={"url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"},
        spotify={"client_id": "test-client", "client_secret": "test-secret"},
        redis={"url": None},
    )


@pytest.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh database with all tables created."""
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def kv_store() -> FakeKeyValueStore:
    """In-memory key-value store."""
    return FakeKeyValueStore()


@pytest.fixture
def user_factory(db: Database) -> UserFactory:
    """Create users with a valid token pair; keyword overrides go straight onto the row."""
    counter = 0

    async def _create(**overrides: Any) -> User:
        nonlocal counter
        counter += 1
        async with db.session_scope() as session:
            user = await UserRepository(session).upsert_from_oauth(
                spotify_id=overrides.pop("spotify_id", f"spotify-user-{counter}"),
                access_token=overrides.pop("access_token", f"access-{counter}"),
                refresh_token=overrides.pop("refresh_token", f"refresh-{counter}"),
                expires_at=overrides.pop("token_expires_at", NOW + timedelta(hours=1)),
            )
            if overrides:
                await session.execute(
                    update(UserModel).where(UserModel.id == user.id).values(**overrides)
                )
        async with db.session_scope() as session:
            stored = await UserRepository(session).get_by_id(user.id)
        assert stored is not None
        return stored

    return _create
