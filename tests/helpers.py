"""Test doubles and constants shared across the suite."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from soundtrail.domain.entities import User
from soundtrail.domain.exceptions import KeyValueStoreUnavailable
from soundtrail.domain.ports import IKeyValueStore

# A fixed "now" most tests pin their clocks to
NOW = datetime(2024, 3, 10, 10, 45, tzinfo=UTC)

UserFactory = Callable[..., Awaitable[User]]


class FakeKeyValueStore(IKeyValueStore):
    """In-memory IKeyValueStore. Set fail=True to simulate Redis being down."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise KeyValueStoreUnavailable("store down")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value
