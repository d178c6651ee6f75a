"""Tests for SpotifyClient response classification."""

import httpx
import pytest

from soundtrail.config.settings import SpotifySettings
from soundtrail.domain.exceptions import SpotifyApiError, SpotifyAuthError, SpotifyRateLimitError
from soundtrail.infrastructure.integrations import SpotifyClient
from soundtrail.infrastructure.integrations.spotify_client import parse_retry_after


def play_item(track_id: str | None, played_at: str = "2024-03-10T10:15:00.000Z") -> dict:
    """One recently-played entry as the Web API returns it."""
    return {
        "played_at": played_at,
        "track": {
            "id": track_id,
            "name": f"Song {track_id}",
            "duration_ms": 180000,
            "album": {"id": "al1", "name": "Album", "images": [{"url": "https://img/large"}]},
            "artists": [{"id": "ar1", "name": "Artist"}],
        },
    }


def make_client(handler) -> SpotifyClient:
    return SpotifyClient(
        SpotifySettings(client_id="id", client_secret="secret"),
        default_retry_after=60,
        transport=httpx.MockTransport(handler),
    )


class TestParseRetryAfter:
    """Test Retry-After parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("2", 2), ("2.7", 2), ("0", 0), ("-5", 0), (None, 60), ("", 60), ("soon", 60)],
    )
    def test_values(self, value: str | None, expected: int) -> None:
        """Seconds are parsed, garbage falls back to the default."""
        assert parse_retry_after(value, 60) == expected


class TestGetRecentlyPlayed:
    """Test /me/player/recently-played."""

    async def test_parses_items_and_sends_bearer_token(self) -> None:
        """Items become DTOs; the access token goes in the Authorization header."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": [play_item("t1"), play_item("t2")]})

        items = await make_client(handler).get_recently_played("token-abc", limit=50)

        assert [item.track.spotify_id for item in items] == ["t1", "t2"]
        assert items[0].track.album is not None
        assert items[0].track.album.image_url == "https://img/large"
        assert items[0].played_at.tzinfo is not None
        assert seen[0].headers["Authorization"] == "Bearer token-abc"
        assert seen[0].url.params["limit"] == "50"

    async def test_local_files_are_dropped(self) -> None:
        """Local files have no Spotify id and can't be archived."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"items": [play_item(None), play_item("t1")]})

        items = await make_client(handler).get_recently_played("token")

        assert [item.track.spotify_id for item in items] == ["t1"]

    async def test_malformed_items_are_skipped(self) -> None:
        """A bad timestamp or a null artist credit drops that entry, not the page."""
        null_artist = play_item("t4")
        null_artist["track"]["artists"] = [None]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        play_item("t1"),
                        play_item("t2", played_at="garbage"),
                        play_item("t3"),
                        null_artist,
                        None,
                    ]
                },
            )

        items = await make_client(handler).get_recently_played("token")

        assert [item.track.spotify_id for item in items] == ["t1", "t3"]

    async def test_limit_is_clamped(self) -> None:
        """Spotify never serves more than 50 items."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": []})

        await make_client(handler).get_recently_played("token", limit=500)

        assert seen[0].url.params["limit"] == "50"


class TestErrorClassification:
    """Test status code -> exception mapping."""

    async def test_401(self) -> None:
        """401 raises SpotifyAuthError."""
        client = make_client(lambda request: httpx.Response(401))
        with pytest.raises(SpotifyAuthError):
            await client.get_recently_played("token")

    async def test_429_with_retry_after(self) -> None:
        """429 carries the Retry-After seconds."""
        client = make_client(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))
        with pytest.raises(SpotifyRateLimitError) as exc_info:
            await client.get_recently_played("token")
        assert exc_info.value.retry_after == 7

    async def test_429_without_retry_after_uses_default(self) -> None:
        """A 429 without a header waits the configured default."""
        client = make_client(lambda request: httpx.Response(429))
        with pytest.raises(SpotifyRateLimitError) as exc_info:
            await client.get_recently_played("token")
        assert exc_info.value.retry_after == 60

    async def test_5xx(self) -> None:
        """Server errors keep their status and message."""
        client = make_client(
            lambda request: httpx.Response(503, json={"error": {"message": "Service unavailable"}})
        )
        with pytest.raises(SpotifyApiError) as exc_info:
            await client.get_recently_played("token")
        assert exc_info.value.status_code == 503
        assert exc_info.value.is_server_error is True
        assert "Service unavailable" in exc_info.value.message


class TestGetArtists:
    """Test /artists."""

    async def test_unknown_ids_are_dropped(self) -> None:
        """Spotify returns null for ids it doesn't know."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["ids"] == "a1,zzz"
            return httpx.Response(
                200, json={"artists": [{"id": "a1", "name": "A", "genres": ["rock"]}, None]}
            )

        artists = await make_client(handler).get_artists("token", ["a1", "zzz"])

        assert [(a.spotify_id, a.genres) for a in artists] == [("a1", ["rock"])]

    async def test_empty_ids_make_no_request(self) -> None:
        """Nothing to ask for, nothing to send."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await make_client(handler).get_artists("token", []) == []
