"""Tests for destination clients."""

import base64
import json

import httpx
import pytest

from scrobble_relay.destinations import TraktClient, TVTimeClient
from scrobble_relay.destinations.tvtime import build_error_message, sidecar_url
from scrobble_relay.errors import DestinationError
from scrobble_relay.models import EventKind, MediaIdentifiers, MediaKind, PlaybackEvent, Source


def make_event(media_kind: MediaKind, **kwargs) -> PlaybackEvent:
    fields = {
        "source": Source.PLEX,
        "kind": EventKind.SCROBBLE,
        "source_user_id": "alice_plex",
        "media_kind": media_kind,
        "title": "The Show" if media_kind == MediaKind.EPISODE else "The Movie",
    }
    fields.update(kwargs)
    return PlaybackEvent(**fields)


def upstream_of(request: httpx.Request) -> str:
    """Decode the upstream URL carried in a sidecar request."""
    encoded = request.url.params["o_b64"].replace(" ", "+")
    return base64.b64decode(encoded + "=" * (-len(encoded) % 4)).decode()


# ========== Trakt ==========


class TestTraktClient:
    @pytest.fixture
    def requests(self):
        return []

    def client(self, requests, response: httpx.Response | None = None) -> TraktClient:
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return response or httpx.Response(201, json={"action": "scrobble"})

        return TraktClient("cid", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_episode_payload(self, requests):
        event = make_event(
            MediaKind.EPISODE,
            year=2020,
            season_number=2,
            episode_number=5,
            ids=MediaIdentifiers(tvdb_episode_id="349232", imdb_episode_id="tt1", tmdb_series_id="777"),
        )

        await self.client(requests).record_watch("token", event, is_rewatch=False)

        request = requests[0]
        assert request.url == "https://api.trakt.tv/scrobble/stop"
        assert request.headers["Authorization"] == "Bearer token"
        assert request.headers["trakt-api-version"] == "2"
        assert request.headers["trakt-api-key"] == "cid"
        assert json.loads(request.content) == {
            "episode": {"ids": {"tvdb": 349232}, "season": 2, "number": 5},
            "show": {"title": "The Show", "year": 2020, "ids": {"tmdb": 777}},
            "progress": 100,
        }

    @pytest.mark.asyncio
    async def test_episode_without_ids_uses_numbers(self, requests):
        event = make_event(MediaKind.EPISODE, season_number=1, episode_number=1)
        await self.client(requests).record_watch("token", event, is_rewatch=True)
        assert json.loads(requests[0].content)["episode"] == {"season": 1, "number": 1}

    @pytest.mark.asyncio
    async def test_episode_without_anything(self, requests):
        with pytest.raises(DestinationError):
            await self.client(requests).record_watch("token", make_event(MediaKind.EPISODE), is_rewatch=False)
        assert requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("ids", "expected"),
        [
            (MediaIdentifiers(imdb_movie_id="tt0133093", tmdb_movie_id="603"), {"ids": {"imdb": "tt0133093"}}),
            (MediaIdentifiers(tmdb_movie_id="603", tvdb_movie_id="9"), {"ids": {"tmdb": 603}}),
            (MediaIdentifiers(tvdb_movie_id="9"), {"ids": {"tvdb": 9}}),
            (MediaIdentifiers(), {"title": "The Movie", "year": 1999}),
        ],
    )
    async def test_movie_payload(self, requests, ids, expected):
        event = make_event(MediaKind.MOVIE, year=1999, ids=ids)
        await self.client(requests).record_watch("token", event, is_rewatch=False)
        assert json.loads(requests[0].content) == {"movie": expected, "progress": 100}

    @pytest.mark.asyncio
    async def test_api_error(self, requests):
        client = self.client(requests, httpx.Response(404, json={"error": "not found"}))
        with pytest.raises(DestinationError, match="Trakt API error: 404 - not found"):
            await client.record_watch("token", make_event(MediaKind.MOVIE), is_rewatch=False)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = TraktClient("cid", transport=httpx.MockTransport(handler))
        with pytest.raises(DestinationError, match="Trakt request failed"):
            await client.record_watch("token", make_event(MediaKind.MOVIE), is_rewatch=False)


# ========== TVTime ==========


def test_sidecar_url_strips_padding():
    url = sidecar_url("https://example.com/a")
    encoded = url.split("o_b64=", 1)[1]
    assert not encoded.endswith("=")
    assert base64.b64decode(encoded + "=" * (-len(encoded) % 4)) == b"https://example.com/a"


class TestBuildErrorMessage:
    def test_json_message(self):
        assert build_error_message(404, '{"message": "no such episode"}') == (
            "TVTime API error: Not Found - Resource not found - no such episode"
        )

    def test_html_title(self):
        body = "<html><head><title>Maintenance</title></head></html>"
        assert build_error_message(503, body).endswith(" - Maintenance")

    def test_html_bad_gateway_title_dropped(self):
        body = "<html><head><title>502 Bad Gateway</title></head></html>"
        assert build_error_message(502, body) == "TVTime API error: Bad Gateway - TVTime service temporarily unavailable"

    def test_html_h1(self):
        assert build_error_message(500, "<html><body><h1>Oops</h1></body></html>").endswith(" - Oops")

    def test_plain_text_and_unknown_status(self):
        assert build_error_message(418, "teapot") == "TVTime API error: HTTP 418 - teapot"


class TestTVTimeClient:
    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def search_results(self):
        return [
            {"id": 1, "uuid": "uuid-first", "imdb_id": "tt0000001"},
            {"id": 603, "uuid": "uuid-tvdb", "imdb_id": "tt0133093"},
            {"id": 700, "uuid": "uuid-imdb", "imdb_id": "tt7777777"},
        ]

    @pytest.fixture
    def client(self, requests, search_results):
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            upstream = upstream_of(request)
            if upstream.startswith("https://search.tvtime.com/"):
                return httpx.Response(200, json={"status": "success", "data": search_results})
            if "/watched_episodes/" in upstream:
                return httpx.Response(200, json={"result": "OK"})
            if "/tracking/" in upstream:
                return httpx.Response(200, json={"status": "success"})
            return httpx.Response(404)

        return TVTimeClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_episode_watch(self, client, requests):
        event = make_event(MediaKind.EPISODE, ids=MediaIdentifiers(tvdb_episode_id="349232"))

        await client.record_watch("token", event, is_rewatch=True)

        request = requests[0]
        assert request.method == "POST"
        assert request.url.host == "app.tvtime.com"
        assert request.url.params["is_rewatch"] == "1"
        assert upstream_of(request) == "https://api2.tozelabs.com/v2/watched_episodes/episode/349232"
        assert request.headers["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_episode_requires_tvdb(self, client, requests):
        event = make_event(MediaKind.EPISODE, ids=MediaIdentifiers(imdb_episode_id="tt1"))
        with pytest.raises(DestinationError, match="TVDB"):
            await client.record_watch("token", event, is_rewatch=False)
        assert requests == []

    @pytest.mark.asyncio
    async def test_episode_non_ok_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": "KO"})

        client = TVTimeClient(transport=httpx.MockTransport(handler))
        event = make_event(MediaKind.EPISODE, ids=MediaIdentifiers(tvdb_episode_id="1"))
        with pytest.raises(DestinationError, match="non-OK"):
            await client.record_watch("token", event, is_rewatch=False)

    @pytest.mark.asyncio
    async def test_episode_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="")

        client = TVTimeClient(transport=httpx.MockTransport(handler))
        event = make_event(MediaKind.EPISODE, ids=MediaIdentifiers(tvdb_episode_id="1"))
        with pytest.raises(DestinationError, match="Unauthorized"):
            await client.record_watch("token", event, is_rewatch=False)

    @pytest.mark.asyncio
    async def test_movie_matched_by_tvdb(self, client, requests):
        event = make_event(MediaKind.MOVIE, ids=MediaIdentifiers(tvdb_movie_id="603"))

        await client.record_watch("token", event, is_rewatch=False)

        search, watch = requests
        assert search.url.params["q"] == "603"
        assert search.url.params["limit"] == "12"
        assert upstream_of(watch) == "https://msapi.tvtime.com/prod/v1/tracking/uuid-tvdb/watch"

    @pytest.mark.asyncio
    async def test_movie_matched_by_imdb_rewatch(self, client, requests):
        event = make_event(MediaKind.MOVIE, ids=MediaIdentifiers(imdb_movie_id="tt7777777"))

        await client.record_watch("token", event, is_rewatch=True)

        assert upstream_of(requests[1]) == "https://msapi.tvtime.com/prod/v1/tracking/uuid-imdb/rewatch"

    @pytest.mark.asyncio
    async def test_movie_title_search_uses_first_result(self, client, requests):
        await client.record_watch("token", make_event(MediaKind.MOVIE), is_rewatch=False)

        assert requests[0].url.params["q"] == "The Movie"
        assert requests[0].url.params["limit"] == "24"
        assert upstream_of(requests[1]).endswith("/uuid-first/watch")

    @pytest.mark.asyncio
    async def test_movie_not_found(self, client, search_results):
        search_results.clear()
        event = make_event(MediaKind.MOVIE, ids=MediaIdentifiers(imdb_movie_id="tt404"))
        with pytest.raises(DestinationError, match=r'Could not find movie "The Movie" \(IMDB ID: tt404\)'):
            await client.record_watch("token", event, is_rewatch=False)
