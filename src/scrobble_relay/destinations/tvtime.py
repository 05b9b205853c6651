"""TVTime client.

TVTime is reached through its web app's sidecar proxy: the real upstream
URL is base64-encoded into the ``o_b64`` query parameter.
"""

import base64
import json
import logging
import re
from typing import Any

import httpx

from ..errors import DestinationError
from ..http_client import HttpClientMixin
from ..models import Destination, MediaKind, PlaybackEvent

logger = logging.getLogger(__name__)

TVTIME_SIDECAR_URL = "https://app.tvtime.com/sidecar"
EPISODE_WATCH_URL = "https://api2.tozelabs.com/v2/watched_episodes/episode/{episode_id}"
MOVIE_TRACKING_URL = "https://msapi.tvtime.com/prod/v1/tracking/{uuid}/{action}"
SEARCH_URL = "https://search.tvtime.com/v1/search/series,movie"

STATUS_MESSAGES = {
    400: "Bad Request - Invalid request parameters",
    401: "Unauthorized - Authentication failed",
    403: "Forbidden - Access denied",
    404: "Not Found - Resource not found",
    429: "Too Many Requests - Rate limit exceeded",
    500: "Internal Server Error - TVTime server error",
    502: "Bad Gateway - TVTime service temporarily unavailable",
    503: "Service Unavailable - TVTime service temporarily unavailable",
    504: "Gateway Timeout - TVTime service timeout",
}

_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)


def sidecar_url(upstream: str) -> str:
    """Wrap an upstream URL for the sidecar proxy (base64, padding stripped)."""
    encoded = base64.b64encode(upstream.encode()).decode().rstrip("=")
    return f"{TVTIME_SIDECAR_URL}?o_b64={encoded}"


def build_error_message(status: int, body: str) -> str:
    """Readable error from a TVTime status code and response body."""
    status_message = STATUS_MESSAGES.get(status, f"HTTP {status}")
    message = f"TVTime API error: {status_message}"
    text = body.strip()

    try:
        data = json.loads(text) if text else None
    except ValueError:
        data = None
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error")
        return f"{message} - {detail}" if detail else message

    if text.startswith("<"):
        match = _TITLE_RE.search(text)
        if match:
            title = match.group(1).strip()
            if title and title != status_message and "Bad Gateway" not in title:
                message = f"{message} - {title}"
        else:
            match = _H1_RE.search(text)
            if match and match.group(1).strip() and match.group(1).strip() != status_message:
                message = f"{message} - {match.group(1).strip()}"
        return message

    if text and len(text) < 200:
        message = f"{message} - {text}"
    return message


class TVTimeClient(HttpClientMixin):
    """Marks episodes and movies watched on TVTime."""

    destination = Destination.TVTIME

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport
        self._client = None

    def _headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _request(self, method: str, url: str, access_token: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, headers=self._headers(access_token), **kwargs)
        except httpx.RequestError as e:
            raise DestinationError(f"TVTime request failed: {e}") from e
        if response.status_code >= 400:
            raise DestinationError(build_error_message(response.status_code, response.text))
        return response

    async def record_watch(self, access_token: str, event: PlaybackEvent, is_rewatch: bool) -> None:
        if event.media_kind == MediaKind.EPISODE:
            await self._watch_episode(access_token, event, is_rewatch)
        else:
            await self._watch_movie(access_token, event, is_rewatch)

    async def _watch_episode(self, access_token: str, event: PlaybackEvent, is_rewatch: bool) -> None:
        episode_id = event.ids.tvdb_episode_id
        if not episode_id:
            raise DestinationError("TVDB episode id is required for TVTime; make sure the media server has TVDB metadata")

        url = f"{sidecar_url(EPISODE_WATCH_URL.format(episode_id=episode_id))}&is_rewatch={1 if is_rewatch else 0}"
        response = await self._request("POST", url, access_token, content=b'""')

        try:
            result = response.json()
        except ValueError:
            logger.warning("[tvtime] Could not parse watch response for %s", event.describe())
            return
        if isinstance(result, dict) and result.get("result") and result["result"] != "OK":
            raise DestinationError(f"TVTime API returned non-OK result: {result['result']}")
        logger.debug("[tvtime] Marked episode %s watched (rewatch=%s)", event.describe(), is_rewatch)

    async def _watch_movie(self, access_token: str, event: PlaybackEvent, is_rewatch: bool) -> None:
        if not event.title:
            raise DestinationError("Movie title is required for TVTime")

        uuid = await self.find_movie_uuid(access_token, event)
        if not uuid:
            if event.ids.tvdb_movie_id:
                hint = f" (TVDB ID: {event.ids.tvdb_movie_id})"
            elif event.ids.imdb_movie_id:
                hint = f" (IMDB ID: {event.ids.imdb_movie_id})"
            else:
                hint = ""
            raise DestinationError(f'Could not find movie "{event.title}"{hint} on TVTime')

        action = "rewatch" if is_rewatch else "watch"
        response = await self._request("POST", sidecar_url(MOVIE_TRACKING_URL.format(uuid=uuid, action=action)), access_token)

        try:
            result = response.json()
        except ValueError:
            logger.warning("[tvtime] Could not parse tracking response for %s", event.describe())
            return
        if isinstance(result, dict) and result.get("status") and result["status"] != "success":
            raise DestinationError(f"TVTime API returned non-success status: {result['status']}")
        logger.debug("[tvtime] Marked movie %s as %s", event.describe(), action)

    async def find_movie_uuid(self, access_token: str, event: PlaybackEvent) -> str | None:
        """Search TVTime and pick the movie matching our ids, else the first hit."""
        tvdb_id = event.ids.tvdb_movie_id
        imdb_id = event.ids.imdb_movie_id
        query = tvdb_id or imdb_id or event.title
        limit = 12 if (tvdb_id or imdb_id) else 24

        client = await self._get_client()
        try:
            response = await client.get(
                sidecar_url(SEARCH_URL),
                params={"q": query, "offset": 0, "limit": limit},
                headers=self._headers(access_token),
            )
        except httpx.RequestError as e:
            raise DestinationError(f"TVTime request failed: {e}") from e
        if response.status_code >= 400:
            logger.error("[tvtime] Movie search failed for %s: %s", event.describe(), response.status_code)
            return None

        try:
            search = response.json()
        except ValueError:
            logger.error("[tvtime] Could not parse movie search response for %s", event.describe())
            return None
        if not isinstance(search, dict) or search.get("status") != "success":
            return None

        movies = [m for m in search.get("data") or [] if isinstance(m, dict)]
        if tvdb_id:
            for movie in movies:
                if str(movie.get("id")) == tvdb_id and movie.get("uuid"):
                    return movie["uuid"]
        if imdb_id:
            for movie in movies:
                if movie.get("imdb_id") == imdb_id and movie.get("uuid"):
                    return movie["uuid"]
        if movies and movies[0].get("uuid"):
            if not (tvdb_id or imdb_id):
                logger.warning("[tvtime] No id match for %s, using first search result", event.describe())
            return movies[0]["uuid"]

        logger.warning("[tvtime] No search results for %s", event.describe())
        return None
