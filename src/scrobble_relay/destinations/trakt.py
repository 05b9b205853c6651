"""Trakt scrobble client."""

import logging
from typing import Any

import httpx

from ..errors import DestinationError
from ..http_client import HttpClientMixin, extract_error_message
from ..models import Destination, MediaKind, PlaybackEvent

logger = logging.getLogger(__name__)

TRAKT_API_URL = "https://api.trakt.tv"


def _id_value(value: str) -> int | str:
    """Trakt expects numeric ids as numbers."""
    return int(value) if value.isdigit() else value


def build_episode_payload(event: PlaybackEvent) -> dict[str, Any]:
    episode: dict[str, Any] = {}
    if event.ids.tvdb_episode_id:
        episode["ids"] = {"tvdb": _id_value(event.ids.tvdb_episode_id)}
    elif event.ids.imdb_episode_id:
        episode["ids"] = {"imdb": event.ids.imdb_episode_id}

    if event.season_number is not None and event.episode_number is not None:
        episode["season"] = event.season_number
        episode["number"] = event.episode_number

    if "ids" not in episode and "number" not in episode:
        raise DestinationError("Episode requires a TVDB id, an IMDB id, or season and episode numbers")
    if not event.title:
        raise DestinationError("Show title is required for episode scrobble")

    show: dict[str, Any] = {"title": event.title}
    if event.year:
        show["year"] = event.year
    if event.ids.tmdb_series_id:
        show["ids"] = {"tmdb": _id_value(event.ids.tmdb_series_id)}

    return {"episode": episode, "show": show, "progress": 100}


def build_movie_payload(event: PlaybackEvent) -> dict[str, Any]:
    movie: dict[str, Any] = {}
    if event.ids.imdb_movie_id:
        movie["ids"] = {"imdb": event.ids.imdb_movie_id}
    elif event.ids.tmdb_movie_id:
        movie["ids"] = {"tmdb": _id_value(event.ids.tmdb_movie_id)}
    elif event.ids.tvdb_movie_id:
        movie["ids"] = {"tvdb": _id_value(event.ids.tvdb_movie_id)}
    elif event.title:
        movie["title"] = event.title
        if event.year:
            movie["year"] = event.year
    else:
        raise DestinationError("Movie requires an IMDB, TMDB or TVDB id, or a title")

    return {"movie": movie, "progress": 100}


class TraktClient(HttpClientMixin):
    """Marks items watched via ``/scrobble/stop`` at 100% progress.

    Trakt decides for itself whether a repeat scrobble is a rewatch, so
    ``is_rewatch`` is accepted and ignored.
    """

    destination = Destination.TRAKT

    def __init__(self, client_id: str, transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self._transport = transport
        self._client = None

    async def record_watch(self, access_token: str, event: PlaybackEvent, is_rewatch: bool) -> None:
        if event.media_kind == MediaKind.EPISODE:
            payload = build_episode_payload(event)
        else:
            payload = build_movie_payload(event)

        client = await self._get_client()
        try:
            response = await client.post(
                f"{TRAKT_API_URL}/scrobble/stop",
                json=payload,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "trakt-api-version": "2",
                    "trakt-api-key": self.client_id,
                },
            )
        except httpx.RequestError as e:
            raise DestinationError(f"Trakt request failed: {e}") from e

        if response.status_code >= 400:
            message = extract_error_message(response)
            logger.error(
                "[trakt] Scrobble failed for %s: %s - %s", event.describe(), response.status_code, message
            )
            raise DestinationError(f"Trakt API error: {response.status_code} - {message}")

        logger.debug("[trakt] Scrobbled %s", event.describe())
