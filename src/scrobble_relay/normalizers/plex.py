"""Plex webhook normalization."""

import json
import logging
import re
from typing import Any
from urllib.parse import urlsplit

from pydantic import ValidationError

from ..errors import WebhookValidationError
from ..models import EventKind, MediaIdentifiers, MediaKind, PlaybackEvent, PlexMetadata, PlexWebhookPayload, Source

logger = logging.getLogger(__name__)

PLEX_EVENT_MAP: dict[str, EventKind] = {
    "media.play": EventKind.PLAYING,
    "media.pause": EventKind.PAUSED,
    "media.stop": EventKind.STOPPED,
    "media.scrobble": EventKind.SCROBBLE,
}

_PAT_TVDB = re.compile(r"^tvdb://(\d+)")
_PAT_IMDB = re.compile(r"^imdb://(tt\d+)")
_PAT_TMDB = re.compile(r"^tmdb://(\d+)")


def parse_plex_body(payload_field: str | None, raw_body: bytes) -> dict[str, Any]:
    """Decode a Plex webhook body.

    Plex posts multipart/form-data with the JSON document in a ``payload``
    field. Some proxies and test tools post the JSON directly, so an
    unreadable (or missing) ``payload`` field falls back to the raw body.
    """
    if payload_field:
        try:
            data = json.loads(payload_field)
            if isinstance(data, dict):
                return data
        except ValueError:
            logger.warning("[plex] Malformed payload field, falling back to raw body")

    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookValidationError("Plex webhook body is not valid JSON") from e
    if not isinstance(data, dict):
        raise WebhookValidationError("Plex webhook body is not a JSON object")
    return data


def _extract_ids(metadata: PlexMetadata) -> dict[str, str]:
    ids: dict[str, str] = {}

    def from_guid(guid: str) -> None:
        if match := _PAT_TVDB.match(guid):
            ids["tvdb"] = match.group(1)
        elif match := _PAT_IMDB.match(guid):
            ids["imdb"] = match.group(1)
        elif match := _PAT_TMDB.match(guid):
            ids["tmdb"] = match.group(1)

    if isinstance(metadata.guids, list):
        for entry in metadata.guids:
            if isinstance(entry, dict) and isinstance(entry.get("id"), str):
                from_guid(entry["id"])
            elif isinstance(entry, str):
                from_guid(entry)
    elif isinstance(metadata.guids, str):
        from_guid(metadata.guids)

    if metadata.guid:
        from_guid(metadata.guid)
    if metadata.primary_guid:
        from_guid(metadata.primary_guid)

    return ids


def resolve_poster_url(metadata: PlexMetadata, server_url: str | None) -> str | None:
    """Join the Plex thumb path onto the self-hosted server's base URL."""
    if not server_url:
        return None

    parts = urlsplit(server_url)
    if not parts.scheme or not parts.netloc:
        logger.debug("[plex] Ignoring unusable server URL for posters: %s", server_url)
        return None
    base_url = f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"

    if metadata.type == "episode":
        thumb = metadata.grandparent_thumb or metadata.thumb
    else:
        thumb = metadata.thumb
    if not thumb:
        return None

    if not thumb.startswith("/"):
        thumb = f"/{thumb}"
    return f"{base_url}{thumb}"


def normalize_plex(body: dict[str, Any], server_url: str | None = None) -> PlaybackEvent | None:
    """Convert a decoded Plex webhook into a PlaybackEvent.

    Returns None for payloads that do not describe a tracked movie or episode
    (clips, music, unknown events, or no account name).
    """
    try:
        payload = PlexWebhookPayload.model_validate(body)
    except ValidationError as e:
        raise WebhookValidationError(f"Invalid Plex payload: {e.error_count()} field error(s)") from e

    metadata = payload.metadata
    if metadata is None or metadata.type == "clip":
        return None

    username: str | None = None
    if payload.account and payload.account.title:
        username = payload.account.title
    elif isinstance(payload.user, dict) and payload.user.get("username"):
        username = str(payload.user["username"])
    if not username:
        logger.debug("[plex] Skipping %s without account name", payload.event)
        return None

    kind = PLEX_EVENT_MAP.get(payload.event)
    if kind is None:
        logger.debug("[plex] Unmapped event: %s", payload.event)
        return None

    ids = _extract_ids(metadata)
    poster_url = resolve_poster_url(metadata, server_url)

    if metadata.type == "movie":
        return PlaybackEvent(
            source=Source.PLEX,
            kind=kind,
            source_user_id=username,
            media_kind=MediaKind.MOVIE,
            title=metadata.title or "Unknown",
            year=metadata.year,
            ids=MediaIdentifiers(
                tvdb_movie_id=ids.get("tvdb"),
                imdb_movie_id=ids.get("imdb"),
                tmdb_movie_id=ids.get("tmdb"),
            ),
            poster_url=poster_url,
            item_id=metadata.rating_key,
        )

    if metadata.type == "episode":
        return PlaybackEvent(
            source=Source.PLEX,
            kind=kind,
            source_user_id=username,
            media_kind=MediaKind.EPISODE,
            title=metadata.grandparent_title or "Unknown",
            season_number=metadata.parent_index,
            episode_number=metadata.index,
            episode_title=metadata.title,
            ids=MediaIdentifiers(
                tvdb_episode_id=ids.get("tvdb"),
                imdb_episode_id=ids.get("imdb"),
            ),
            poster_url=poster_url,
            item_id=metadata.rating_key,
        )

    return None
