"""Jellyfin webhook normalization."""

import json
import logging
from typing import Any

from pydantic import ValidationError

from ..errors import WebhookValidationError
from ..models import EventKind, JellyfinWebhookPayload, MediaIdentifiers, MediaKind, PlaybackEvent, Source

logger = logging.getLogger(__name__)

# Fraction of runtime that counts as "played to completion" when the flag is absent
COMPLETION_THRESHOLD = 0.9


def parse_jellyfin_body(raw_body: bytes, content_type: str = "") -> dict[str, Any]:
    """Decode a Jellyfin webhook body from the raw request bytes.

    The webhook plugin's content type depends on how the template is set up:
    with ``text/plain`` (or no content type) the JSON document arrives as an
    unparsed string, sometimes JSON-encoded a second time. Reading the raw
    buffer handles all of these the same way.
    """
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookValidationError("Invalid JSON payload") from e

    if not text.strip():
        logger.error("[jellyfin] Empty webhook body (content-type=%s)", content_type or "none")
        raise WebhookValidationError("Empty or invalid payload")

    try:
        data = json.loads(text)
        if isinstance(data, str):
            data = json.loads(data)
    except ValueError as e:
        logger.error("[jellyfin] Failed to parse webhook body as JSON (content-type=%s)", content_type or "none")
        raise WebhookValidationError("Invalid JSON payload") from e

    if not isinstance(data, dict) or not data:
        raise WebhookValidationError("Empty or invalid payload")
    return data


def pop_api_key(body: dict[str, Any], header_key: str | None) -> str | None:
    """Return the webhook key from the header, else from the payload.

    An ``apiKey`` embedded in the payload is always removed so it never
    travels further down the pipeline.
    """
    body_key = body.pop("apiKey", None)
    if header_key:
        return header_key
    if body_key is None:
        return None
    return str(body_key)


def _parse_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _non_empty(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _numeric_id(value: str | None) -> str | None:
    number = _parse_int(value)
    return str(number) if number is not None else None


def played_to_completion(payload: JellyfinWebhookPayload) -> bool:
    """Use the explicit flag when present, otherwise compare position to runtime."""
    flag = (payload.played_to_completion or "").strip().lower()
    if flag == "true":
        return True
    if flag == "false":
        return False

    runtime = _parse_int(payload.runtime_ticks)
    position = _parse_int(payload.playback_position_ticks)
    if runtime and position is not None and runtime > 0:
        return position / runtime >= COMPLETION_THRESHOLD
    return False


def _event_kind(payload: JellyfinWebhookPayload) -> EventKind | None:
    if payload.notification_type == "PlaybackStart":
        return EventKind.PLAYING
    if payload.notification_type == "PlaybackStop":
        return EventKind.SCROBBLE if played_to_completion(payload) else EventKind.STOPPED
    return None


def normalize_jellyfin(body: dict[str, Any]) -> PlaybackEvent | None:
    """Convert a decoded Jellyfin webhook into a PlaybackEvent.

    Returns None for events and item types we do not track.
    """
    try:
        payload = JellyfinWebhookPayload.model_validate(body)
    except ValidationError as e:
        raise WebhookValidationError(f"Invalid Jellyfin payload: {e.error_count()} field error(s)") from e

    if not payload.user_id:
        logger.debug("[jellyfin] Skipping %s without user id", payload.notification_type)
        return None

    if payload.item_type not in ("Movie", "Episode"):
        logger.debug("[jellyfin] Skipping item type: %s", payload.item_type)
        return None

    kind = _event_kind(payload)
    if kind is None:
        logger.debug("[jellyfin] Unmapped notification type: %s", payload.notification_type)
        return None

    # Poster URLs from the plugin are already absolute
    poster_url = None
    if payload.thumbnail and isinstance(payload.thumbnail.get("url"), str):
        poster_url = payload.thumbnail["url"] or None

    if payload.item_type == "Movie":
        return PlaybackEvent(
            source=Source.JELLYFIN,
            kind=kind,
            source_user_id=payload.user_id,
            media_kind=MediaKind.MOVIE,
            title=payload.name or "Unknown",
            year=_parse_int(payload.year),
            ids=MediaIdentifiers(
                tvdb_movie_id=_numeric_id(payload.provider_tvdb),
                imdb_movie_id=_non_empty(payload.provider_imdb),
                tmdb_movie_id=_numeric_id(payload.provider_tmdb),
            ),
            poster_url=poster_url,
            item_id=payload.item_id,
        )

    return PlaybackEvent(
        source=Source.JELLYFIN,
        kind=kind,
        source_user_id=payload.user_id,
        media_kind=MediaKind.EPISODE,
        title=payload.series_name or "Unknown",
        year=_parse_int(payload.year),
        season_number=_parse_int(payload.season_number),
        episode_number=_parse_int(payload.episode_number),
        episode_title=payload.name,
        ids=MediaIdentifiers(
            tvdb_episode_id=_numeric_id(payload.provider_tvdb),
            imdb_episode_id=_non_empty(payload.provider_imdb),
        ),
        poster_url=poster_url,
        item_id=payload.item_id,
    )
