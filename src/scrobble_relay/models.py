"""Data models for scrobble-relay."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Source(str, Enum):
    """Media servers that send webhooks."""

    PLEX = "plex"
    JELLYFIN = "jellyfin"


class EventKind(str, Enum):
    """Canonical playback states. Only SCROBBLE is dispatched."""

    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"
    SCROBBLE = "scrobble"


class MediaKind(str, Enum):
    """Media kinds we track."""

    MOVIE = "movie"
    EPISODE = "episode"


class Service(str, Enum):
    """Services a user can hold a credential for."""

    PLEX = "plex"
    TRAKT = "trakt"
    TVTIME = "tvtime"


class Destination(str, Enum):
    """Watch-tracking services we report to."""

    TVTIME = "tvtime"
    TRAKT = "trakt"

    @property
    def label(self) -> str:
        return _DESTINATION_LABELS[self]

    @property
    def service(self) -> Service:
        return Service(self.value)


_DESTINATION_LABELS = {Destination.TVTIME: "TVTime", Destination.TRAKT: "Trakt"}

# Dispatch and reporting order
DESTINATION_ORDER: tuple[Destination, ...] = (Destination.TVTIME, Destination.TRAKT)


class MediaIdentifiers(BaseModel):
    """External ids known for a movie or episode."""

    tvdb_episode_id: str | None = None
    imdb_episode_id: str | None = None
    tvdb_movie_id: str | None = None
    imdb_movie_id: str | None = None
    tmdb_movie_id: str | None = None
    tmdb_series_id: str | None = None

    def preferred(self, media_kind: MediaKind) -> tuple[str, str] | None:
        """Return the (column, value) pair that identifies this media for dedup.

        TVDB wins over IMDB; the IMDB id is only used when no TVDB id is known.
        """
        if media_kind == MediaKind.EPISODE:
            if self.tvdb_episode_id:
                return "tvdb_episode_id", self.tvdb_episode_id
            if self.imdb_episode_id:
                return "imdb_episode_id", self.imdb_episode_id
        elif media_kind == MediaKind.MOVIE:
            if self.tvdb_movie_id:
                return "tvdb_movie_id", self.tvdb_movie_id
            if self.imdb_movie_id:
                return "imdb_movie_id", self.imdb_movie_id
        return None


class PlaybackEvent(BaseModel):
    """Canonical, source-agnostic playback event."""

    source: Source
    kind: EventKind
    source_user_id: str  # Plex username or Jellyfin user id
    media_kind: MediaKind
    title: str  # Movie title, or show title for episodes
    year: int | None = None
    season_number: int | None = None
    episode_number: int | None = None
    episode_title: str | None = None
    ids: MediaIdentifiers = Field(default_factory=MediaIdentifiers)
    poster_url: str | None = None
    item_id: str | None = None  # Source server item id, when the source provides one
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def describe(self) -> str:
        """Short human-readable label for logs."""
        if self.media_kind == MediaKind.EPISODE:
            if self.season_number is not None and self.episode_number is not None:
                return f"{self.title} S{self.season_number:02d}E{self.episode_number:02d}"
            return self.title
        if self.year:
            return f"{self.title} ({self.year})"
        return self.title


class User(BaseModel):
    """Local user as provided by the user directory."""

    id: str
    display_name: str | None = None
    plex_username: str | None = None
    jellyfin_username: str | None = None
    jellyfin_user_id: str | None = None
    enabled: bool = True
    mark_movies_rewatched: bool = False
    mark_episodes_rewatched: bool = False

    def marks_rewatch(self, media_kind: MediaKind) -> bool:
        """Whether rewatches of this media kind are reported as rewatches."""
        if media_kind == MediaKind.MOVIE:
            return self.mark_movies_rewatched
        return self.mark_episodes_rewatched

    def source_username(self, source: Source) -> str | None:
        if source == Source.PLEX:
            return self.plex_username
        return self.jellyfin_username


class DestinationCredential(BaseModel):
    """Stored credential for one user on one service."""

    user_id: str
    service: Service
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    # TVTime only: replayed when the refresh token is rejected
    login_email: str | None = None
    login_password: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DestinationOutcome(BaseModel):
    """Result of dispatching one event to one destination."""

    destination: Destination
    success: bool
    error: str | None = None


class SyncHistoryEntry(BaseModel):
    """One row of the append-only sync history."""

    id: int | None = None
    user_id: str
    media_kind: MediaKind
    media_title: str
    source: Source
    ids: MediaIdentifiers = Field(default_factory=MediaIdentifiers)
    poster_url: str | None = None
    season_number: int | None = None
    episode_number: int | None = None
    year: int | None = None
    success: bool
    error_message: str | None = None
    was_rewatch: bool = False
    outcomes: list[DestinationOutcome] = Field(default_factory=list)
    synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def destinations(self) -> list[Destination]:
        """Destinations that accepted the event."""
        return [o.destination for o in self.outcomes if o.success]


# ========== Inbound webhook payloads ==========


class PlexAccount(BaseModel):
    """Account block of a Plex webhook."""

    id: int | None = None
    title: str | None = None
    thumb: str | None = None


class PlexMetadata(BaseModel):
    """Metadata block of a Plex webhook."""

    type: str = ""
    title: str | None = None
    grandparent_title: str | None = Field(alias="grandparentTitle", default=None)
    parent_title: str | None = Field(alias="parentTitle", default=None)
    year: int | None = None
    index: int | None = None
    parent_index: int | None = Field(alias="parentIndex", default=None)
    guids: list[dict[str, Any] | str] | str | None = Field(alias="Guid", default=None)
    guid: str | None = None
    primary_guid: str | None = Field(alias="primaryGuid", default=None)
    rating_key: str | None = Field(alias="ratingKey", default=None)
    thumb: str | None = None
    grandparent_thumb: str | None = Field(alias="grandparentThumb", default=None)

    model_config = {"populate_by_name": True}


class PlexWebhookPayload(BaseModel):
    """Incoming webhook payload from Plex."""

    event: str = ""
    user: bool | dict[str, Any] | None = None
    owner: bool | None = None
    account: PlexAccount | None = Field(alias="Account", default=None)
    metadata: PlexMetadata | None = Field(alias="Metadata", default=None)

    model_config = {"populate_by_name": True}


class JellyfinWebhookPayload(BaseModel):
    """Incoming webhook payload from the Jellyfin webhook plugin.

    The plugin template sends most values as strings; numbers are coerced to
    strings here and parsed leniently by the normalizer.
    """

    notification_type: str | None = Field(alias="notificationType", default=None)
    username: str | None = None
    user_id: str | None = Field(alias="userId", default=None)
    item_type: str | None = Field(alias="itemType", default=None)
    item_id: str | None = Field(alias="itemId", default=None)
    name: str | None = None
    year: str | None = None
    series_name: str | None = Field(alias="seriesName", default=None)
    season_number: str | None = Field(alias="seasonNumber", default=None)
    episode_number: str | None = Field(alias="episodeNumber", default=None)
    provider_tvdb: str | None = None
    provider_imdb: str | None = None
    provider_tmdb: str | None = None
    thumbnail: dict[str, Any] | None = None
    runtime_ticks: str | None = Field(alias="runtimeTicks", default=None)
    playback_position_ticks: str | None = Field(alias="playbackPositionTicks", default=None)
    played_to_completion: str | None = Field(alias="playedToCompletion", default=None)

    model_config = {"populate_by_name": True}

    @field_validator(
        "username",
        "user_id",
        "item_id",
        "name",
        "year",
        "series_name",
        "season_number",
        "episode_number",
        "provider_tvdb",
        "provider_imdb",
        "provider_tmdb",
        "runtime_ticks",
        "playback_position_ticks",
        "played_to_completion",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, int | float):
            return str(value)
        return value
