"""Configuration models for scrobble-relay."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class WebhookConfig(BaseModel):
    """Inbound webhook authentication."""

    api_key: str | None = None  # Shared secret; unset = no check


class MediaServerConfig(BaseModel):
    """Base URL of a self-hosted media server."""

    server_url: str | None = None


class TraktConfig(BaseModel):
    """Trakt application credentials."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = "urn:ietf:wg:oauth:2.0:oob"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class TVTimeConfig(BaseModel):
    """TVTime browser session settings."""

    initial_token_ttl_seconds: float = 300.0
    browser_timeout_seconds: float = 60.0


class HistoryConfig(BaseModel):
    """Sync history retention."""

    limit: int = Field(default=100, ge=1)  # Rows kept per user


class SyncConfig(BaseModel):
    """Dispatch behavior configuration."""

    dispatch_timeout_seconds: float = 120.0  # Per destination, including credential refresh
    token_refresh_interval_hours: float = 24.0  # 0 disables the scheduled refresh


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/scrobble-relay.db"
    journal_mode: str = "WAL"  # WAL, DELETE, TRUNCATE, MEMORY, OFF


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class UserSeed(BaseModel):
    """User directory entry loaded at startup."""

    id: str
    display_name: str | None = None
    plex_username: str | None = None
    jellyfin_username: str | None = None
    jellyfin_user_id: str | None = None
    enabled: bool = True
    mark_movies_rewatched: bool = False
    mark_episodes_rewatched: bool = False


class Config(BaseModel):
    """Root configuration model."""

    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    plex: MediaServerConfig = Field(default_factory=MediaServerConfig)
    trakt: TraktConfig = Field(default_factory=TraktConfig)
    tvtime: TVTimeConfig = Field(default_factory=TVTimeConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    users: list[UserSeed] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(path: str | Path) -> Config:
    """Load configuration from file and set as global."""
    global _config
    _config = Config.from_yaml(path)
    return _config


def set_config(config: Config) -> None:
    """Install an already-built configuration as the global instance."""
    global _config
    _config = config
