"""Tests for configuration loading."""

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from scrobble_relay import config as config_module
from scrobble_relay.config import Config, HistoryConfig, SyncConfig, TraktConfig


def test_history_config_defaults():
    """History keeps 100 rows per user by default."""
    assert HistoryConfig().limit == 100


def test_history_limit_must_keep_at_least_one_row():
    with pytest.raises(ValidationError):
        HistoryConfig(limit=0)
    assert HistoryConfig(limit=1).limit == 1


def test_sync_config_defaults():
    """Test SyncConfig default values."""
    sync = SyncConfig()
    assert sync.dispatch_timeout_seconds == 120.0
    assert sync.token_refresh_interval_hours == 24.0


def test_trakt_configured_requires_id_and_secret():
    assert TraktConfig().configured is False
    assert TraktConfig(client_id="id").configured is False
    assert TraktConfig(client_id="id", client_secret="secret").configured is True


def test_config_defaults():
    """An empty config is valid."""
    config = Config()
    assert config.webhook.api_key is None
    assert config.plex.server_url is None
    assert config.database.journal_mode == "WAL"
    assert config.server.port == 3000
    assert config.users == []


def test_config_from_yaml():
    """Test loading config from YAML file."""
    config_data = {
        "webhook": {"api_key": "s3cret"},
        "plex": {"server_url": "http://plex.local:32400"},
        "trakt": {"client_id": "cid", "client_secret": "csecret"},
        "history": {"limit": 25},
        "users": [
            {
                "id": "alice",
                "plex_username": "alice_plex",
                "jellyfin_user_id": "ABCD-1234",
                "mark_movies_rewatched": True,
            },
            {"id": "bob", "enabled": False},
        ],
    }

    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(config_data, f)
        config_path = Path(f.name)

    try:
        config = Config.from_yaml(config_path)
        assert config.webhook.api_key == "s3cret"
        assert config.plex.server_url == "http://plex.local:32400"
        assert config.trakt.configured is True
        assert config.history.limit == 25
        assert [u.id for u in config.users] == ["alice", "bob"]
        assert config.users[0].mark_movies_rewatched is True
        assert config.users[0].mark_episodes_rewatched is False
        assert config.users[1].enabled is False
    finally:
        config_path.unlink()


def test_config_from_empty_yaml():
    """An empty file gives the default config."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        config_path = Path(f.name)

    try:
        config = Config.from_yaml(config_path)
        assert config.history.limit == 100
    finally:
        config_path.unlink()


def test_get_config_before_load(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    with pytest.raises(RuntimeError):
        config_module.get_config()


def test_set_config(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    config = Config(history=HistoryConfig(limit=3))
    config_module.set_config(config)
    assert config_module.get_config() is config
