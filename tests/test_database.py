"""Tests for database operations."""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from scrobble_relay.database import Database, normalize_jellyfin_user_id
from scrobble_relay.models import (
    Destination,
    DestinationCredential,
    DestinationOutcome,
    MediaIdentifiers,
    MediaKind,
    Service,
    Source,
    SyncHistoryEntry,
    User,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(str(db_path))
    await database.connect()
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


def make_entry(user_id: str = "alice", minutes: int = 0, **kwargs) -> SyncHistoryEntry:
    fields = {
        "user_id": user_id,
        "media_kind": MediaKind.EPISODE,
        "media_title": "The Show",
        "source": Source.PLEX,
        "ids": MediaIdentifiers(tvdb_episode_id="1001"),
        "success": True,
        "synced_at": BASE_TIME + timedelta(minutes=minutes),
    }
    fields.update(kwargs)
    return SyncHistoryEntry(**fields)


def test_normalize_jellyfin_user_id():
    assert normalize_jellyfin_user_id("ABCD-12-ef") == "abcd12ef"


@pytest.mark.asyncio
async def test_database_connection(db: Database):
    """Test database connects and creates tables."""
    assert db.connected


# ========== User Directory ==========


@pytest.mark.asyncio
async def test_upsert_and_find_users(db: Database):
    await db.upsert_user(User(id="alice", plex_username="alice_plex", jellyfin_user_id="ABCD-1234"))
    await db.upsert_user(User(id="bob", jellyfin_user_id="ffff0000"))

    by_plex = await db.find_user_by_plex_username("alice_plex")
    assert by_plex is not None and by_plex.id == "alice"

    # Stored and matched without hyphens
    by_jellyfin = await db.find_user_by_jellyfin_user_id("abcd1234")
    assert by_jellyfin is not None and by_jellyfin.id == "alice"
    assert by_jellyfin.jellyfin_user_id == "abcd1234"

    assert await db.find_user_by_plex_username("nobody") is None
    assert [u.id for u in await db.get_all_users()] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_upsert_user_updates_existing(db: Database):
    await db.upsert_user(User(id="alice", enabled=True))
    updated = await db.upsert_user(User(id="alice", enabled=False, mark_episodes_rewatched=True))

    assert updated.enabled is False
    assert updated.mark_episodes_rewatched is True
    assert len(await db.get_all_users()) == 1


# ========== Credentials ==========


@pytest.mark.asyncio
async def test_credential_round_trip(db: Database):
    await db.upsert_user(User(id="alice"))
    expires = BASE_TIME + timedelta(days=90)
    await db.save_credential(
        DestinationCredential(
            user_id="alice",
            service=Service.TRAKT,
            access_token="access",
            refresh_token="refresh",
            expires_at=expires,
        )
    )

    credential = await db.get_credential("alice", Service.TRAKT)
    assert credential is not None
    assert credential.access_token == "access"
    assert credential.refresh_token == "refresh"
    assert credential.expires_at == expires
    assert await db.get_credential("alice", Service.TVTIME) is None


@pytest.mark.asyncio
async def test_credential_overwrite_and_delete(db: Database):
    await db.upsert_user(User(id="alice"))
    await db.save_credential(DestinationCredential(user_id="alice", service=Service.TVTIME, access_token="one"))
    await db.save_credential(DestinationCredential(user_id="alice", service=Service.TVTIME, access_token="two"))

    credential = await db.get_credential("alice", Service.TVTIME)
    assert credential is not None and credential.access_token == "two"
    assert await db.get_linked_services("alice") == {Service.TVTIME}
    assert await db.get_user_ids_with_credential(Service.TVTIME) == ["alice"]

    assert await db.delete_credential("alice", Service.TVTIME) is True
    assert await db.delete_credential("alice", Service.TVTIME) is False
    assert await db.get_linked_services("alice") == set()


@pytest.mark.asyncio
async def test_credential_requires_known_user(db: Database):
    with pytest.raises(aiosqlite.IntegrityError):
        await db.save_credential(DestinationCredential(user_id="ghost", service=Service.TRAKT, access_token="x"))


# ========== Sync History ==========


@pytest.mark.asyncio
async def test_history_entry_with_outcomes(db: Database):
    entry_id = await db.add_history_entry(
        make_entry(
            success=True,
            error_message="TVTime: boom",
            outcomes=[
                DestinationOutcome(destination=Destination.TRAKT, success=True),
                DestinationOutcome(destination=Destination.TVTIME, success=False, error="boom"),
            ],
        )
    )

    entry = await db.get_history_entry(entry_id)
    assert entry is not None
    assert entry.ids.tvdb_episode_id == "1001"
    assert entry.error_message == "TVTime: boom"
    # Outcomes come back in dispatch order
    assert [o.destination for o in entry.outcomes] == [Destination.TVTIME, Destination.TRAKT]
    assert entry.destinations == [Destination.TRAKT]
    assert entry.synced_at == BASE_TIME


@pytest.mark.asyncio
async def test_history_newest_first(db: Database):
    for minute in range(3):
        await db.add_history_entry(make_entry(minutes=minute, media_title=f"Episode {minute}"))

    entries = await db.get_history_by_user("alice")
    assert [e.media_title for e in entries] == ["Episode 2", "Episode 1", "Episode 0"]

    page = await db.get_history_by_user("alice", limit=1, offset=1)
    assert [e.media_title for e in page] == ["Episode 1"]


@pytest.mark.asyncio
async def test_prune_history_keeps_newest(db: Database):
    for minute in range(6):
        await db.add_history_entry(make_entry(minutes=minute, media_title=f"Episode {minute}"))
    await db.add_history_entry(make_entry(user_id="bob"))

    deleted = await db.prune_history("alice", keep=5)

    assert deleted == 1
    assert await db.count_history("alice") == 5
    assert await db.count_history("bob") == 1
    titles = [e.media_title for e in await db.get_history_by_user("alice")]
    assert "Episode 0" not in titles


@pytest.mark.asyncio
async def test_prune_history_removes_outcomes(db: Database):
    old_id = await db.add_history_entry(
        make_entry(minutes=0, outcomes=[DestinationOutcome(destination=Destination.TRAKT, success=True)])
    )
    await db.add_history_entry(make_entry(minutes=1))

    await db.prune_history("alice", keep=1)

    assert await db.get_history_entry(old_id) is None
    assert (await db._load_outcomes([old_id]))[old_id] == []


@pytest.mark.asyncio
async def test_has_successful_sync(db: Database):
    await db.add_history_entry(make_entry(success=False, ids=MediaIdentifiers(tvdb_episode_id="1")))
    await db.add_history_entry(make_entry(success=True, ids=MediaIdentifiers(tvdb_episode_id="2")))

    assert await db.has_successful_sync("alice", MediaKind.EPISODE, "tvdb_episode_id", "1") is False
    assert await db.has_successful_sync("alice", MediaKind.EPISODE, "tvdb_episode_id", "2") is True
    assert await db.has_successful_sync("bob", MediaKind.EPISODE, "tvdb_episode_id", "2") is False
    assert await db.has_successful_sync("alice", MediaKind.MOVIE, "tvdb_episode_id", "2") is False


@pytest.mark.asyncio
async def test_has_successful_sync_rejects_unknown_column(db: Database):
    with pytest.raises(ValueError):
        await db.has_successful_sync("alice", MediaKind.MOVIE, "media_title", "x")
