"""Tests for the scheduled token refresher."""

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from scrobble_relay.database import Database
from scrobble_relay.models import Destination, DestinationCredential, Service, User
from scrobble_relay.sync.engine import DestinationRoute
from scrobble_relay.sync.refresh import TokenRefresher


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(str(db_path))
    await database.connect()
    for user_id in ("alice", "bob"):
        await database.upsert_user(User(id=user_id))
        await database.save_credential(DestinationCredential(user_id=user_id, service=Service.TRAKT, access_token="t"))
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


def make_route(destination: Destination, refresh_results: dict[str, bool]) -> DestinationRoute:
    credentials = MagicMock()
    credentials.service = destination.service
    credentials.refresh_if_needed = AsyncMock(side_effect=lambda user_id: refresh_results[user_id])
    return DestinationRoute(destination=destination, credentials=credentials, client=MagicMock())


@pytest.mark.asyncio
async def test_refresh_all_counts(db: Database):
    trakt = make_route(Destination.TRAKT, {"alice": True, "bob": False})
    tvtime = make_route(Destination.TVTIME, {})
    refresher = TokenRefresher(db, [tvtime, trakt])

    summary = await refresher.refresh_all()

    assert summary == {"tvtime": {"ok": 0, "failed": 0}, "trakt": {"ok": 1, "failed": 1}}
    assert trakt.credentials.refresh_if_needed.await_count == 2
    tvtime.credentials.refresh_if_needed.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_and_stop(db: Database):
    trakt = make_route(Destination.TRAKT, {"alice": True, "bob": True})
    refresher = TokenRefresher(db, [trakt])

    await refresher.start(interval_seconds=0.01)
    await asyncio.sleep(0.05)
    await refresher.stop()

    assert trakt.credentials.refresh_if_needed.await_count >= 2
    assert refresher._task is None


@pytest.mark.asyncio
async def test_zero_interval_disables(db: Database):
    refresher = TokenRefresher(db, [])
    await refresher.start(interval_seconds=0)
    assert refresher._task is None
