"""History and dedup ledgers over the sync_history table."""

import logging

import aiosqlite

from ..database import Database
from ..errors import PersistenceError
from ..models import MediaIdentifiers, MediaKind, SyncHistoryEntry

logger = logging.getLogger(__name__)


class DedupLedger:
    """Answers "has this user already synced this exact media successfully?"."""

    def __init__(self, db: Database):
        self.db = db

    async def has_prior_success(self, user_id: str, media_kind: MediaKind, ids: MediaIdentifiers) -> bool:
        """Look up a successful row keyed by the preferred identifier only.

        Episodes key off the TVDB episode id when present, otherwise the IMDB
        episode id; movies likewise with the movie ids. Media without either id
        is never considered seen.
        """
        key = ids.preferred(media_kind)
        if key is None:
            logger.debug("No dedup identifier for %s, treating as first watch", media_kind.value)
            return False

        column, value = key
        found = await self.db.has_successful_sync(user_id, media_kind, column, value)
        logger.debug("Dedup lookup user=%s %s=%s -> %s", user_id, column, value, found)
        return found


class HistoryLedger:
    """Append-only sync history with bounded per-user retention."""

    def __init__(self, db: Database, limit: int = 100):
        self.db = db
        self.limit = limit

    async def record(self, entry: SyncHistoryEntry) -> SyncHistoryEntry:
        """Persist one entry, then prune the user's oldest rows beyond the limit.

        Only a failed write raises; once the entry is committed a failed prune
        is logged and retried implicitly by the next record.
        """
        try:
            entry_id = await self.db.add_history_entry(entry)
        except aiosqlite.Error as e:
            logger.error("Failed to save sync history for user %s (%s): %s", entry.user_id, entry.media_title, e)
            raise PersistenceError(f"Failed to save sync history: {e}") from e

        try:
            pruned = await self.db.prune_history(entry.user_id, self.limit)
        except aiosqlite.Error as e:
            logger.warning("Failed to prune sync history for user %s: %s", entry.user_id, e)
            pruned = 0

        if pruned:
            logger.info("Pruned %d old history entries for user %s (limit %d)", pruned, entry.user_id, self.limit)
        return entry.model_copy(update={"id": entry_id})

    async def recent(self, user_id: str, limit: int = 50, offset: int = 0) -> list[SyncHistoryEntry]:
        """Read path for the dashboard: newest entries first."""
        return await self.db.get_history_by_user(user_id, limit=limit, offset=offset)

    async def count(self, user_id: str) -> int:
        return await self.db.count_history(user_id)
