"""SQLite database operations for users, credentials and sync history."""

import logging
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from .config import get_config
from .models import (
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

logger = logging.getLogger(__name__)

# Identifier columns that may be used as a dedup key
_IDENTIFIER_COLUMNS = frozenset({"tvdb_episode_id", "imdb_episode_id", "tvdb_movie_id", "imdb_movie_id"})


def normalize_jellyfin_user_id(user_id: str) -> str:
    """Jellyfin sends user ids with and without hyphens depending on the template."""
    return user_id.replace("-", "").lower()


def _to_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Database:
    """Async SQLite database backing the user directory, credentials and history ledger."""

    def __init__(self, db_path: str | None = None, journal_mode: str | None = None):
        self._config_db_path = db_path
        self._config_journal_mode = journal_mode
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        """Get database path from config or override."""
        if self._config_db_path:
            return str(self._config_db_path)
        return get_config().database.path

    @property
    def journal_mode(self) -> str:
        """Get journal mode from config or override."""
        if self._config_journal_mode:
            return self._config_journal_mode.upper()
        try:
            return get_config().database.journal_mode.upper()
        except RuntimeError:
            return "WAL"  # Default if config not loaded (tests)

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        """Connect to the database and create tables."""
        # Ensure parent directory exists
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s (journal_mode=%s)", db_path, self.journal_mode)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        # Set journal mode (WAL is default, use DELETE for NFS compatibility)
        if self.journal_mode in ("WAL", "DELETE", "TRUNCATE", "MEMORY", "OFF"):
            await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        logger.info("Database connected successfully")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            logger.info("Closing database connection")
            await self._db.close()
            self._db = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        assert self._db is not None

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                display_name TEXT,
                plex_username TEXT UNIQUE,
                jellyfin_username TEXT UNIQUE,
                jellyfin_user_id TEXT,
                enabled BOOLEAN NOT NULL DEFAULT 1,
                mark_movies_rewatched BOOLEAN NOT NULL DEFAULT 0,
                mark_episodes_rewatched BOOLEAN NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_users_jellyfin_user_id
            ON users(jellyfin_user_id)
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                service TEXT NOT NULL,
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                expires_at TIMESTAMP,
                login_email TEXT,
                login_password TEXT,
                updated_at TIMESTAMP NOT NULL,
                PRIMARY KEY (user_id, service)
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                media_title TEXT NOT NULL,
                source TEXT NOT NULL,
                tvdb_episode_id TEXT,
                imdb_episode_id TEXT,
                tvdb_movie_id TEXT,
                imdb_movie_id TEXT,
                tmdb_movie_id TEXT,
                tmdb_series_id TEXT,
                poster_url TEXT,
                season_number INTEGER,
                episode_number INTEGER,
                year INTEGER,
                success BOOLEAN NOT NULL,
                error_message TEXT,
                was_rewatch BOOLEAN NOT NULL DEFAULT 0,
                synced_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_sync_history_user
            ON sync_history(user_id, synced_at)
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_sync_history_dedup
            ON sync_history(user_id, media_kind, success)
        """
        )

        # One typed row per attempted destination
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_history_destinations (
                history_id INTEGER NOT NULL REFERENCES sync_history(id) ON DELETE CASCADE,
                destination TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                error TEXT,
                PRIMARY KEY (history_id, destination)
            )
        """
        )

        await self._db.commit()

    # ========== User Directory ==========

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        return User(
            id=row["id"],
            display_name=row["display_name"],
            plex_username=row["plex_username"],
            jellyfin_username=row["jellyfin_username"],
            jellyfin_user_id=row["jellyfin_user_id"],
            enabled=bool(row["enabled"]),
            mark_movies_rewatched=bool(row["mark_movies_rewatched"]),
            mark_episodes_rewatched=bool(row["mark_episodes_rewatched"]),
        )

    async def upsert_user(self, user: User) -> User:
        """Insert or update a user directory entry."""
        assert self._db is not None

        jellyfin_user_id = normalize_jellyfin_user_id(user.jellyfin_user_id) if user.jellyfin_user_id else None
        await self._db.execute(
            """
            INSERT INTO users (id, display_name, plex_username, jellyfin_username, jellyfin_user_id,
                               enabled, mark_movies_rewatched, mark_episodes_rewatched, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id)
            DO UPDATE SET display_name = excluded.display_name,
                          plex_username = excluded.plex_username,
                          jellyfin_username = excluded.jellyfin_username,
                          jellyfin_user_id = excluded.jellyfin_user_id,
                          enabled = excluded.enabled,
                          mark_movies_rewatched = excluded.mark_movies_rewatched,
                          mark_episodes_rewatched = excluded.mark_episodes_rewatched,
                          updated_at = CURRENT_TIMESTAMP
            """,
            (
                user.id,
                user.display_name,
                user.plex_username,
                user.jellyfin_username,
                jellyfin_user_id,
                user.enabled,
                user.mark_movies_rewatched,
                user.mark_episodes_rewatched,
            ),
        )
        await self._db.commit()

        saved = await self.get_user(user.id)
        assert saved is not None
        logger.debug("User saved: %s", user.id)
        return saved

    async def get_user(self, user_id: str) -> User | None:
        """Get a user by local id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
            return self._row_to_user(row) if row else None

    async def find_user_by_plex_username(self, username: str) -> User | None:
        """Resolve a Plex account name to a local user."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM users WHERE plex_username = ?", (username,)) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_user(row)
        logger.debug("[plex] No local user for account: %s", username)
        return None

    async def find_user_by_jellyfin_user_id(self, jellyfin_user_id: str) -> User | None:
        """Resolve a Jellyfin user id to a local user."""
        assert self._db is not None

        normalized = normalize_jellyfin_user_id(jellyfin_user_id)
        async with self._db.execute("SELECT * FROM users WHERE jellyfin_user_id = ?", (normalized,)) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_user(row)
        logger.debug("[jellyfin] No local user for id: %s", normalized)
        return None

    async def get_all_users(self) -> list[User]:
        """Get every user in the directory."""
        assert self._db is not None

        users: list[User] = []
        async with self._db.execute("SELECT * FROM users ORDER BY id") as cursor:
            async for row in cursor:
                users.append(self._row_to_user(row))
        return users

    # ========== Credentials ==========

    async def get_credential(self, user_id: str, service: Service) -> DestinationCredential | None:
        """Get the stored credential for a user on a service."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT * FROM credentials WHERE user_id = ? AND service = ?",
            (user_id, service.value),
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return DestinationCredential(
                user_id=row["user_id"],
                service=Service(row["service"]),
                access_token=row["access_token"],
                refresh_token=row["refresh_token"],
                expires_at=_to_datetime(row["expires_at"]),
                login_email=row["login_email"],
                login_password=row["login_password"],
                updated_at=_to_datetime(row["updated_at"]) or datetime.now(UTC),
            )

    async def save_credential(self, credential: DestinationCredential) -> None:
        """Insert or replace a credential."""
        assert self._db is not None

        await self._db.execute(
            """
            INSERT INTO credentials (user_id, service, access_token, refresh_token, expires_at,
                                     login_email, login_password, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, service)
            DO UPDATE SET access_token = excluded.access_token,
                          refresh_token = excluded.refresh_token,
                          expires_at = excluded.expires_at,
                          login_email = excluded.login_email,
                          login_password = excluded.login_password,
                          updated_at = excluded.updated_at
            """,
            (
                credential.user_id,
                credential.service.value,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at.isoformat() if credential.expires_at else None,
                credential.login_email,
                credential.login_password,
                datetime.now(UTC).isoformat(),
            ),
        )
        await self._db.commit()
        logger.info("[%s] Credential saved for user %s", credential.service.value, credential.user_id)

    async def delete_credential(self, user_id: str, service: Service) -> bool:
        """Unlink a service. Returns True if a credential was removed."""
        assert self._db is not None

        cursor = await self._db.execute(
            "DELETE FROM credentials WHERE user_id = ? AND service = ?",
            (user_id, service.value),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def get_linked_services(self, user_id: str) -> set[Service]:
        """Services the user holds a credential for."""
        assert self._db is not None

        services: set[Service] = set()
        async with self._db.execute("SELECT service FROM credentials WHERE user_id = ?", (user_id,)) as cursor:
            async for row in cursor:
                services.add(Service(row["service"]))
        return services

    async def get_user_ids_with_credential(self, service: Service) -> list[str]:
        """Ids of users that have linked a service."""
        assert self._db is not None

        user_ids: list[str] = []
        async with self._db.execute(
            "SELECT user_id FROM credentials WHERE service = ? ORDER BY user_id",
            (service.value,),
        ) as cursor:
            async for row in cursor:
                user_ids.append(row["user_id"])
        return user_ids

    # ========== Sync History ==========

    async def add_history_entry(self, entry: SyncHistoryEntry) -> int:
        """Append a history entry with its destination outcomes. Returns the new row id.

        The row and its outcomes are committed together; on failure nothing is kept.
        """
        assert self._db is not None

        ids = entry.ids
        try:
            cursor = await self._db.execute(
                """
                INSERT INTO sync_history
                (user_id, media_kind, media_title, source, tvdb_episode_id, imdb_episode_id,
                 tvdb_movie_id, imdb_movie_id, tmdb_movie_id, tmdb_series_id, poster_url,
                 season_number, episode_number, year, success, error_message, was_rewatch, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.user_id,
                    entry.media_kind.value,
                    entry.media_title,
                    entry.source.value,
                    ids.tvdb_episode_id,
                    ids.imdb_episode_id,
                    ids.tvdb_movie_id,
                    ids.imdb_movie_id,
                    ids.tmdb_movie_id,
                    ids.tmdb_series_id,
                    entry.poster_url,
                    entry.season_number,
                    entry.episode_number,
                    entry.year,
                    entry.success,
                    entry.error_message,
                    entry.was_rewatch,
                    entry.synced_at.isoformat(),
                ),
            )
            history_id = cursor.lastrowid
            assert history_id is not None

            await self._db.executemany(
                """
                INSERT INTO sync_history_destinations (history_id, destination, success, error)
                VALUES (?, ?, ?, ?)
                """,
                [(history_id, o.destination.value, o.success, o.error) for o in entry.outcomes],
            )
            await self._db.commit()
        except aiosqlite.Error:
            await self._db.rollback()
            raise
        return history_id

    async def prune_history(self, user_id: str, keep: int) -> int:
        """Delete a user's oldest entries beyond ``keep``. Returns number deleted."""
        assert self._db is not None

        try:
            cursor = await self._db.execute(
                """
                DELETE FROM sync_history
                WHERE id IN (
                    SELECT id FROM sync_history
                    WHERE user_id = ?
                    ORDER BY synced_at DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (user_id, max(keep, 1)),
            )
            await self._db.commit()
        except aiosqlite.Error:
            await self._db.rollback()
            raise
        deleted = cursor.rowcount
        if deleted > 0:
            logger.debug("Pruned %d history entries for user %s", deleted, user_id)
        return deleted

    async def count_history(self, user_id: str | None = None) -> int:
        """Count history entries, optionally for one user."""
        assert self._db is not None

        if user_id is None:
            query, params = "SELECT COUNT(*) FROM sync_history", ()
        else:
            query, params = "SELECT COUNT(*) FROM sync_history WHERE user_id = ?", (user_id,)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def has_successful_sync(self, user_id: str, media_kind: MediaKind, column: str, value: str) -> bool:
        """Check for a successful history row matching one identifier column."""
        assert self._db is not None

        if column not in _IDENTIFIER_COLUMNS:
            raise ValueError(f"Not an identifier column: {column}")

        async with self._db.execute(
            f"""
            SELECT 1 FROM sync_history
            WHERE user_id = ?
              AND media_kind = ?
              AND success = 1
              AND {column} = ?
            LIMIT 1
            """,
            (user_id, media_kind.value, value),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def _load_outcomes(self, history_ids: list[int]) -> dict[int, list[DestinationOutcome]]:
        assert self._db is not None

        outcomes: dict[int, list[DestinationOutcome]] = {hid: [] for hid in history_ids}
        if not history_ids:
            return outcomes

        placeholders = ", ".join("?" for _ in history_ids)
        async with self._db.execute(
            f"""
            SELECT history_id, destination, success, error
            FROM sync_history_destinations
            WHERE history_id IN ({placeholders})
            """,
            history_ids,
        ) as cursor:
            async for row in cursor:
                outcomes[row["history_id"]].append(
                    DestinationOutcome(
                        destination=Destination(row["destination"]),
                        success=bool(row["success"]),
                        error=row["error"],
                    )
                )
        order = {d: i for i, d in enumerate(Destination)}
        for items in outcomes.values():
            items.sort(key=lambda o: order[o.destination])
        return outcomes

    def _row_to_history_entry(self, row: aiosqlite.Row, outcomes: list[DestinationOutcome]) -> SyncHistoryEntry:
        return SyncHistoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            media_kind=MediaKind(row["media_kind"]),
            media_title=row["media_title"],
            source=Source(row["source"]),
            ids=MediaIdentifiers(
                tvdb_episode_id=row["tvdb_episode_id"],
                imdb_episode_id=row["imdb_episode_id"],
                tvdb_movie_id=row["tvdb_movie_id"],
                imdb_movie_id=row["imdb_movie_id"],
                tmdb_movie_id=row["tmdb_movie_id"],
                tmdb_series_id=row["tmdb_series_id"],
            ),
            poster_url=row["poster_url"],
            season_number=row["season_number"],
            episode_number=row["episode_number"],
            year=row["year"],
            success=bool(row["success"]),
            error_message=row["error_message"],
            was_rewatch=bool(row["was_rewatch"]),
            outcomes=outcomes,
            synced_at=_to_datetime(row["synced_at"]) or datetime.now(UTC),
        )

    async def get_history_by_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[SyncHistoryEntry]:
        """Get a user's history, newest first."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT * FROM sync_history
            WHERE user_id = ?
            ORDER BY synced_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        ) as cursor:
            rows = list(await cursor.fetchall())

        outcomes = await self._load_outcomes([row["id"] for row in rows])
        return [self._row_to_history_entry(row, outcomes[row["id"]]) for row in rows]

    async def get_history_entry(self, entry_id: int) -> SyncHistoryEntry | None:
        """Get one history entry by id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM sync_history WHERE id = ?", (entry_id,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        outcomes = await self._load_outcomes([entry_id])
        return self._row_to_history_entry(row, outcomes[entry_id])


# Global database instance
_db: Database | None = None


async def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
