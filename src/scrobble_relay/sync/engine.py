"""Sync engine: turns a scrobble event into destination updates and a history row."""

import asyncio
import logging
from dataclasses import dataclass

import aiosqlite

from ..auth import (
    CredentialManager,
    TraktCredentialManager,
    TraktOAuth,
    TVTimeAuth,
    TVTimeCredentialManager,
)
from ..cache import KeyedLock
from ..config import Config, get_config
from ..database import Database, normalize_jellyfin_user_id
from ..destinations import DestinationClient, TraktClient, TVTimeClient
from ..errors import AuthError, DestinationError, UnsupportedEventError
from ..models import (
    DESTINATION_ORDER,
    Destination,
    DestinationOutcome,
    EventKind,
    PlaybackEvent,
    Source,
    SyncHistoryEntry,
    User,
)
from .ledger import DedupLedger, HistoryLedger

logger = logging.getLogger(__name__)

NO_DESTINATIONS_MESSAGE = "No sync destinations configured"


@dataclass
class DestinationRoute:
    """A destination together with the manager that hands out its tokens."""

    destination: Destination
    credentials: CredentialManager
    client: DestinationClient


class SyncEngine:
    """Orchestrates one scrobble event end to end.

    Flow:
    1. Resolve the local user from the source identity
    2. Dedup check against prior successful history (rewatch detection)
    3. Dispatch to every linked destination concurrently
    4. Record one history row with per-destination outcomes

    Steps 2-4 run under a lock keyed by (user, media kind, identifier), so a
    replayed webhook sees the row written by the first delivery.
    """

    def __init__(
        self,
        db: Database,
        routes: list[DestinationRoute],
        history: HistoryLedger | None = None,
        dedup: DedupLedger | None = None,
        dispatch_timeout: float = 120.0,
    ):
        self.db = db
        self._order = {d: i for i, d in enumerate(DESTINATION_ORDER)}
        self.routes = sorted(routes, key=lambda r: self._order[r.destination])
        self.history = history or HistoryLedger(db)
        self.dedup = dedup or DedupLedger(db)
        self.dispatch_timeout = dispatch_timeout
        self._media_locks = KeyedLock()

    async def resolve_user(self, event: PlaybackEvent) -> User | None:
        """Find the local user behind a source identity."""
        if event.source == Source.PLEX:
            return await self.db.find_user_by_plex_username(event.source_user_id)
        return await self.db.find_user_by_jellyfin_user_id(normalize_jellyfin_user_id(event.source_user_id))

    async def linked_routes(self, user: User) -> tuple[list[DestinationRoute], list[DestinationOutcome]]:
        """Routes the user has linked, in dispatch order.

        Also returns a failed outcome for every route whose credential row
        could not be read, so that destination is reported instead of the
        whole event failing.
        """
        linked: list[DestinationRoute] = []
        unreadable: list[DestinationOutcome] = []
        for route in self.routes:
            try:
                if await route.credentials.is_linked(user.id):
                    linked.append(route)
            except aiosqlite.Error as e:
                logger.error("[%s] Credential lookup failed for user %s: %s", route.destination.value, user.id, e)
                unreadable.append(
                    DestinationOutcome(
                        destination=route.destination, success=False, error=f"Credential lookup failed: {e}"
                    )
                )
        return linked, unreadable

    async def _was_rewatch(self, user: User, event: PlaybackEvent) -> bool:
        try:
            return await self.dedup.has_prior_success(user.id, event.media_kind, event.ids)
        except aiosqlite.Error as e:
            logger.error("Dedup lookup failed for user %s, treating %s as a first watch: %s", user.id, event.describe(), e)
            return False

    def _media_lock_key(self, user: User, event: PlaybackEvent) -> str:
        key = event.ids.preferred(event.media_kind)
        if key is None:
            # No identifier means no dedup; lock per title so replays still serialize
            return f"{user.id}:{event.media_kind.value}:title:{event.title}"
        column, value = key
        return f"{user.id}:{event.media_kind.value}:{column}:{value}"

    async def sync_event(self, event: PlaybackEvent) -> SyncHistoryEntry | None:
        """Process one event. Returns the recorded history entry, or None when skipped.

        Raises:
            PersistenceError: the history row could not be written.
            UnsupportedEventError: the event is not a completed watch.
        """
        if event.kind != EventKind.SCROBBLE:
            raise UnsupportedEventError(f"{event.kind.value} events are not synced")

        user = await self.resolve_user(event)
        if user is None:
            logger.info("[%s] No local user for %s, skipping %s", event.source.value, event.source_user_id, event.describe())
            return None
        if not user.enabled:
            logger.info("User %s is disabled, skipping %s", user.id, event.describe())
            return None

        async with self._media_locks.lock(self._media_lock_key(user, event)):
            was_rewatch = await self._was_rewatch(user, event)
            is_rewatch = was_rewatch and user.marks_rewatch(event.media_kind)

            routes, outcomes = await self.linked_routes(user)
            if not routes and not outcomes:
                logger.warning("User %s has no linked destinations, recording failure for %s", user.id, event.describe())
            elif routes:
                logger.info(
                    "Syncing %s for user %s to %s (rewatch=%s)",
                    event.describe(),
                    user.id,
                    ", ".join(r.destination.label for r in routes),
                    was_rewatch,
                )
                outcomes += await asyncio.gather(*[self._dispatch(route, user, event, is_rewatch) for route in routes])
                outcomes.sort(key=lambda o: self._order[o.destination])

            entry = self._build_entry(user, event, outcomes, was_rewatch)
            return await self.history.record(entry)

    async def _dispatch(
        self, route: DestinationRoute, user: User, event: PlaybackEvent, is_rewatch: bool
    ) -> DestinationOutcome:
        """Send one event to one destination. Never raises."""

        async def deliver() -> None:
            credential = await route.credentials.get_valid_credential(user.id)
            await route.client.record_watch(credential.access_token, event, is_rewatch)

        try:
            await asyncio.wait_for(deliver(), timeout=self.dispatch_timeout)
        except TimeoutError:
            error = f"Timed out after {self.dispatch_timeout:.0f}s"
        except (AuthError, DestinationError) as e:
            error = str(e)
        except Exception as e:
            logger.exception("[%s] Unexpected error syncing %s", route.destination.value, event.describe())
            error = str(e) or type(e).__name__
        else:
            logger.info("[%s] Synced %s for user %s", route.destination.value, event.describe(), user.id)
            return DestinationOutcome(destination=route.destination, success=True)

        logger.warning("[%s] Failed to sync %s for user %s: %s", route.destination.value, event.describe(), user.id, error)
        return DestinationOutcome(destination=route.destination, success=False, error=error)

    def _build_entry(
        self, user: User, event: PlaybackEvent, outcomes: list[DestinationOutcome], was_rewatch: bool
    ) -> SyncHistoryEntry:
        if outcomes:
            success = any(o.success for o in outcomes)
            errors = [f"{o.destination.label}: {o.error}" for o in outcomes if not o.success]
            error_message = "; ".join(errors) if errors else None
        else:
            success = False
            error_message = NO_DESTINATIONS_MESSAGE

        return SyncHistoryEntry(
            user_id=user.id,
            media_kind=event.media_kind,
            media_title=event.title,
            source=event.source,
            ids=event.ids,
            poster_url=event.poster_url,
            season_number=event.season_number,
            episode_number=event.episode_number,
            year=event.year,
            success=success,
            error_message=error_message,
            was_rewatch=was_rewatch,
            outcomes=outcomes,
        )

    async def close(self) -> None:
        """Close destination clients and credential managers."""
        for route in self.routes:
            await route.client.close()
            await route.credentials.close()


def build_engine(db: Database, config: Config | None = None) -> SyncEngine:
    """Wire up destinations from configuration."""
    config = config or get_config()

    tvtime_auth = TVTimeAuth(config.tvtime)
    routes = [
        DestinationRoute(
            destination=Destination.TVTIME,
            credentials=TVTimeCredentialManager(db, tvtime_auth),
            client=TVTimeClient(),
        )
    ]

    if config.trakt.configured:
        routes.append(
            DestinationRoute(
                destination=Destination.TRAKT,
                credentials=TraktCredentialManager(db, TraktOAuth(config.trakt)),
                client=TraktClient(config.trakt.client_id or ""),
            )
        )
    else:
        logger.info("Trakt client credentials not configured, Trakt sync disabled")

    return SyncEngine(
        db,
        routes,
        history=HistoryLedger(db, limit=config.history.limit),
        dedup=DedupLedger(db),
        dispatch_timeout=config.sync.dispatch_timeout_seconds,
    )
