"""Background refresh of destination credentials."""

import asyncio
import contextlib
import logging

from ..database import Database
from .engine import DestinationRoute

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Periodically refreshes every linked credential ahead of use.

    Tokens are refreshed lazily on dispatch anyway; this keeps rarely used
    accounts from ending up with dead refresh tokens.
    """

    def __init__(self, db: Database, routes: list[DestinationRoute]):
        self.db = db
        self.routes = routes
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def refresh_all(self) -> dict[str, dict[str, int]]:
        """Refresh every linked credential. Returns ok/failed counts per destination."""
        summary: dict[str, dict[str, int]] = {}
        for route in self.routes:
            service = route.credentials.service
            counts = {"ok": 0, "failed": 0}
            for user_id in await self.db.get_user_ids_with_credential(service):
                if await route.credentials.refresh_if_needed(user_id):
                    counts["ok"] += 1
                else:
                    counts["failed"] += 1
                    logger.warning("[%s] Scheduled refresh failed for user %s", service.value, user_id)
            summary[route.destination.value] = counts
        logger.info("Scheduled token refresh finished: %s", summary)
        return summary

    async def start(self, interval_seconds: float) -> None:
        """Start the background refresh loop."""
        if self._running or interval_seconds <= 0:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(interval_seconds))
        logger.info("Token refresher started (every %.0fs)", interval_seconds)

    async def stop(self) -> None:
        """Stop the background refresh loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Token refresher stopped")

    async def _loop(self, interval_seconds: float) -> None:
        while self._running:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh_all()
            except Exception as e:
                logger.exception("Error in token refresh loop: %s", e)
