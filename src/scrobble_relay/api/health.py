"""Liveness and readiness endpoints for container orchestrators."""

from fastapi import APIRouter, Request, Response

from ..database import get_db
from ..sync import SyncEngine

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> Response:
    """Always ok while the event loop is serving requests."""
    return Response(content="ok", media_type="text/plain")


@router.get("/readyz")
async def readyz(request: Request) -> Response:
    """Ready once webhooks can be accepted: history store open and destinations wired.

    Destination links are not checked here; an unlinked user still gets a
    history row, so it does not block webhook intake.
    """
    db = await get_db()
    if not db.connected:
        return Response(content="history database not connected", status_code=503, media_type="text/plain")

    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        return Response(content="sync engine not initialized", status_code=503, media_type="text/plain")

    return Response(content="ok", media_type="text/plain")
