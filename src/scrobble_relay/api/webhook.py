"""Webhook receivers for Plex and Jellyfin."""

import hmac
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from ..config import get_config
from ..errors import PersistenceError, UnsupportedEventError, WebhookValidationError
from ..models import PlaybackEvent
from ..normalizers import normalize_jellyfin, normalize_plex, parse_jellyfin_body, parse_plex_body, pop_api_key
from ..sync import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

NOT_SUPPORTED = {"success": True, "message": "Event not supported"}
FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def get_engine(request: Request) -> SyncEngine:
    """Get the sync engine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("SyncEngine not initialized in app state")
    return engine


def api_key_matches(provided: str | None) -> bool:
    """Compare a provided key with the configured secret. No secret or no key means no check."""
    expected = get_config().webhook.api_key
    if not provided or not expected:
        return True
    return hmac.compare_digest(provided.encode(), expected.encode())


async def dispatch(request: Request, event: PlaybackEvent | None) -> dict[str, Any]:
    """Hand a normalized event to the engine and shape the response."""
    if event is None:
        return NOT_SUPPORTED

    engine = get_engine(request)
    try:
        await engine.sync_event(event)
    except UnsupportedEventError:
        return NOT_SUPPORTED
    except PersistenceError as e:
        logger.error("[%s] Failed to record sync of %s: %s", event.source.value, event.describe(), e)
        raise HTTPException(status_code=500, detail="Internal server error") from e
    return {"success": True}


@router.post("/plex")
async def plex_webhook(request: Request, api_key: str | None = Query(default=None, alias="apiKey")) -> dict[str, Any]:
    """
    Receive a webhook from Plex Media Server.

    Plex posts multipart/form-data with the event JSON in a ``payload`` field
    (plus a thumbnail part). A raw JSON body is accepted too.
    """
    if not api_key_matches(api_key):
        logger.warning("[plex] Rejected webhook with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    raw_body = await request.body()
    payload_field: str | None = None
    if request.headers.get("content-type", "").startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get("payload")
        if isinstance(value, str):
            payload_field = value

    try:
        body = parse_plex_body(payload_field, raw_body)
        event = normalize_plex(body, get_config().plex.server_url)
    except WebhookValidationError as e:
        logger.error("[plex] Failed to process webhook: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    logger.debug("[plex] Received %s", body.get("event"))
    return await dispatch(request, event)


@router.post("/jellyfin")
async def jellyfin_webhook(request: Request) -> dict[str, Any]:
    """
    Receive a webhook from the Jellyfin webhook plugin.

    The API key may be sent as an ``X-API-Key`` header or as ``apiKey`` in
    the JSON template; the latter is removed before the payload is used.
    """
    raw_body = await request.body()
    try:
        body = parse_jellyfin_body(raw_body, request.headers.get("content-type", ""))
    except WebhookValidationError as e:
        logger.warning("[jellyfin] Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail=str(e)) from e

    if not api_key_matches(pop_api_key(body, request.headers.get("x-api-key"))):
        logger.warning("[jellyfin] Rejected webhook with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    try:
        event = normalize_jellyfin(body)
    except WebhookValidationError as e:
        logger.warning("[jellyfin] Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.debug("[jellyfin] Received %s", body.get("notificationType"))
    return await dispatch(request, event)


@router.get("/test")
async def test_webhook() -> dict[str, str]:
    """Test endpoint to verify webhook receiver is working."""
    return {"status": "ok", "message": "Webhook receiver is running"}
