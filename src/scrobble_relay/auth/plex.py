"""Plex account linking through the plex.tv PIN flow.

Plex is a source, not a destination: the token is stored so the user
directory can show the account as linked and so it can be revoked later.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from ..database import Database
from ..errors import AuthError
from ..http_client import CLIENT_NAME, CLIENT_VERSION, HttpClientMixin
from ..models import DestinationCredential, Service
from .base import CredentialManager

logger = logging.getLogger(__name__)

PLEX_API_URL = "https://plex.tv/api/v2"
PLEX_AUTH_APP_URL = "https://app.plex.tv/auth#"
# Stable client identifier so plex.tv lists one device per install
PLEX_CLIENT_IDENTIFIER = str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{CLIENT_NAME}.local"))


@dataclass
class PlexPin:
    """PIN handed out by plex.tv, to be approved by the user."""

    id: int
    code: str
    auth_url: str


class PlexAuth(HttpClientMixin):
    """Talks to plex.tv to create and poll link PINs."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport
        self._client = None
        self.headers = {
            "Accept": "application/json",
            "X-Plex-Product": CLIENT_NAME,
            "X-Plex-Version": CLIENT_VERSION,
            "X-Plex-Client-Identifier": PLEX_CLIENT_IDENTIFIER,
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, f"{PLEX_API_URL}{path}", headers=self.headers, **kwargs)
        except httpx.RequestError as e:
            raise AuthError(f"Plex request failed: {e}") from e
        if response.status_code >= 400:
            raise AuthError(f"Plex API error: {response.status_code} - {response.text[:200]}")
        return response.json()

    async def start_pin(self) -> PlexPin:
        """Create a strong PIN and build the URL the user opens to approve it."""
        data = await self._request("POST", "/pins", params={"strong": "true"})
        pin = PlexPin(
            id=int(data["id"]),
            code=data["code"],
            auth_url=(
                f"{PLEX_AUTH_APP_URL}?clientID={PLEX_CLIENT_IDENTIFIER}"
                f"&code={data['code']}&context%5Bdevice%5D%5Bproduct%5D={CLIENT_NAME}"
            ),
        )
        logger.info("[plex] Created link PIN %s", pin.id)
        return pin

    async def check_pin(self, pin_id: int) -> str | None:
        """Return the auth token once the PIN is approved, else None."""
        data = await self._request("GET", f"/pins/{pin_id}")
        return data.get("authToken") or None


class PlexCredentialManager(CredentialManager):
    """Stores Plex tokens obtained through the PIN flow. Plex tokens do not expire."""

    service = Service.PLEX

    def __init__(self, db: Database, auth: PlexAuth):
        super().__init__(db)
        self.auth = auth

    async def link_from_pin(self, user_id: str, pin_id: int) -> bool:
        """Store the token if the PIN has been approved. Returns True when linked."""
        token = await self.auth.check_pin(pin_id)
        if not token:
            return False
        await self.db.save_credential(
            DestinationCredential(user_id=user_id, service=self.service, access_token=token)
        )
        return True

    async def wait_for_pin(self, user_id: str, pin_id: int, interval: float = 2.0, timeout: float = 300.0) -> bool:
        """Poll the PIN until approved or ``timeout`` seconds pass."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await self.link_from_pin(user_id, pin_id):
                return True
            await asyncio.sleep(interval)
        logger.warning("[plex] PIN %s was not approved within %.0fs", pin_id, timeout)
        return False

    async def get_valid_credential(self, user_id: str) -> DestinationCredential:
        return await self._load(user_id)

    async def close(self) -> None:
        await self.auth.close()
