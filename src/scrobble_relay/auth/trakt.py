"""Trakt OAuth: authorization, code exchange and token refresh."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import httpx

from ..cache import KeyedLock
from ..config import TraktConfig
from ..database import Database
from ..errors import AuthError
from ..http_client import HttpClientMixin, extract_error_message
from ..models import DestinationCredential, Service
from .base import CredentialManager, expires_soon

logger = logging.getLogger(__name__)

TRAKT_API_URL = "https://api.trakt.tv"
TRAKT_AUTHORIZE_URL = "https://trakt.tv/oauth/authorize"
TRAKT_API_VERSION = "2"


@dataclass
class TraktTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime


class TraktOAuth(HttpClientMixin):
    """OAuth2 client for the Trakt application registered in the config."""

    def __init__(self, config: TraktConfig, transport: httpx.AsyncBaseTransport | None = None):
        if not config.configured:
            raise AuthError("Trakt client_id and client_secret are not configured")
        self.config = config
        self._transport = transport
        self._client = None

    def get_auth_url(self, state: str | None = None) -> str:
        """URL the user opens to authorize this application."""
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
        }
        if state:
            params["state"] = state
        return f"{TRAKT_AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, grant: dict[str, str]) -> TraktTokens:
        client = await self._get_client()
        body = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": self.config.redirect_uri,
            **grant,
        }
        headers = {
            "Content-Type": "application/json",
            "trakt-api-version": TRAKT_API_VERSION,
            "trakt-api-key": self.config.client_id or "",
        }
        try:
            response = await client.post(f"{TRAKT_API_URL}/oauth/token", json=body, headers=headers)
        except httpx.RequestError as e:
            raise AuthError(f"Trakt token request failed: {e}") from e

        if response.status_code >= 400:
            raise AuthError(f"Trakt token request failed: {response.status_code} - {extract_error_message(response)}")

        try:
            data = response.json()
            return TraktTokens(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_at=datetime.now(UTC) + timedelta(seconds=int(data["expires_in"])),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(f"Unexpected Trakt token response: {e}") from e

    async def exchange_code(self, code: str) -> TraktTokens:
        """Swap an authorization code for tokens."""
        return await self._token_request({"code": code, "grant_type": "authorization_code"})

    async def refresh_token(self, refresh_token: str) -> TraktTokens:
        """Swap a refresh token for a new token pair."""
        return await self._token_request({"refresh_token": refresh_token, "grant_type": "refresh_token"})


class TraktCredentialManager(CredentialManager):
    """Keeps Trakt access tokens fresh. Refresh tokens are single-use, so refreshes are serialized per user."""

    service = Service.TRAKT

    def __init__(self, db: Database, oauth: TraktOAuth | None):
        super().__init__(db)
        self.oauth = oauth
        self._locks = KeyedLock()

    async def is_linked(self, user_id: str) -> bool:
        # Without app credentials a stored token cannot be refreshed or used
        if self.oauth is None:
            return False
        return await super().is_linked(user_id)

    async def link(self, user_id: str, code: str) -> DestinationCredential:
        """Complete the OAuth flow for a user."""
        if self.oauth is None:
            raise AuthError("Trakt is not configured")
        tokens = await self.oauth.exchange_code(code)
        credential = DestinationCredential(
            user_id=user_id,
            service=self.service,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
        )
        await self.db.save_credential(credential)
        return credential

    async def get_valid_credential(self, user_id: str) -> DestinationCredential:
        if self.oauth is None:
            raise AuthError("Trakt is not configured")

        credential = await self._load(user_id)
        if not expires_soon(credential.expires_at):
            return credential

        async with self._locks.lock(user_id):
            # Another task may have refreshed while we waited
            credential = await self._load(user_id)
            if not expires_soon(credential.expires_at):
                return credential
            if not credential.refresh_token:
                raise AuthError(f"Trakt token expired and no refresh token is stored for user {user_id}")

            logger.info("[trakt] Refreshing access token for user %s", user_id)
            try:
                tokens = await self.oauth.refresh_token(credential.refresh_token)
            except AuthError as e:
                logger.warning("[trakt] Token refresh failed for user %s: %s", user_id, e)
                raise

            refreshed = credential.model_copy(
                update={
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token,
                    "expires_at": tokens.expires_at,
                }
            )
            await self.db.save_credential(refreshed)
            return refreshed

    async def close(self) -> None:
        if self.oauth is not None:
            await self.oauth.close()
