"""TVTime session handling.

TVTime has no public OAuth. Every auth call must carry a short-lived
bootstrap JWT that the TVTime web app writes to ``localStorage`` on first
load, so we drive a headless Chromium to read it and cache the result.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import jwt
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from ..cache import KeyedLock, TTLCache
from ..config import TVTimeConfig
from ..database import Database
from ..errors import AuthError
from ..http_client import HttpClientMixin
from ..models import DestinationCredential, Service
from .base import CredentialManager, expires_soon

logger = logging.getLogger(__name__)

TVTIME_AUTH_PAGE_URL = "https://app.tvtime.com/welcome?mode=auth"
TVTIME_SIDECAR_URL = "https://beta-app.tvtime.com/sidecar"
TVTIME_LOGIN_URL = f"{TVTIME_SIDECAR_URL}?o=https://auth.tvtime.com/v1/login"
TVTIME_REFRESH_URL = f"{TVTIME_SIDECAR_URL}?o=https://auth.tvtime.com/v1/refresh"

BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]
BOOTSTRAP_STORAGE_KEY = "flutter.jwtToken"
BOOTSTRAP_ATTEMPTS = 5
BOOTSTRAP_CACHE_KEY = "bootstrap"


@dataclass
class TVTimeTokens:
    access_token: str
    refresh_token: str


def token_expiry(token: str) -> datetime | None:
    """Read the ``exp`` claim without verifying the signature. None if absent or unreadable."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, int | float):
        return None
    return datetime.fromtimestamp(exp, UTC)


def token_is_fresh(token: str, now: datetime | None = None) -> bool:
    """True if the JWT has an ``exp`` outside the refresh buffer."""
    expires_at = token_expiry(token)
    if expires_at is None:
        return False
    return not expires_soon(expires_at, now)


async def fetch_bootstrap_token(timeout_seconds: float = 60.0) -> str:
    """Load the TVTime web app in headless Chromium and read its bootstrap JWT."""
    logger.info("[tvtime] Fetching bootstrap token with headless browser")
    async with async_playwright() as p:
        try:
            browser = await p.chromium.launch(headless=True, args=BROWSER_ARGS)
        except PlaywrightError as e:
            raise AuthError(f"Could not launch Chromium, run `playwright install chromium`: {e}") from e

        try:
            page = await browser.new_page()
            try:
                await page.goto(TVTIME_AUTH_PAGE_URL, wait_until="networkidle", timeout=timeout_seconds * 1000)
            except PlaywrightError as e:
                raise AuthError(f"Failed to load TVTime auth page: {e}") from e

            await asyncio.sleep(3)
            for attempt in range(1, BOOTSTRAP_ATTEMPTS + 1):
                await asyncio.sleep(3 + attempt * 2)
                try:
                    token = await page.evaluate(
                        f"() => window.localStorage.getItem('{BOOTSTRAP_STORAGE_KEY}')"
                    )
                except PlaywrightError as e:
                    logger.warning("[tvtime] Reading bootstrap token failed (attempt %d): %s", attempt, e)
                    continue
                if token and token.strip() and token != "null":
                    logger.info("[tvtime] Bootstrap token obtained (attempt %d)", attempt)
                    return token.strip().strip('"')
        finally:
            await browser.close()

    raise AuthError(f"Unable to fetch bootstrap token from TVTime after {BOOTSTRAP_ATTEMPTS} attempts")


class TVTimeAuth(HttpClientMixin):
    """Login and refresh against TVTime's auth sidecar."""

    def __init__(
        self,
        config: TVTimeConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        bootstrap_fetcher: Callable[[], Awaitable[str]] | None = None,
    ):
        self.config = config
        self._transport = transport
        self._client = None
        self._bootstrap_fetcher = bootstrap_fetcher or (
            lambda: fetch_bootstrap_token(config.browser_timeout_seconds)
        )
        self.cache: TTLCache[str] = TTLCache(config.initial_token_ttl_seconds)
        self._bootstrap_lock = asyncio.Lock()

    async def get_bootstrap_token(self) -> str:
        """Cached bootstrap JWT. Concurrent callers share one browser launch."""
        token = self.cache.get(BOOTSTRAP_CACHE_KEY)
        if token:
            return token
        async with self._bootstrap_lock:
            token = self.cache.get(BOOTSTRAP_CACHE_KEY)
            if token:
                return token
            token = await self._bootstrap_fetcher()
            self.cache.set(BOOTSTRAP_CACHE_KEY, token)
            return token

    async def _post(self, url: str, body: dict[str, Any], action: str) -> TVTimeTokens:
        bootstrap = await self.get_bootstrap_token()
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {bootstrap}", "Content-Type": "application/json"},
            )
        except httpx.RequestError as e:
            raise AuthError(f"TVTime {action} request failed: {e}") from e

        if response.status_code in (401, 403):
            # Bootstrap token was likely rejected; fetch a new one next time
            self.cache.invalidate(BOOTSTRAP_CACHE_KEY)
        if response.status_code >= 400:
            raise AuthError(f"TVTime {action} failed: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()["data"]
            return TVTimeTokens(access_token=data["jwt_token"], refresh_token=data["jwt_refresh_token"])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Invalid response from TVTime {action}") from e

    async def login(self, email: str, password: str) -> TVTimeTokens:
        """Log in with account email and password."""
        return await self._post(TVTIME_LOGIN_URL, {"username": email, "password": password}, "login")

    async def refresh(self, refresh_token: str) -> TVTimeTokens:
        """Exchange a refresh token for a new token pair."""
        return await self._post(TVTIME_REFRESH_URL, {"refresh_token": refresh_token}, "token refresh")


class TVTimeCredentialManager(CredentialManager):
    """Keeps TVTime JWTs fresh.

    Refresh is single-flight per user: concurrent callers wait on the same
    lock and pick up the refreshed token instead of refreshing again.
    When the refresh token is rejected, stored login details are replayed.
    """

    service = Service.TVTIME

    def __init__(self, db: Database, auth: TVTimeAuth):
        super().__init__(db)
        self.auth = auth
        self._locks = KeyedLock()

    async def link(self, user_id: str, email: str, password: str, remember_login: bool = True) -> DestinationCredential:
        """Log in and store the resulting tokens."""
        try:
            tokens = await self.auth.login(email, password)
        except AuthError:
            self.auth.cache.invalidate(BOOTSTRAP_CACHE_KEY)
            raise
        credential = DestinationCredential(
            user_id=user_id,
            service=self.service,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=token_expiry(tokens.access_token),
            login_email=email if remember_login else None,
            login_password=password if remember_login else None,
        )
        await self.db.save_credential(credential)
        return credential

    async def get_valid_credential(self, user_id: str) -> DestinationCredential:
        credential = await self._load(user_id)
        if token_is_fresh(credential.access_token):
            return credential

        async with self._locks.lock(user_id):
            credential = await self._load(user_id)
            if token_is_fresh(credential.access_token):
                return credential
            return await self._renew(credential)

    async def _renew(self, credential: DestinationCredential) -> DestinationCredential:
        user_id = credential.user_id
        tokens: TVTimeTokens | None = None

        if credential.refresh_token:
            logger.info("[tvtime] Refreshing access token for user %s", user_id)
            try:
                tokens = await self.auth.refresh(credential.refresh_token)
            except AuthError as e:
                logger.warning("[tvtime] Token refresh failed for user %s: %s", user_id, e)

        if tokens is None and credential.login_email and credential.login_password:
            logger.info("[tvtime] Logging in again for user %s", user_id)
            try:
                tokens = await self.auth.login(credential.login_email, credential.login_password)
            except AuthError as e:
                logger.warning("[tvtime] Login failed for user %s: %s", user_id, e)

        if tokens is None:
            self.auth.cache.invalidate(BOOTSTRAP_CACHE_KEY)
            raise AuthError(f"TVTime credential for user {user_id} could not be refreshed")

        refreshed = credential.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": token_expiry(tokens.access_token),
            }
        )
        await self.db.save_credential(refreshed)
        return refreshed

    async def close(self) -> None:
        await self.auth.close()
