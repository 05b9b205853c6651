"""Common shape of a credential manager."""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

from ..database import Database
from ..errors import AuthError
from ..models import DestinationCredential, Service

# Refresh this long before a token actually expires
EXPIRY_BUFFER = timedelta(minutes=5)


def expires_soon(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when ``expires_at`` falls inside the refresh buffer. Unknown expiry never does."""
    if expires_at is None:
        return False
    now = now or datetime.now(UTC)
    return expires_at - EXPIRY_BUFFER <= now


class CredentialManager(ABC):
    """Hands out usable credentials for one service, refreshing them when needed."""

    service: Service

    def __init__(self, db: Database):
        self.db = db

    async def is_linked(self, user_id: str) -> bool:
        """Whether the user has linked this service."""
        return await self.db.get_credential(user_id, self.service) is not None

    async def _load(self, user_id: str) -> DestinationCredential:
        credential = await self.db.get_credential(user_id, self.service)
        if credential is None or not credential.access_token:
            raise AuthError(f"{self.service.value} account is not linked for user {user_id}")
        return credential

    @abstractmethod
    async def get_valid_credential(self, user_id: str) -> DestinationCredential:
        """Return a credential whose access token is usable right now.

        Raises:
            AuthError: the user has no linked account, or the credential
                cannot be refreshed.
        """

    async def refresh_if_needed(self, user_id: str) -> bool:
        """Refresh ahead of time. Returns False when the credential is unusable."""
        try:
            await self.get_valid_credential(user_id)
        except AuthError:
            return False
        return True

    async def close(self) -> None:
        """Release network resources."""
