"""Shared httpx plumbing for remote service clients."""

from importlib.metadata import metadata

import httpx

# Connection pool limits
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
DEFAULT_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=5)

# Get package metadata for client identification
_PKG_NAME = "scrobble-relay"
_pkg_meta = metadata(_PKG_NAME)
CLIENT_NAME = _pkg_meta["Name"]
CLIENT_VERSION = _pkg_meta["Version"]
USER_AGENT = f"{CLIENT_NAME}/{CLIENT_VERSION}"


class HttpClientMixin:
    """Lazily created, reusable ``httpx.AsyncClient``.

    ``transport`` is passed through to httpx so tests can swap in a
    ``MockTransport``.
    """

    _transport: httpx.AsyncBaseTransport | None = None
    _client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT,
                limits=DEFAULT_LIMITS,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def extract_error_message(response: httpx.Response, limit: int = 200) -> str:
    """Pull a readable message out of an error response body."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error_description", "error", "message"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    return response.text[:limit]
