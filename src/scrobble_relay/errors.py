"""Exception taxonomy for the sync pipeline."""


class RelayError(Exception):
    """Base class for scrobble-relay errors."""


class WebhookValidationError(RelayError):
    """Webhook body could not be parsed (HTTP 400)."""


class AuthError(RelayError):
    """Bad shared secret, or a destination credential that is missing or cannot be refreshed."""


class UnsupportedEventError(RelayError):
    """Event kind or media kind is not tracked. Never surfaced as an HTTP error."""


class DestinationError(RelayError):
    """A destination API call failed. Stays local to that destination's outcome."""


class PersistenceError(RelayError):
    """Sync history could not be written (HTTP 500)."""
