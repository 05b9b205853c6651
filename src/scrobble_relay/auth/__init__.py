"""Per-destination credential managers."""

from .base import CredentialManager
from .plex import PlexAuth, PlexCredentialManager, PlexPin
from .trakt import TraktCredentialManager, TraktOAuth, TraktTokens
from .tvtime import TVTimeAuth, TVTimeCredentialManager, TVTimeTokens

__all__ = [
    "CredentialManager",
    "PlexAuth",
    "PlexCredentialManager",
    "PlexPin",
    "TVTimeAuth",
    "TVTimeCredentialManager",
    "TVTimeTokens",
    "TraktCredentialManager",
    "TraktOAuth",
    "TraktTokens",
]
