"""Clients that record watches on tracking services."""

from .base import DestinationClient
from .trakt import TraktClient
from .tvtime import TVTimeClient

__all__ = ["DestinationClient", "TVTimeClient", "TraktClient"]
