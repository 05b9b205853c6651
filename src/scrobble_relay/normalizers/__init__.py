"""Media-server webhook normalizers."""

from .jellyfin import normalize_jellyfin, parse_jellyfin_body, pop_api_key
from .plex import normalize_plex, parse_plex_body

__all__ = ["normalize_jellyfin", "normalize_plex", "parse_jellyfin_body", "parse_plex_body", "pop_api_key"]
