"""
Utilities Package.

URL normalization and filtering helpers, and browsing-session persistence.
"""

from .session_manager import (
    SessionData,
    SessionStore,
)
from .urls import (
    canonicalize_url,
    has_skipped_extension,
    is_fragment_only_change,
    is_http_url,
    matches_patterns,
    origin_of,
    resolve_link,
    same_site,
    split_fragment,
)

__all__ = [
    # Session persistence
    "SessionData",
    "SessionStore",
    # URLs
    "canonicalize_url",
    "has_skipped_extension",
    "is_fragment_only_change",
    "is_http_url",
    "matches_patterns",
    "origin_of",
    "resolve_link",
    "same_site",
    "split_fragment",
]
