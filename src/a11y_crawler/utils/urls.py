"""URL helpers shared by the frontier, fetcher and politeness gate."""

import re
from typing import Iterable, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

from a11y_crawler.constants import SKIP_EXTENSIONS

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_url(url: str) -> str:
    """Normalize a URL for de-duplication.

    Lowercases scheme and host, drops default ports and the fragment, maps an
    empty path to ``/`` and strips a trailing slash from longer paths. The
    query string is kept.

    Args:
        url: Absolute URL

    Returns:
        Canonical URL
    """
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = host
    if parsed.port and parsed.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parsed.port}"
    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo += f":{parsed.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    normalized = f"{scheme}://{netloc}{path}"
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized


def split_fragment(url: str) -> Tuple[str, str]:
    """Return ``(url_without_fragment, fragment)``."""
    base, fragment = urldefrag(url)
    return base, fragment


def is_fragment_only_change(current_url: Optional[str], target_url: str) -> bool:
    """True when ``target_url`` only differs from ``current_url`` by a fragment.

    Such a change stays within the same document, so it is not a navigation.
    """
    if not current_url:
        return False
    target_base, target_fragment = split_fragment(target_url)
    if not target_fragment:
        return False
    current_base, _ = split_fragment(current_url)
    return is_http_url(current_base) and canonicalize_url(current_base) == canonicalize_url(target_base)


def is_http_url(url: str) -> bool:
    """Check for a well-formed http(s) URL with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def resolve_link(base_url: str, href: Optional[str]) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None unless the result is http(s)."""
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(("mailto:", "tel:", "javascript:", "data:")):
        return None
    try:
        absolute = urljoin(base_url, href)
    except ValueError:
        return None
    return absolute if is_http_url(absolute) else None


def origin_of(url: str) -> str:
    """Scheme and host of a URL, as ``window.location.origin`` reports it.

    Lowercased, without credentials, and with the port only when it is not
    the scheme's default.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port and port != _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def same_site(url: str, base_url: str) -> bool:
    """Compare host names, so http/https variants of one host stay in scope."""
    return (urlparse(url).hostname or "").lower() == (urlparse(base_url).hostname or "").lower()


def has_skipped_extension(url: str) -> bool:
    """True when the URL path points at a static asset rather than a page."""
    path = urlparse(url).path.lower()
    return any(path.endswith(ext) for ext in SKIP_EXTENSIONS)


def matches_patterns(url: str, includes: Iterable[str], excludes: Iterable[str]) -> bool:
    """Apply include/exclude regular expressions.

    A URL passes when it matches at least one include pattern (if any are
    configured) and no exclude pattern.
    """
    includes = list(includes)
    if includes and not any(re.search(pattern, url) for pattern in includes):
        return False
    return not any(re.search(pattern, url) for pattern in excludes)
