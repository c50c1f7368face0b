# src/a11y_crawler/constants.py
"""Centralized constants for the site-discovery crawler.

Timeouts, crawl defaults and the keyword lists used by the authentication
heuristics. For per-crawler settings, see config.py and CrawlerConfig.
"""

# =============================================================================
# Timeouts
# =============================================================================

# Page navigation timeout (milliseconds, Playwright units)
NAVIGATION_TIMEOUT_MS = 30000

# Default timeout for a single wait condition (milliseconds)
DEFAULT_WAIT_TIMEOUT_MS = 5000

# Default duration of a fixed "timeout" wait condition (milliseconds)
DEFAULT_WAIT_DURATION_MS = 1000

# Content-settle wait after login steps (milliseconds)
NETWORK_IDLE_TIMEOUT_MS = 10000

# Per-step timeout for scripted login steps (milliseconds)
AUTH_STEP_TIMEOUT_MS = 10000

# robots.txt and sitemap fetch timeout (seconds, httpx units)
ROBOTS_FETCH_TIMEOUT_SECONDS = 5.0
SITEMAP_FETCH_TIMEOUT_SECONDS = 5.0

# DNS pre-flight check timeout (seconds)
DNS_RESOLVE_TIMEOUT_SECONDS = 5.0

# Robots cache entries older than this are refetched when a gate is reused
ROBOTS_CACHE_TTL_HOURS = 24


# =============================================================================
# Crawl Defaults
# =============================================================================

DEFAULT_MAX_PAGES = 100
DEFAULT_MAX_DEPTH = 3
DEFAULT_CONCURRENT_REQUESTS = 5
DEFAULT_REQUEST_DELAY_MS = 1000
DEFAULT_BROWSER_TYPE = "chromium"
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
DEFAULT_USER_AGENT = "AccessibilityTestingBot/1.0"
DEFAULT_SESSION_NAME = "default"

# Upper bound on the number of browser pages kept in the pool
MAX_PAGE_POOL_SIZE = 10

# Maximum length of an error message stored on a run or page
MAX_ERROR_MESSAGE_LENGTH = 500

# Sitemap locations probed when sitemap seeding is enabled
SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemaps/sitemap.xml")

# Nested sitemap indexes are followed this many levels deep
MAX_SITEMAP_DEPTH = 2


# =============================================================================
# URL Filtering
# =============================================================================

# Links ending in these extensions are assets, not pages
SKIP_EXTENSIONS = frozenset({
    '.pdf', '.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp', '.ico',
    '.zip', '.tar', '.gz', '.mp4', '.mp3', '.avi', '.mov',
    '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.css', '.js', '.xml', '.json', '.woff', '.woff2', '.ttf',
})


# =============================================================================
# Authentication Heuristics
# =============================================================================

# Words in a URL path or query that indicate a login or identity-provider page
LOGIN_URL_KEYWORDS = (
    "login", "signin", "sign-in", "sign_in", "logon",
    "auth", "sso", "saml", "shibboleth", "idp", "oauth",
)

# Title fragments that indicate a login page
LOGIN_TITLE_KEYWORDS = (
    "login", "log in", "sign in", "signin", "single sign-on",
    "authentication required", "institutional login",
)

# Selectors whose presence suggests an authenticated area
AUTHENTICATED_SELECTORS = (
    "nav",
    "[class*='dashboard']",
    "[id*='dashboard']",
    "a[href*='logout']",
    "a[href*='signout']",
    "a[href*='sign-out']",
    "button[class*='logout']",
)

# Text fragments that suggest an authenticated area
AUTHENTICATED_TEXT_KEYWORDS = ("dashboard", "welcome", "log out", "logout", "sign out")

# Body text longer than this is treated as real (post-login) content
SUBSTANTIAL_BODY_LENGTH = 1000
