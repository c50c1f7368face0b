"""Site-discovery crawler for accessibility testing."""

__version__ = "0.1.0"

from a11y_crawler.authentication import (
    AuthDetector,
    AuthenticationError,
    AuthenticationHandler,
    FormLoginDetector,
    LandingPageDetector,
)
from a11y_crawler.config import (
    ConfigurationError,
    CrawlerConfig,
    load_crawler_config,
    settings,
)
from a11y_crawler.coordinator import CrawlCoordinator, CrawlerAlreadyRunningError
from a11y_crawler.database import CrawlerNotFoundError, CrawlStore, SqliteCrawlStore, get_db_client
from a11y_crawler.fetcher import PageFetcher
from a11y_crawler.frontier import CrawlFrontier
from a11y_crawler.models import (
    AuthOutcome,
    AuthResult,
    CrawlRun,
    DiscoveredPage,
    FrontierItem,
    RunStatus,
)
from a11y_crawler.politeness import PolitenessGate
from a11y_crawler.sitemap_parser import SitemapParser
from a11y_crawler.utils import SessionData, SessionStore

__all__ = [
    "AuthDetector",
    "AuthenticationError",
    "AuthenticationHandler",
    "FormLoginDetector",
    "LandingPageDetector",
    "ConfigurationError",
    "CrawlerConfig",
    "load_crawler_config",
    "settings",
    "CrawlCoordinator",
    "CrawlerAlreadyRunningError",
    "CrawlerNotFoundError",
    "CrawlStore",
    "SqliteCrawlStore",
    "get_db_client",
    "PageFetcher",
    "CrawlFrontier",
    "AuthOutcome",
    "AuthResult",
    "CrawlRun",
    "DiscoveredPage",
    "FrontierItem",
    "RunStatus",
    "PolitenessGate",
    "SitemapParser",
    "SessionData",
    "SessionStore",
]
