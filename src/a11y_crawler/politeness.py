"""robots.txt enforcement for the crawler.

One ``PolitenessGate`` is created per crawl run. It fetches ``/robots.txt``
once per origin, caches the raw content (or None when there is none) and
evaluates candidate URLs against the ``Disallow`` rules that apply to the
crawler's user agent. Fetch problems never block a crawl: an origin whose
robots.txt cannot be read is treated as allowing everything.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from a11y_crawler.config import coerce_flag, settings
from a11y_crawler.constants import ROBOTS_CACHE_TTL_HOURS, ROBOTS_FETCH_TIMEOUT_SECONDS
from a11y_crawler.utils.urls import origin_of

logger = logging.getLogger(__name__)


@dataclass
class RobotsGroup:
    """A ``User-agent`` block and its ``Disallow`` prefixes."""

    agents: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)

    def applies_to(self, user_agent: str) -> bool:
        ua = user_agent.lower()
        return any(agent == "*" or (agent and agent in ua) for agent in self.agents)


class RobotsRules:
    """Parsed robots.txt content."""

    def __init__(self, groups: List[RobotsGroup]):
        self.groups = groups

    @classmethod
    def parse(cls, content: str) -> "RobotsRules":
        """Parse robots.txt text into user-agent groups.

        Consecutive ``User-agent`` lines share one group; a ``User-agent``
        line after any rule starts a new group. Lines other than
        ``User-agent`` and ``Disallow`` are ignored, as are empty
        ``Disallow`` values (which allow everything).
        """
        groups: List[RobotsGroup] = []
        current: Optional[RobotsGroup] = None
        in_agent_lines = False

        for raw_line in content.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line or ":" not in line:
                continue
            directive, value = line.split(":", 1)
            directive = directive.strip().lower()
            value = value.strip()

            if directive == "user-agent":
                if current is None or not in_agent_lines:
                    current = RobotsGroup()
                    groups.append(current)
                current.agents.append(value.lower())
                in_agent_lines = True
            elif directive == "disallow":
                in_agent_lines = False
                if current is not None and value:
                    current.disallow.append(value)
            else:
                in_agent_lines = False

        return cls(groups)

    def disallowed_prefixes(self, user_agent: str) -> List[str]:
        prefixes: List[str] = []
        for group in self.groups:
            if group.applies_to(user_agent):
                prefixes.extend(group.disallow)
        return prefixes

    def is_allowed(self, url: str, user_agent: str) -> bool:
        """Check a URL's path and query against the applicable prefixes."""
        parsed = urlparse(url)
        target = parsed.path or "/"
        if parsed.query:
            target += f"?{parsed.query}"
        return not any(target.startswith(prefix) for prefix in self.disallowed_prefixes(user_agent))


class PolitenessGate:
    """Per-origin robots.txt cache and evaluator."""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: float = ROBOTS_FETCH_TIMEOUT_SECONDS,
        ttl_hours: Optional[float] = ROBOTS_CACHE_TTL_HOURS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the gate.

        Args:
            user_agent: Identity matched against ``User-agent`` groups
            timeout: robots.txt fetch timeout in seconds
            ttl_hours: Age after which a cached entry is refetched; None keeps
                entries for the gate's lifetime
            transport: Optional httpx transport (used by tests)
        """
        self.user_agent = user_agent or settings.USER_AGENT
        self.timeout = timeout
        self.ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else None
        self.transport = transport
        self._cache: Dict[str, Tuple[Optional[str], datetime]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def is_allowed(self, url: str, respect_robots: bool = True) -> bool:
        """
        Decide whether the crawler may fetch ``url``.

        Args:
            url: Candidate URL
            respect_robots: When false, robots.txt is not consulted at all

        Returns:
            True if the URL may be fetched
        """
        if not coerce_flag(respect_robots, default=True):
            return True

        origin = origin_of(url)
        content = await self._get_content(origin)
        if content is None:
            return True

        allowed = RobotsRules.parse(content).is_allowed(url, self.user_agent)
        if not allowed:
            logger.debug(f"robots.txt disallows {url}")
        return allowed

    def cached_origins(self) -> List[str]:
        return list(self._cache)

    def clear(self) -> None:
        """Drop all cached robots.txt entries."""
        self._cache.clear()

    def _is_fresh(self, fetched_at: datetime) -> bool:
        return self.ttl is None or datetime.now() - fetched_at < self.ttl

    async def _get_content(self, origin: str) -> Optional[str]:
        cached = self._cache.get(origin)
        if cached is not None and self._is_fresh(cached[1]):
            return cached[0]

        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            cached = self._cache.get(origin)
            if cached is not None and self._is_fresh(cached[1]):
                return cached[0]
            content = await self._fetch(origin)
            self._cache[origin] = (content, datetime.now())
            return content

    async def _fetch(self, origin: str) -> Optional[str]:
        """Fetch robots.txt; None on any error or non-200 response."""
        robots_url = f"{origin}/robots.txt"
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/plain,text/html,*/*",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self.transport
            ) as client:
                response = await client.get(robots_url, headers=headers)
                if response.status_code == 200:
                    logger.info(f"Loaded robots.txt from {robots_url}")
                    return response.text
                logger.info(f"No robots.txt found at {robots_url} (status: {response.status_code})")
        except Exception as e:
            logger.warning(f"Could not load robots.txt from {robots_url}, allowing all: {e}")
        return None
