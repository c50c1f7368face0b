"""Sitemap discovery for seeding the crawl frontier."""

import logging
from typing import List, Optional
from xml.etree import ElementTree as ET

import httpx

from a11y_crawler.constants import MAX_SITEMAP_DEPTH, SITEMAP_FETCH_TIMEOUT_SECONDS, SITEMAP_PATHS
from a11y_crawler.utils.urls import origin_of

logger = logging.getLogger(__name__)


def _local_name(tag: str) -> str:
    return tag.split('}')[-1] if '}' in tag else tag


class SitemapParser:
    """
    Parse XML sitemaps to extract URLs for crawling.

    Supports:
    - Standard sitemap.xml files (``urlset``)
    - Sitemap index files, followed a bounded number of levels
    """

    # XML namespace used in sitemaps
    NAMESPACES = {
        'sm': 'http://www.sitemaps.org/schemas/sitemap/0.9',
    }

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: float = SITEMAP_FETCH_TIMEOUT_SECONDS,
        max_depth: int = MAX_SITEMAP_DEPTH,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the sitemap parser.

        Args:
            user_agent: User-Agent header sent with sitemap requests
            timeout: Fetch timeout in seconds
            max_depth: How many levels of sitemap indexes to follow
            transport: Optional httpx transport (used by tests)
        """
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_depth = max_depth
        self.transport = transport

    async def discover(self, base_url: str, max_urls: Optional[int] = None) -> List[str]:
        """
        Try the well-known sitemap locations of a site in order.

        Args:
            base_url: Any URL on the site
            max_urls: Maximum number of URLs to return (None for all)

        Returns:
            URLs from the first sitemap that yields any, or an empty list
        """
        origin = origin_of(base_url)
        async with self._client() as client:
            for path in SITEMAP_PATHS:
                urls = await self._fetch(client, f"{origin}{path}", max_urls, depth=0)
                if urls:
                    logger.info(f"Found {len(urls)} URLs in {origin}{path}")
                    return urls
        logger.info(f"No sitemap found for {origin}")
        return []

    async def parse(self, sitemap_url: str, max_urls: Optional[int] = None) -> List[str]:
        """
        Parse one sitemap (or sitemap index) and return its page URLs.

        Args:
            sitemap_url: URL to the sitemap.xml or sitemap index
            max_urls: Maximum number of URLs to return (None for all)

        Returns:
            List of URLs found in the sitemap
        """
        async with self._client() as client:
            return await self._fetch(client, sitemap_url, max_urls, depth=0)

    def _client(self) -> httpx.AsyncClient:
        headers = {'Accept': 'application/xml, text/xml, */*'}
        if self.user_agent:
            headers['User-Agent'] = self.user_agent
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=headers,
            transport=self.transport,
        )

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        sitemap_url: str,
        max_urls: Optional[int],
        depth: int,
    ) -> List[str]:
        """Fetch a sitemap and recurse into index entries."""
        try:
            response = await client.get(sitemap_url)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch sitemap {sitemap_url}: {e}")
            return []
        if response.status_code != 200:
            logger.debug(f"No sitemap at {sitemap_url} (status: {response.status_code})")
            return []

        kind, locations = self.parse_content(response.text)
        if kind != 'sitemapindex':
            return locations[:max_urls] if max_urls else locations

        if depth >= self.max_depth:
            logger.info(f"Not following nested sitemap index {sitemap_url} (depth {depth})")
            return []

        urls: List[str] = []
        for child_url in locations:
            logger.info(f"Found child sitemap: {child_url}")
            remaining = max_urls - len(urls) if max_urls else None
            urls.extend(await self._fetch(client, child_url, remaining, depth + 1))
            if max_urls and len(urls) >= max_urls:
                logger.info(f"Reached max URLs limit ({max_urls})")
                break
        return urls

    def parse_content(self, content: str) -> tuple:
        """
        Parse sitemap XML.

        Returns:
            ``(root_kind, locations)`` where root_kind is ``"urlset"``,
            ``"sitemapindex"`` or None for unparseable content
        """
        try:
            root = ET.fromstring(content.strip().encode('utf-8'))
        except ET.ParseError as e:
            logger.warning(f"Failed to parse sitemap XML: {e}")
            return None, []

        root_tag = _local_name(root.tag)
        if root_tag == 'sitemapindex':
            entry_tag = 'sitemap'
        elif root_tag == 'urlset':
            entry_tag = 'url'
        else:
            logger.warning(f"Unknown sitemap root element: {root_tag}")
            return None, []

        locations: List[str] = []
        for entry in root:
            if _local_name(entry.tag) != entry_tag:
                continue
            loc = entry.find('sm:loc', self.NAMESPACES)
            if loc is None:
                loc = entry.find('loc')
            if loc is not None and loc.text and loc.text.strip():
                locations.append(loc.text.strip())
        return root_tag, locations
