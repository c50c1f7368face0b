"""Breadth-first crawl frontier."""

import logging
from collections import deque
from typing import Deque, List, Optional, Set

from a11y_crawler.models import FrontierItem
from a11y_crawler.utils.urls import canonicalize_url, split_fragment

logger = logging.getLogger(__name__)


class CrawlFrontier:
    """
    FIFO queue of pages to visit, bounded by depth and deduplicated by
    canonical URL.

    A URL is "seen" from the moment it is queued, so it is never queued twice
    in one run. Visiting is tracked separately so the coordinator can skip
    items whose URL was reached by another path in the meantime.
    """

    def __init__(self, max_depth: int, max_pages: int):
        self.max_depth = max_depth
        self.max_pages = max_pages
        self._queue: Deque[FrontierItem] = deque()
        self._seen: Set[str] = set()
        self._visited: Set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    def seed(self, url: str) -> FrontierItem:
        """Queue the start URL at depth 0."""
        item = self._make_item(url, depth=0, parent_url=None, discovered_from="seed")
        self._seen.add(item.url)
        self._queue.append(item)
        return item

    def push(
        self,
        url: str,
        depth: int,
        parent_url: Optional[str] = None,
        discovered_from: Optional[str] = None,
    ) -> bool:
        """
        Queue a discovered URL.

        Args:
            url: Absolute URL (fragment allowed)
            depth: BFS depth of the new item
            parent_url: Canonical URL of the linking page
            discovered_from: Where the URL came from ("link", "sitemap")

        Returns:
            True if the URL was queued, False if it was already seen or too deep
        """
        if depth > self.max_depth:
            return False
        item = self._make_item(url, depth, parent_url, discovered_from)
        if item.url in self._seen:
            return False
        self._seen.add(item.url)
        self._queue.append(item)
        return True

    def is_seen(self, url: str) -> bool:
        return canonicalize_url(split_fragment(url)[0]) in self._seen

    def is_visited(self, url: str) -> bool:
        return canonicalize_url(split_fragment(url)[0]) in self._visited

    def mark_visited(self, url: str) -> None:
        canonical = canonicalize_url(split_fragment(url)[0])
        self._seen.add(canonical)
        self._visited.add(canonical)

    def next_batch(self, size: int) -> List[FrontierItem]:
        """Pop up to ``size`` items in insertion order."""
        batch: List[FrontierItem] = []
        while self._queue and len(batch) < size:
            batch.append(self._queue.popleft())
        return batch

    @staticmethod
    def _make_item(
        url: str,
        depth: int,
        parent_url: Optional[str],
        discovered_from: Optional[str],
    ) -> FrontierItem:
        base, fragment = split_fragment(url)
        return FrontierItem(
            url=canonicalize_url(base),
            depth=depth,
            parent_url=parent_url,
            fragment=fragment,
            discovered_from=discovered_from,
        )
