"""Page visits: navigation, readiness waits and extraction."""

import hashlib
import logging
import re
import time
import weakref
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from playwright.async_api import Page

from a11y_crawler.config import CrawlerConfig, WaitCondition
from a11y_crawler.constants import MAX_ERROR_MESSAGE_LENGTH
from a11y_crawler.models import DiscoveredPage, FrontierItem
from a11y_crawler.utils.urls import is_fragment_only_change, resolve_link

logger = logging.getLogger(__name__)

SCROLL_TO_ANCHOR_SCRIPT = """
    (anchor) => {
        const target = document.getElementById(anchor)
            || document.querySelector(`[name="${CSS.escape(anchor)}"]`);
        if (target) {
            target.scrollIntoView();
            return true;
        }
        return false;
    }
"""

SEARCH_INPUT_NAMES = re.compile(r"^(q|s|query|search|keywords?)$", re.IGNORECASE)


def compute_content_hash(title: Optional[str], description: Optional[str]) -> str:
    """Deterministic fingerprint of a page's title and description."""
    salient = f"{title or ''}{description or ''}"
    return hashlib.sha256(salient.encode("utf-8")).hexdigest()


def extract_page_data(
    html: str,
    url: str,
    extraction_rules: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Extract metadata, links and structural signals from HTML.

    Args:
        html: Rendered page HTML
        url: URL the HTML was loaded from, used to resolve relative links
        extraction_rules: Mapping of result name to CSS selector

    Returns:
        Dictionary of extracted fields
    """
    soup = BeautifulSoup(html, "lxml")

    # Title
    title = soup.find("title")
    title_text = title.get_text(strip=True) if title else ""

    # Meta description
    description_tag = soup.find("meta", attrs={"name": "description"})
    description = (description_tag.get("content") or "").strip() if description_tag else ""

    # Links
    anchors = soup.find_all("a", href=True)
    links: List[str] = []
    seen = set()
    for anchor in anchors:
        absolute_url = resolve_link(url, anchor["href"])
        if absolute_url and absolute_url not in seen:
            seen.add(absolute_url)
            links.append(absolute_url)

    # Structural signals
    forms = soup.find_all("form")
    has_login_form = soup.find("input", attrs={"type": "password"}) is not None
    has_search_form = (
        soup.find("input", attrs={"type": "search"}) is not None
        or soup.find(attrs={"role": "search"}) is not None
        or any(form.find("input", attrs={"name": SEARCH_INPUT_NAMES}) for form in forms)
    )

    extracted: Dict[str, Optional[str]] = {}
    for name, selector in (extraction_rules or {}).items():
        try:
            element = soup.select_one(selector)
        except Exception as e:
            logger.warning(f"Invalid extraction selector {name!r} ({selector}): {e}")
            element = None
        extracted[name] = element.get_text(strip=True) if element else None

    return {
        "title": title_text,
        "description": description,
        "links": links,
        "has_forms": bool(forms),
        "has_login_form": has_login_form,
        "has_search_form": has_search_form,
        "form_count": len(forms),
        "image_count": len(soup.find_all("img")),
        "link_count": len(anchors),
        "extracted": extracted,
    }


class PageFetcher:
    """Visits one frontier item on a browser page and builds its record."""

    def __init__(self, config: CrawlerConfig):
        self.config = config
        # Last navigation response (status, content type) per browser page
        self._responses: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    async def fetch(
        self,
        page: Page,
        item: FrontierItem,
        run_id: str,
        crawler_id: str,
    ) -> DiscoveredPage:
        """
        Visit a page and extract its data.

        Never raises: any failure is returned as a degraded record with
        status 0, the error message and no links.

        Args:
            page: Browser page to drive
            item: Frontier item to visit
            run_id: Run the record belongs to
            crawler_id: Crawler the record belongs to

        Returns:
            DiscoveredPage for the item
        """
        target_url = f"{item.url}#{item.fragment}" if item.fragment else item.url
        record = DiscoveredPage(
            run_id=run_id,
            crawler_id=crawler_id,
            url=item.url,
            depth=item.depth,
            parent_url=item.parent_url,
            discovered_from=item.discovered_from,
        )
        start = time.time()

        try:
            if page in self._responses and is_fragment_only_change(page.url, target_url):
                # Same document; no navigation happens, so it keeps its response
                await self._scroll_to_anchor(page, item.fragment)
                record.status_code, record.content_type = self._responses[page]
            else:
                response = await page.goto(
                    target_url,
                    wait_until=self.config.wait_until,
                    timeout=self.config.navigation_timeout_ms,
                )
                if response is None:
                    raise RuntimeError(f"No response received for {target_url}")
                record.status_code = response.status
                record.content_type = (response.headers or {}).get("content-type", record.content_type)
                self._responses[page] = (record.status_code, record.content_type)
            record.response_time_ms = int((time.time() - start) * 1000)

            await self.apply_wait_conditions(page)

            html = await page.content()
            data = extract_page_data(html, page.url or target_url, self.config.extraction_rules)
            record.title = data["title"]
            record.description = data["description"]
            record.links = data["links"]
            record.has_forms = data["has_forms"]
            record.has_login_form = data["has_login_form"]
            record.has_search_form = data["has_search_form"]
            record.form_count = data["form_count"]
            record.image_count = data["image_count"]
            record.link_count = data["link_count"]
            record.extracted = data["extracted"]
            record.content_hash = compute_content_hash(record.title, record.description)
            record.custom_data = await self.run_scripts(page)

            if record.status_code >= 400:
                logger.warning(f"  ⚠️  Non-success status {record.status_code}: {item.url}")
            else:
                logger.info(
                    f"  ✓ {item.url} - {record.link_count} links, "
                    f"{record.form_count} forms, {record.response_time_ms}ms"
                )
            return record

        except Exception as e:
            self._responses.pop(page, None)
            message = (str(e) or type(e).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
            logger.warning(f"  ⚠️  Failed to crawl {item.url}: {message}")
            return DiscoveredPage(
                run_id=run_id,
                crawler_id=crawler_id,
                url=item.url,
                depth=item.depth,
                parent_url=item.parent_url,
                discovered_from=item.discovered_from,
                status_code=0,
                response_time_ms=int((time.time() - start) * 1000),
                error=message,
                links=[],
            )

    async def apply_wait_conditions(self, page: Page) -> None:
        """Apply configured readiness waits; a failed wait is logged and ignored."""
        for condition in self.config.wait_conditions:
            try:
                await self._wait_for(page, condition)
            except Exception as e:
                logger.warning(f"Wait condition '{condition.type}' not met on {page.url}: {e}")

    @staticmethod
    async def _wait_for(page: Page, condition: WaitCondition) -> None:
        if condition.type == "selector":
            await page.wait_for_selector(
                condition.selector, state=condition.state, timeout=condition.timeout
            )
        elif condition.type == "function":
            await page.wait_for_function(condition.function, timeout=condition.timeout)
        elif condition.type == "timeout":
            await page.wait_for_timeout(condition.duration)

    async def run_scripts(self, page: Page) -> Dict[str, Any]:
        """Evaluate configured scripts; each failure becomes ``{"error": ...}``."""
        results: Dict[str, Any] = {}
        for name, script in self.config.javascript_execution.items():
            try:
                results[name] = await page.evaluate(script)
            except Exception as e:
                logger.warning(f"Script '{name}' failed on {page.url}: {e}")
                results[name] = {"error": str(e)}
        return results

    @staticmethod
    async def _scroll_to_anchor(page: Page, fragment: str) -> None:
        try:
            await page.evaluate(SCROLL_TO_ANCHOR_SCRIPT, fragment)
        except Exception as e:
            logger.debug(f"Could not scroll to #{fragment}: {e}")
