"""
Crawl run lifecycle.

``CrawlCoordinator`` owns every run it starts: it launches the browser,
authenticates, drains the frontier breadth-first in batches, persists each
page and publishes progress. A run moves from pending to running and then
to exactly one of completed, failed or cancelled.

Usage:
    store = get_db_client()
    coordinator = CrawlCoordinator(store, SessionStore(store))

    run = await coordinator.start(config)      # background task
    coordinator.add_progress_listener(print)
    run = await coordinator.wait(config.crawler_id)
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from a11y_crawler.authentication import AuthenticationHandler
from a11y_crawler.config import CrawlerConfig, settings
from a11y_crawler.constants import (
    DNS_RESOLVE_TIMEOUT_SECONDS,
    MAX_ERROR_MESSAGE_LENGTH,
    MAX_PAGE_POOL_SIZE,
)
from a11y_crawler.database import CrawlStore
from a11y_crawler.fetcher import PageFetcher
from a11y_crawler.frontier import CrawlFrontier
from a11y_crawler.models import CrawlRun, DiscoveredPage, FrontierItem, RunStatus
from a11y_crawler.politeness import PolitenessGate
from a11y_crawler.sitemap_parser import SitemapParser
from a11y_crawler.utils.session_manager import SessionStore
from a11y_crawler.utils.urls import has_skipped_extension, matches_patterns, origin_of, same_site

logger = logging.getLogger(__name__)

ProgressListener = Callable[[Dict[str, Any]], None]


class CrawlerAlreadyRunningError(RuntimeError):
    """Raised when a crawler is started while one of its runs is active."""


async def resolve_host(url: str, timeout: float = DNS_RESOLVE_TIMEOUT_SECONDS) -> bool:
    """Best-effort DNS pre-flight for the target host.

    Returns:
        True if the host name resolved
    """
    host = urlparse(url).hostname
    if not host:
        return False
    loop = asyncio.get_running_loop()
    try:
        addresses = await asyncio.wait_for(loop.getaddrinfo(host, None), timeout=timeout)
    except (OSError, UnicodeError, asyncio.TimeoutError) as e:
        logger.warning(f"⚠️  DNS lookup for {host} failed, continuing anyway: {e}")
        return False
    logger.debug(f"DNS: {host} resolved to {len(addresses)} address(es)")
    return bool(addresses)


class CrawlCoordinator:
    """Starts, tracks and finalizes crawl runs."""

    def __init__(
        self,
        store: CrawlStore,
        session_store: Optional[SessionStore] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        headless: Optional[bool] = None,
        robots_transport=None,
        sitemap_transport=None,
        dns_check: Callable[[str], Awaitable[bool]] = resolve_host,
    ):
        """
        Initialize coordinator.

        Args:
            store: Storage for runs and pages
            session_store: Session persistence; None disables it for all runs
            playwright_factory: Returns an async Playwright context manager
            headless: Default headless mode (settings.HEADLESS when None)
            robots_transport: Optional httpx transport for robots.txt requests
            sitemap_transport: Optional httpx transport for sitemap requests
            dns_check: Coroutine used for the DNS pre-flight
        """
        self.store = store
        self.session_store = session_store
        self.playwright_factory = playwright_factory
        self.headless = settings.HEADLESS if headless is None else headless
        self.robots_transport = robots_transport
        self.sitemap_transport = sitemap_transport
        self.dns_check = dns_check

        self._active: Dict[str, Tuple[CrawlRun, asyncio.Task, asyncio.Event]] = {}
        self._listeners: List[ProgressListener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_running(self, crawler_id: str) -> bool:
        """True while a run of this crawler is active in this coordinator."""
        entry = self._active.get(crawler_id)
        return entry is not None and not entry[1].done()

    def add_progress_listener(self, listener: ProgressListener) -> None:
        """Register a callback receiving a progress snapshot after every update."""
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(
        self,
        config: CrawlerConfig,
        triggered_by: str = "manual",
        headless: Optional[bool] = None,
    ) -> CrawlRun:
        """
        Start a run in a background task.

        Args:
            config: Crawler configuration
            triggered_by: Who or what started the run
            headless: Override the coordinator's headless default

        Returns:
            The new CrawlRun (status pending until the task begins)

        Raises:
            CrawlerAlreadyRunningError: If the crawler already has an active run
        """
        if self.is_running(config.crawler_id):
            raise CrawlerAlreadyRunningError(f"Crawler {config.crawler_id} is already running")

        run = CrawlRun(crawler_id=config.crawler_id, triggered_by=triggered_by)
        self.store.create_run(run)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._execute(config, run, cancel_event, self.headless if headless is None else headless)
        )
        self._active[config.crawler_id] = (run, task, cancel_event)
        task.add_done_callback(lambda _: self._forget(config.crawler_id, task))

        logger.info(f"Started run {run.run_id} for crawler {config.crawler_id} ({config.base_url})")
        return run

    async def start_crawler(self, crawler_id: str, triggered_by: str = "manual") -> CrawlRun:
        """Start a run for a crawler definition held in the store.

        Raises:
            CrawlerNotFoundError: If the crawler is not defined
            CrawlerAlreadyRunningError: If the crawler already has an active run
        """
        return await self.start(self.store.get_crawler(crawler_id), triggered_by=triggered_by)

    async def wait(self, crawler_id: str) -> Optional[CrawlRun]:
        """Wait for the active run of a crawler to finish and return it."""
        entry = self._active.get(crawler_id)
        if entry is None:
            return None
        run, task, _ = entry
        await asyncio.shield(task)
        return run

    async def run(
        self,
        config: CrawlerConfig,
        triggered_by: str = "manual",
        headless: Optional[bool] = None,
    ) -> CrawlRun:
        """Start a run and wait for it to finish."""
        run = await self.start(config, triggered_by=triggered_by, headless=headless)
        await self.wait(config.crawler_id)
        return run

    def cancel(self, crawler_id: str) -> bool:
        """
        Ask the active run of a crawler to stop.

        In-flight pages finish; no further batches are started.

        Returns:
            True if a running crawl was signalled
        """
        entry = self._active.get(crawler_id)
        if entry is None or entry[1].done():
            return False
        entry[2].set()
        logger.info(f"Cancellation requested for crawler {crawler_id}")
        return True

    def update_crawler(self, crawler_id: str, updates: Dict[str, Any]) -> CrawlerConfig:
        """Update a stored crawler definition between runs.

        Raises:
            CrawlerAlreadyRunningError: If the crawler has an active run
        """
        if self.is_running(crawler_id):
            raise CrawlerAlreadyRunningError(
                f"Crawler {crawler_id} cannot be updated while a run is active"
            )
        return self.store.update_crawler(crawler_id, updates)

    def get_progress(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Current progress snapshot of a run, live or finished."""
        for run, _, _ in self._active.values():
            if run.run_id == run_id:
                return run.progress()
        run = self.store.get_run(run_id)
        return run.progress() if run else None

    def summarize(self, run_id: str) -> Dict[str, Any]:
        """
        Summary statistics for a run.

        Returns:
            Dictionary with page totals, failures grouped by error and the
            deepest level reached
        """
        run = self.store.get_run(run_id)
        pages = self.store.get_pages(run_id)
        failed = [page for page in pages if page.failed]

        failed_by_error: Dict[str, int] = {}
        for page in failed:
            key = page.error or "Unknown"
            failed_by_error[key] = failed_by_error.get(key, 0) + 1

        return {
            'run_id': run_id,
            'status': run.status.value if run else None,
            'total_pages': len(pages),
            'pages_crawled': len(pages) - len(failed),
            'pages_failed': len(failed),
            'max_depth_reached': max((page.depth for page in pages), default=0),
            'pages_with_forms': sum(1 for page in pages if page.has_forms),
            'pages_with_login_form': sum(1 for page in pages if page.has_login_form),
            'urls_crawled': [page.url for page in pages if not page.failed],
            'failed_urls': [page.url for page in failed],
            'failed_by_error': failed_by_error,
            'duration_ms': run.duration_ms if run else None,
            'auth_successful': run.auth_successful if run else None,
        }

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _forget(self, crawler_id: str, task: asyncio.Task) -> None:
        entry = self._active.get(crawler_id)
        if entry is not None and entry[1] is task:
            del self._active[crawler_id]

    def _publish(self, run: CrawlRun) -> None:
        self.store.update_run(run)
        snapshot = run.progress()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")

    async def _execute(
        self,
        config: CrawlerConfig,
        run: CrawlRun,
        cancel_event: asyncio.Event,
        headless: bool,
    ) -> None:
        run.status = RunStatus.RUNNING
        run.started_at = datetime.now()
        run.current_url = config.base_url
        self._publish(run)
        start = time.time()

        try:
            await self.dns_check(config.base_url)

            async with self.playwright_factory() as playwright:
                browser = await self._launch_browser(playwright, config, headless)
                try:
                    await self._crawl(config, run, browser, cancel_event)
                finally:
                    await browser.close()

            if cancel_event.is_set():
                run.status = RunStatus.CANCELLED
                logger.info(f"Run {run.run_id} cancelled after {run.pages_discovered} pages")
            else:
                run.status = RunStatus.COMPLETED
                logger.info(
                    f"✓ Run {run.run_id} complete: {run.pages_discovered} pages, "
                    f"{run.pages_failed} failed"
                )
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise
        except Exception as e:
            logger.exception(f"Run {run.run_id} failed: {e}")
            run.status = RunStatus.FAILED
            run.add_error(
                (str(e) or type(e).__name__)[:MAX_ERROR_MESSAGE_LENGTH],
                type=type(e).__name__,
                stage="run",
            )
        finally:
            if not run.status.is_terminal:
                run.status = RunStatus.FAILED
                run.add_error("Run ended without reaching a final state", stage="run")
            run.completed_at = datetime.now()
            run.duration_ms = int((time.time() - start) * 1000)
            run.pages_discovered = self.store.count_pages(run.run_id)
            run.queue_size = 0
            self._publish(run)

    async def _launch_browser(self, playwright: Playwright, config: CrawlerConfig, headless: bool) -> Browser:
        browser_type = getattr(playwright, config.browser_type)
        browser = await browser_type.launch(headless=headless)
        logger.info(f"Browser launched ({config.browser_type}, headless={headless})")
        return browser

    @staticmethod
    def _context_options(config: CrawlerConfig) -> Dict[str, Any]:
        options: Dict[str, Any] = {"viewport": dict(config.viewport_config)}
        if config.user_agent:
            options["user_agent"] = config.user_agent
        if config.headers:
            options["extra_http_headers"] = dict(config.headers)
        return options

    async def _crawl(
        self,
        config: CrawlerConfig,
        run: CrawlRun,
        browser: Browser,
        cancel_event: asyncio.Event,
    ) -> None:
        context = await browser.new_context(**self._context_options(config))
        try:
            session_restored = await self._restore_session(config, context)

            pages: List[Page] = []
            pool: asyncio.Queue = asyncio.Queue()
            for _ in range(min(max(1, config.concurrent_requests), MAX_PAGE_POOL_SIZE)):
                page = await context.new_page()
                pages.append(page)
                pool.put_nowait(page)

            async with self._page(pool) as page:
                await self._authenticate(config, run, context, page, session_restored)

            gate = PolitenessGate(user_agent=settings.USER_AGENT, transport=self.robots_transport)
            frontier = CrawlFrontier(config.max_depth, config.max_pages)
            frontier.seed(config.base_url)
            if config.use_sitemap:
                await self._seed_from_sitemap(config, frontier)

            await self._drain(config, run, frontier, gate, pool, cancel_event)

            if self._should_save_session(config, run, session_restored):
                # Web storage is only readable from a page on the crawler's origin
                page = next((p for p in pages if origin_of(p.url) == config.origin), pages[0])
                state = await self.session_store.capture(context, page, origin=config.origin)
                self.session_store.save(config.crawler_id, state, origin=config.origin)
        finally:
            await context.close()

    @asynccontextmanager
    async def _page(self, pool: asyncio.Queue):
        page = await pool.get()
        try:
            yield page
        finally:
            pool.put_nowait(page)

    async def _restore_session(self, config: CrawlerConfig, context: BrowserContext) -> bool:
        if not config.session_persistence or self.session_store is None:
            return False
        session = self.session_store.load(config.crawler_id)
        if session is None:
            return False
        return await self.session_store.apply(context, session)

    async def _authenticate(
        self,
        config: CrawlerConfig,
        run: CrawlRun,
        context: BrowserContext,
        page: Page,
        session_restored: bool,
    ) -> None:
        session_store = self.session_store if config.session_persistence else None
        handler = AuthenticationHandler(config, session_store=session_store)
        result = await handler.authenticate(context, page, session_restored=session_restored)
        if result is None:
            return
        run.auth_successful = result.successful
        run.authentication_data = result.to_dict()
        if result.error:
            run.add_error(f"Authentication failed: {result.error}", stage="authentication")
        self._publish(run)

    def _should_save_session(self, config: CrawlerConfig, run: CrawlRun, session_restored: bool) -> bool:
        if not config.session_persistence or self.session_store is None:
            return False
        if run.auth_successful is False:
            return False
        return config.auth_type != "none" or session_restored

    async def _seed_from_sitemap(self, config: CrawlerConfig, frontier: CrawlFrontier) -> None:
        parser = SitemapParser(user_agent=settings.USER_AGENT, transport=self.sitemap_transport)
        try:
            urls = await parser.discover(config.base_url, max_urls=config.max_pages)
        except Exception as e:
            logger.warning(f"Sitemap discovery failed, continuing without it: {e}")
            return
        queued = sum(
            1 for url in urls
            if self._in_scope(config, url)
            and frontier.push(url, depth=1, parent_url=None, discovered_from="sitemap")
        )
        if queued:
            logger.info(f"  → Queued {queued} URLs from sitemap")

    @staticmethod
    def _in_scope(config: CrawlerConfig, url: str) -> bool:
        includes = [p.regex for p in config.url_patterns if p.type == "include"]
        excludes = [p.regex for p in config.url_patterns if p.type == "exclude"]
        if not matches_patterns(url, includes, excludes):
            return False
        if config.same_origin_only and not same_site(url, config.base_url):
            return False
        return not has_skipped_extension(url)

    async def _drain(
        self,
        config: CrawlerConfig,
        run: CrawlRun,
        frontier: CrawlFrontier,
        gate: PolitenessGate,
        pool: asyncio.Queue,
        cancel_event: asyncio.Event,
    ) -> None:
        fetcher = PageFetcher(config)
        current_depth = 0

        while len(frontier) and run.pages_discovered < config.max_pages:
            if cancel_event.is_set():
                break

            capacity = min(config.concurrent_requests, config.max_pages - run.pages_discovered)
            batch: List[FrontierItem] = []
            while len(frontier) and len(batch) < capacity:
                item = frontier.next_batch(1)[0]
                if frontier.is_visited(item.url) or item.depth > config.max_depth:
                    continue
                if not await gate.is_allowed(item.url, config.respect_robots_txt):
                    logger.warning(f"Skipping {item.url} (disallowed by robots.txt)")
                    continue
                frontier.mark_visited(item.url)
                batch.append(item)

            if not batch:
                continue

            if batch[0].depth > current_depth:
                current_depth = batch[0].depth
                logger.info(f"--- Moving to depth {current_depth} ---")

            await asyncio.gather(*[
                self._visit(config, run, frontier, gate, pool, fetcher, item)
                for item in batch
            ])

            if len(frontier) and config.request_delay_ms and not cancel_event.is_set():
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=config.request_delay_ms / 1000)
                except asyncio.TimeoutError:
                    pass

    async def _visit(
        self,
        config: CrawlerConfig,
        run: CrawlRun,
        frontier: CrawlFrontier,
        gate: PolitenessGate,
        pool: asyncio.Queue,
        fetcher: PageFetcher,
        item: FrontierItem,
    ) -> DiscoveredPage:
        async with self._page(pool) as page:
            record = await fetcher.fetch(page, item, run.run_id, run.crawler_id)

        if self.store.upsert_page(record):
            run.pages_discovered += 1
        if record.failed:
            run.pages_failed += 1
            run.add_error(record.error or "Page failed", url=record.url, stage="page")
        else:
            run.pages_crawled += 1
            queued = await self._enqueue_links(config, frontier, gate, item, record.links)
            if queued:
                logger.info(f"  → Queued {queued} new links for depth {item.depth + 1}")

        run.current_url = item.url
        run.current_depth = item.depth
        run.queue_size = len(frontier)
        self._publish(run)
        return record

    async def _enqueue_links(
        self,
        config: CrawlerConfig,
        frontier: CrawlFrontier,
        gate: PolitenessGate,
        item: FrontierItem,
        links: List[str],
    ) -> int:
        next_depth = item.depth + 1
        if next_depth > config.max_depth:
            return 0

        queued = 0
        for link in links:
            if frontier.is_seen(link) or not self._in_scope(config, link):
                continue
            if not await gate.is_allowed(link, config.respect_robots_txt):
                logger.debug(f"Not queueing {link} (disallowed by robots.txt)")
                continue
            if frontier.push(link, next_depth, parent_url=item.url, discovered_from="link"):
                queued += 1
        return queued
