"""Tests for page fetching and extraction."""

import pytest

from a11y_crawler.config import CrawlerConfig
from a11y_crawler.fetcher import PageFetcher, compute_content_hash, extract_page_data
from a11y_crawler.models import FrontierItem
from tests.fakes import FakeContext, FakeSite, LOGIN_PAGE, links_html, page_html

BASE = "https://example.test"

RICH_PAGE = """
<html>
    <head>
        <title>Course Catalog</title>
        <meta name="description" content="All courses offered this term">
    </head>
    <body>
        <h1 class="page-title">Catalog</h1>
        <form role="search"><input type="search" name="q"></form>
        <form><input name="email"></form>
        <img src="a.png"><img src="b.png" alt="b">
        <a href="/courses/101">Course 101</a>
        <a href="courses/102">Course 102</a>
        <a href="https://other.test/x">External</a>
        <a href="#main">Skip</a>
        <a href="mailto:help@example.test">Mail</a>
        <a href="/courses/101">Course 101 again</a>
    </body>
</html>
"""


def make_page(site: FakeSite, config: CrawlerConfig = None):
    context = FakeContext(site, {})
    return context, PageFetcher(config or CrawlerConfig(base_url=BASE))


class TestExtractPageData:
    """Tests for extract_page_data."""

    def test_metadata(self):
        data = extract_page_data(RICH_PAGE, f"{BASE}/catalog/")

        assert data["title"] == "Course Catalog"
        assert data["description"] == "All courses offered this term"

    def test_links_resolved_and_filtered(self):
        """Test relative links resolve, non-HTTP links drop and duplicates collapse."""
        data = extract_page_data(RICH_PAGE, f"{BASE}/catalog/")

        assert data["links"] == [
            f"{BASE}/courses/101",
            f"{BASE}/catalog/courses/102",
            "https://other.test/x",
            f"{BASE}/catalog/#main",
        ]
        assert data["link_count"] == 6

    def test_structural_signals(self):
        data = extract_page_data(RICH_PAGE, BASE)

        assert data["has_forms"] is True
        assert data["form_count"] == 2
        assert data["image_count"] == 2
        assert data["has_search_form"] is True
        assert data["has_login_form"] is False

    def test_login_form_detected(self):
        data = extract_page_data(LOGIN_PAGE, f"{BASE}/login")
        assert data["has_login_form"] is True
        assert data["has_search_form"] is False

    def test_extraction_rules(self):
        data = extract_page_data(RICH_PAGE, BASE, {"heading": "h1.page-title", "missing": ".nope"})
        assert data["extracted"] == {"heading": "Catalog", "missing": None}

    def test_invalid_selector_is_not_fatal(self):
        data = extract_page_data(RICH_PAGE, BASE, {"broken": "a[href="})
        assert data["extracted"] == {"broken": None}

    def test_empty_document(self):
        data = extract_page_data("", BASE)
        assert data["title"] == ""
        assert data["links"] == []


class TestContentHash:
    """Tests for compute_content_hash."""

    def test_deterministic(self):
        assert compute_content_hash("A", "B") == compute_content_hash("A", "B")
        assert len(compute_content_hash("A", "B")) == 64

    def test_changes_with_content(self):
        assert compute_content_hash("A", "B") != compute_content_hash("A", "C")

    def test_handles_missing_values(self):
        assert compute_content_hash(None, None) == compute_content_hash("", "")


class TestPageFetcher:
    """Tests for PageFetcher."""

    @pytest.mark.asyncio
    async def test_fetch_success(self):
        site = FakeSite({f"{BASE}/": RICH_PAGE})
        context, fetcher = make_page(site)
        page = await context.new_page()

        record = await fetcher.fetch(page, FrontierItem(url=f"{BASE}/", depth=0), "run-1", "crawler-1")

        assert record.status_code == 200
        assert record.error is None
        assert record.title == "Course Catalog"
        assert record.depth == 0
        assert record.content_hash == compute_content_hash(record.title, record.description)
        assert record.content_type.startswith("text/html")
        assert f"{BASE}/courses/101" in record.links
        assert record.run_id == "run-1"
        assert record.crawler_id == "crawler-1"

    @pytest.mark.asyncio
    async def test_navigation_timeout_degrades(self):
        """Test a timeout becomes status 0 with the error, not an exception."""
        site = FakeSite({f"{BASE}/": RICH_PAGE}, timeouts={f"{BASE}/slow"})
        context, fetcher = make_page(site)
        page = await context.new_page()

        record = await fetcher.fetch(
            page, FrontierItem(url=f"{BASE}/slow", depth=1, parent_url=f"{BASE}/"), "run-1", "crawler-1"
        )

        assert record.status_code == 0
        assert "Timeout" in record.error
        assert record.links == []
        assert record.failed
        assert record.parent_url == f"{BASE}/"

    @pytest.mark.asyncio
    async def test_http_error_status_recorded(self):
        site = FakeSite({f"{BASE}/": RICH_PAGE})
        context, fetcher = make_page(site)
        page = await context.new_page()

        record = await fetcher.fetch(page, FrontierItem(url=f"{BASE}/missing", depth=1), "r", "c")

        assert record.status_code == 404
        assert record.error is None

    @pytest.mark.asyncio
    async def test_fragment_only_change_does_not_navigate(self):
        """Test an anchor on the loaded document reuses that document's response."""
        site = FakeSite(
            {f"{BASE}/page": page_html("Page", '<h2 id="b">B</h2>')},
            statuses={f"{BASE}/page": 203},
        )
        context, fetcher = make_page(site)
        page = await context.new_page()
        await fetcher.fetch(page, FrontierItem(url=f"{BASE}/page", depth=0), "r", "c")

        record = await fetcher.fetch(
            page, FrontierItem(url=f"{BASE}/page", depth=0, fragment="b"), "r", "c"
        )

        assert site.visits == [f"{BASE}/page"]
        assert record.status_code == 203
        assert record.title == "Page"

    @pytest.mark.asyncio
    async def test_fragment_on_unfetched_document_navigates(self):
        """Test a document loaded outside the fetcher is visited for its status."""
        site = FakeSite(
            {f"{BASE}/page": page_html("Page", '<h2 id="b">B</h2>')},
            statuses={f"{BASE}/page": 203},
        )
        context, fetcher = make_page(site)
        page = await context.new_page()
        await page.goto(f"{BASE}/page")

        record = await fetcher.fetch(
            page, FrontierItem(url=f"{BASE}/page", depth=0, fragment="b"), "r", "c"
        )

        assert site.visits == [f"{BASE}/page", f"{BASE}/page"]
        assert record.status_code == 203

    @pytest.mark.asyncio
    async def test_failed_wait_conditions_are_not_fatal(self):
        config = CrawlerConfig(
            base_url=BASE,
            wait_conditions=[
                {"type": "selector", "selector": "#never-there"},
                {"type": "function", "function": "() => never"},
                {"type": "timeout", "duration": 10},
            ],
        )
        site = FakeSite({f"{BASE}/": page_html("Home", links_html("/a"))})
        context, fetcher = make_page(site, config)
        page = await context.new_page()

        record = await fetcher.fetch(page, FrontierItem(url=f"{BASE}/", depth=0), "r", "c")

        assert record.status_code == 200
        assert record.links == [f"{BASE}/a"]

    @pytest.mark.asyncio
    async def test_custom_scripts(self):
        config = CrawlerConfig(
            base_url=BASE,
            javascript_execution={
                "landmarks": "() => 3",
                "broken": "() => boom()",
            },
        )
        site = FakeSite(
            {f"{BASE}/": page_html("Home")},
            scripts={"() => 3": 3, "() => boom()": RuntimeError("boom is not defined")},
        )
        context, fetcher = make_page(site, config)
        page = await context.new_page()

        record = await fetcher.fetch(page, FrontierItem(url=f"{BASE}/", depth=0), "r", "c")

        assert record.custom_data["landmarks"] == 3
        assert record.custom_data["broken"] == {"error": "boom is not defined"}
        assert record.status_code == 200
