# tests/test_database.py
from datetime import datetime, timedelta

import pytest

from a11y_crawler.config import ConfigurationError, CrawlerConfig
from a11y_crawler.database import CrawlerNotFoundError, SqliteCrawlStore, get_db_client
from a11y_crawler.models import CrawlRun, DiscoveredPage, RunStatus
from a11y_crawler.utils.session_manager import SessionData


def make_page(run_id: str, url: str, **kwargs) -> DiscoveredPage:
    return DiscoveredPage(run_id=run_id, crawler_id="crawler-1", url=url, **kwargs)


class TestCrawlers:
    """Tests for crawler definition storage."""

    def test_save_and_get(self, store):
        config = CrawlerConfig(
            base_url="https://example.test",
            name="Docs",
            project_id="proj-1",
            auth_type="basic",
            auth_credentials={"username": "alice", "password": "secret"},
        )
        store.save_crawler(config)

        loaded = store.get_crawler(config.crawler_id)

        assert loaded == config
        assert loaded.credentials() == {"username": "alice", "password": "secret"}

    def test_missing_crawler(self, store):
        with pytest.raises(CrawlerNotFoundError):
            store.get_crawler("nope")

    def test_list_by_project(self, store):
        store.save_crawler(CrawlerConfig(base_url="https://a.test", project_id="p1"))
        store.save_crawler(CrawlerConfig(base_url="https://b.test", project_id="p2"))
        store.save_crawler(CrawlerConfig(base_url="https://c.test", project_id="p1"))

        assert [c.base_url for c in store.list_crawlers("p1")] == ["https://a.test", "https://c.test"]
        assert len(store.list_crawlers()) == 3

    def test_update_crawler(self, store):
        config = store.save_crawler(CrawlerConfig(base_url="https://example.test", max_pages=10))

        updated = store.update_crawler(config.crawler_id, {"max_pages": 50, "respect_robots_txt": "false"})

        assert updated.max_pages == 50
        assert store.get_crawler(config.crawler_id).respect_robots_txt is False

    def test_update_missing_crawler(self, store):
        with pytest.raises(CrawlerNotFoundError):
            store.update_crawler("nope", {"max_pages": 5})


class TestRuns:
    """Tests for crawl run storage."""

    def test_round_trip(self, store):
        run = CrawlRun(crawler_id="crawler-1", triggered_by="schedule")
        store.create_run(run)

        run.status = RunStatus.COMPLETED
        run.pages_crawled = 4
        run.pages_failed = 1
        run.auth_successful = False
        run.authentication_data = {"strategy": "basic", "outcome": "not_authenticated"}
        run.add_error("Timeout", url="https://example.test/slow")
        run.completed_at = datetime.now()
        store.update_run(run)

        loaded = store.get_run(run.run_id)

        assert loaded.status == RunStatus.COMPLETED
        assert loaded.triggered_by == "schedule"
        assert loaded.pages_crawled == 4
        assert loaded.auth_successful is False
        assert loaded.authentication_data["strategy"] == "basic"
        assert loaded.errors[0]["url"] == "https://example.test/slow"
        assert loaded.completed_at == run.completed_at

    def test_unknown_auth_stays_none(self, store):
        run = CrawlRun(crawler_id="crawler-1")
        store.create_run(run)
        assert store.get_run(run.run_id).auth_successful is None

    def test_missing_run(self, store):
        assert store.get_run("nope") is None

    def test_list_runs_newest_first(self, store):
        older = CrawlRun(crawler_id="crawler-1", created_at=datetime.now() - timedelta(hours=1))
        newer = CrawlRun(crawler_id="crawler-1")
        store.create_run(older)
        store.create_run(newer)
        store.create_run(CrawlRun(crawler_id="other"))

        assert [r.run_id for r in store.list_runs("crawler-1")] == [newer.run_id, older.run_id]


class TestPages:
    """Tests for discovered page storage."""

    def test_upsert_reports_new_rows(self, store):
        """Test the second upsert of a URL refreshes instead of duplicating."""
        first = make_page("run-1", "https://example.test/", status_code=200, title="Home")
        assert store.upsert_page(first) is True

        again = make_page("run-1", "https://example.test/", status_code=503, title="Changed")
        assert store.upsert_page(again) is False

        pages = store.get_pages("run-1")
        assert len(pages) == 1
        assert pages[0].status_code == 503
        assert pages[0].title == "Home"
        assert store.count_pages("run-1") == 1

    def test_same_url_in_other_run(self, store):
        store.upsert_page(make_page("run-1", "https://example.test/"))
        assert store.upsert_page(make_page("run-2", "https://example.test/")) is True

    def test_pages_ordered_by_depth(self, store):
        store.upsert_page(make_page("run-1", "https://example.test/b", depth=1))
        store.upsert_page(make_page("run-1", "https://example.test/", depth=0))
        store.upsert_page(make_page("run-1", "https://example.test/a", depth=1))

        urls = [page.url for page in store.get_pages("run-1")]
        assert urls == ["https://example.test/", "https://example.test/b", "https://example.test/a"]

    def test_page_fields_round_trip(self, store):
        page = make_page(
            "run-1",
            "https://example.test/login",
            depth=1,
            parent_url="https://example.test/",
            links=["https://example.test/help"],
            has_forms=True,
            has_login_form=True,
            form_count=1,
            extracted={"heading": "Sign in"},
            custom_data={"landmarks": 2},
        )
        store.upsert_page(page)

        loaded = store.get_pages("run-1")[0]

        assert loaded.links == ["https://example.test/help"]
        assert loaded.has_login_form is True
        assert loaded.has_search_form is False
        assert loaded.extracted == {"heading": "Sign in"}
        assert loaded.custom_data == {"landmarks": 2}
        assert loaded.parent_url == "https://example.test/"


class TestAuthSessions:
    """Tests for auth session storage."""

    def test_save_replaces_same_name(self, store):
        store.save_auth_session(SessionData(crawler_id="c1", cookies=[{"name": "a", "value": "1"}]))
        store.save_auth_session(SessionData(crawler_id="c1", cookies=[{"name": "b", "value": "2"}]))

        session = store.load_auth_session("c1")

        assert session.cookies == [{"name": "b", "value": "2"}]
        assert store.deactivate_auth_session("c1") == 1

    def test_load_most_recently_used(self, store):
        store.save_auth_session(SessionData(crawler_id="c1", session_name="first", origin="https://a.test"))
        store.save_auth_session(SessionData(crawler_id="c1", session_name="second", origin="https://b.test"))
        store.touch_auth_session("c1", "first")

        assert store.load_auth_session("c1").session_name == "first"

    def test_deactivated_not_loaded(self, store):
        store.save_auth_session(SessionData(crawler_id="c1"))

        assert store.deactivate_auth_session("c1", "default") == 1
        assert store.load_auth_session("c1") is None
        assert store.deactivate_auth_session("c1") == 0

    def test_save_reactivates(self, store):
        store.save_auth_session(SessionData(crawler_id="c1"))
        store.deactivate_auth_session("c1")
        store.save_auth_session(SessionData(crawler_id="c1"))

        assert store.load_auth_session("c1") is not None


class TestGetDbClient:
    """Tests for the store factory."""

    def test_sqlite_url(self, tmp_path):
        client = get_db_client(f"sqlite:///{tmp_path / 'x.db'}")
        assert isinstance(client, SqliteCrawlStore)
        client.close()

    def test_unsupported_url(self):
        with pytest.raises(ConfigurationError):
            get_db_client("postgresql://localhost/crawler")
