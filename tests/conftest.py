"""Shared fixtures: sqlite stores and coordinators wired to a fake browser."""

from typing import Callable, Dict, Optional

import pytest

from a11y_crawler.coordinator import CrawlCoordinator
from a11y_crawler.database import SqliteCrawlStore
from a11y_crawler.utils.session_manager import SessionStore
from tests.fakes import FakePlaywright, FakeSite, dns_ok, robots_transport


@pytest.fixture
def store(tmp_path):
    """Sqlite crawl store in a temporary directory."""
    db = SqliteCrawlStore(f"sqlite:///{tmp_path / 'crawler.db'}")
    yield db
    db.close()


@pytest.fixture
def session_store(store):
    return SessionStore(store)


@pytest.fixture
def make_coordinator(store, session_store) -> Callable:
    """Build a coordinator wired to a fake site."""

    def _make(site: FakeSite, robots: Optional[Dict[str, str]] = None, **kwargs):
        playwright = FakePlaywright(site)
        kwargs.setdefault("dns_check", dns_ok)
        coordinator = CrawlCoordinator(
            store,
            session_store,
            playwright_factory=playwright,
            headless=True,
            robots_transport=robots_transport(robots),
            **kwargs,
        )
        coordinator.fake_playwright = playwright
        return coordinator

    return _make
