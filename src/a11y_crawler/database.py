# src/a11y_crawler/database.py
"""Storage for crawler definitions, runs, discovered pages and auth sessions."""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from a11y_crawler.config import ConfigurationError, CrawlerConfig, build_crawler_config, settings
from a11y_crawler.models import CrawlRun, DiscoveredPage, RunStatus
from a11y_crawler.utils.session_manager import SessionData

logger = logging.getLogger(__name__)

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS web_crawlers (
    crawler_id TEXT PRIMARY KEY,
    project_id TEXT,
    name TEXT,
    base_url TEXT NOT NULL,
    config TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS crawler_runs (
    run_id TEXT PRIMARY KEY,
    crawler_id TEXT NOT NULL,
    status TEXT NOT NULL,
    triggered_by TEXT,
    current_url TEXT,
    current_depth INTEGER DEFAULT 0,
    queue_size INTEGER DEFAULT 0,
    pages_discovered INTEGER DEFAULT 0,
    pages_crawled INTEGER DEFAULT 0,
    pages_failed INTEGER DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    duration_ms INTEGER,
    auth_successful INTEGER,
    authentication_data TEXT,
    errors TEXT
);

CREATE TABLE IF NOT EXISTS crawler_discovered_pages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    crawler_id TEXT NOT NULL,
    url TEXT NOT NULL,
    depth INTEGER NOT NULL,
    parent_url TEXT,
    discovered_from TEXT,
    title TEXT,
    description TEXT,
    content_type TEXT,
    status_code INTEGER,
    response_time_ms INTEGER,
    content_hash TEXT,
    links TEXT,
    has_forms INTEGER,
    has_login_form INTEGER,
    has_search_form INTEGER,
    form_count INTEGER,
    image_count INTEGER,
    link_count INTEGER,
    extracted TEXT,
    custom_data TEXT,
    error TEXT,
    first_crawled_at TIMESTAMP NOT NULL,
    last_crawled_at TIMESTAMP NOT NULL,

    UNIQUE(run_id, url)
);

CREATE TABLE IF NOT EXISTS crawler_auth_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    crawler_id TEXT NOT NULL,
    session_name TEXT NOT NULL,
    origin TEXT,
    cookies TEXT,
    local_storage TEXT,
    session_storage TEXT,
    is_active INTEGER DEFAULT 1,
    created_at TIMESTAMP NOT NULL,
    last_used_at TIMESTAMP NOT NULL,

    UNIQUE(crawler_id, session_name)
);
"""


class CrawlerNotFoundError(LookupError):
    """Raised when a crawler id is not present in the store."""


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)


def _load(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CrawlStore(ABC):
    """Abstract base class defining the crawl storage interface."""

    @abstractmethod
    def close(self) -> None:
        """Close the underlying connection."""
        pass

    # Crawler definitions

    @abstractmethod
    def save_crawler(self, config: CrawlerConfig) -> CrawlerConfig:
        """Insert or replace a crawler definition."""
        pass

    @abstractmethod
    def get_crawler(self, crawler_id: str) -> CrawlerConfig:
        """Fetch a crawler definition.

        Raises:
            CrawlerNotFoundError: If no crawler has this id.
        """
        pass

    @abstractmethod
    def list_crawlers(self, project_id: Optional[str] = None) -> List[CrawlerConfig]:
        """List crawler definitions, optionally for one project."""
        pass

    def update_crawler(self, crawler_id: str, updates: Dict[str, Any]) -> CrawlerConfig:
        """Replace a crawler definition with a validated, updated copy.

        Args:
            crawler_id: Crawler to update
            updates: Field values to change

        Returns:
            The new CrawlerConfig

        Raises:
            CrawlerNotFoundError: If no crawler has this id.
            ConfigurationError: If the updated values are invalid.
        """
        updated = self.get_crawler(crawler_id).with_updates(updates)
        return self.save_crawler(updated)

    # Runs

    @abstractmethod
    def create_run(self, run: CrawlRun) -> None:
        pass

    @abstractmethod
    def update_run(self, run: CrawlRun) -> None:
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[CrawlRun]:
        pass

    @abstractmethod
    def list_runs(self, crawler_id: str) -> List[CrawlRun]:
        """Runs of one crawler, newest first."""
        pass

    # Discovered pages

    @abstractmethod
    def upsert_page(self, page: DiscoveredPage) -> bool:
        """Store a page, unique per (run, url).

        A repeat of an existing (run, url) only refreshes the timing fields.

        Returns:
            True if a new row was created.
        """
        pass

    @abstractmethod
    def get_pages(self, run_id: str) -> List[DiscoveredPage]:
        """Pages of a run in crawl order."""
        pass

    @abstractmethod
    def count_pages(self, run_id: str) -> int:
        pass

    # Auth sessions

    @abstractmethod
    def save_auth_session(self, session: SessionData) -> None:
        """Upsert a session for (crawler, session name) and mark it active."""
        pass

    @abstractmethod
    def load_auth_session(self, crawler_id: str) -> Optional[SessionData]:
        """Most recently used active session for the crawler, or None."""
        pass

    @abstractmethod
    def touch_auth_session(self, crawler_id: str, session_name: str) -> None:
        """Record that a session has just been used."""
        pass

    @abstractmethod
    def deactivate_auth_session(self, crawler_id: str, session_name: Optional[str] = None) -> int:
        """Deactivate one or all sessions of a crawler. Returns the count."""
        pass


class SqliteCrawlStore(CrawlStore):
    """SQLite implementation of the crawl store."""

    def __init__(self, db_url: Optional[str] = None):
        """Initialize SQLite storage.

        Args:
            db_url: Database URL (sqlite:///path/to/db.db). Defaults to settings.DATABASE_URL.
        """
        self.db_url = db_url or settings.DATABASE_URL
        self.db_path = self.db_url.replace("sqlite:///", "")
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to SQLite crawl store: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite crawl store")

    def create_schema(self) -> None:
        """Create the crawler tables if they don't exist."""
        with self.conn:
            self.conn.executescript(CREATE_TABLES_SQL)
        logger.debug("Schema verified/created for crawl store")

    # ------------------------------------------------------------------
    # Crawler definitions
    # ------------------------------------------------------------------

    def save_crawler(self, config: CrawlerConfig) -> CrawlerConfig:
        now = datetime.now().isoformat()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO web_crawlers (crawler_id, project_id, name, base_url, config, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(crawler_id) DO UPDATE SET
                    project_id = excluded.project_id,
                    name = excluded.name,
                    base_url = excluded.base_url,
                    config = excluded.config,
                    updated_at = excluded.updated_at
                """,
                (
                    config.crawler_id,
                    config.project_id,
                    config.name,
                    config.base_url,
                    config.model_dump_json(),
                    now,
                    now,
                ),
            )
        logger.debug(f"Saved crawler {config.crawler_id} ({config.base_url})")
        return config

    def get_crawler(self, crawler_id: str) -> CrawlerConfig:
        row = self.conn.execute(
            "SELECT config FROM web_crawlers WHERE crawler_id = ?", (crawler_id,)
        ).fetchone()
        if row is None:
            raise CrawlerNotFoundError(f"Crawler not found: {crawler_id}")
        return build_crawler_config(json.loads(row["config"]))

    def list_crawlers(self, project_id: Optional[str] = None) -> List[CrawlerConfig]:
        if project_id is None:
            cursor = self.conn.execute("SELECT config FROM web_crawlers ORDER BY created_at ASC")
        else:
            cursor = self.conn.execute(
                "SELECT config FROM web_crawlers WHERE project_id = ? ORDER BY created_at ASC",
                (project_id,),
            )
        return [build_crawler_config(json.loads(row["config"])) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def _run_values(run: CrawlRun) -> Dict[str, Any]:
        return {
            "run_id": run.run_id,
            "crawler_id": run.crawler_id,
            "status": run.status.value,
            "triggered_by": run.triggered_by,
            "current_url": run.current_url,
            "current_depth": run.current_depth,
            "queue_size": run.queue_size,
            "pages_discovered": run.pages_discovered,
            "pages_crawled": run.pages_crawled,
            "pages_failed": run.pages_failed,
            "created_at": _to_iso(run.created_at),
            "started_at": _to_iso(run.started_at),
            "completed_at": _to_iso(run.completed_at),
            "duration_ms": run.duration_ms,
            "auth_successful": None if run.auth_successful is None else int(run.auth_successful),
            "authentication_data": _dump(run.authentication_data),
            "errors": _dump(run.errors),
        }

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> CrawlRun:
        auth = row["auth_successful"]
        return CrawlRun(
            crawler_id=row["crawler_id"],
            run_id=row["run_id"],
            status=RunStatus(row["status"]),
            triggered_by=row["triggered_by"] or "manual",
            current_url=row["current_url"],
            current_depth=row["current_depth"] or 0,
            queue_size=row["queue_size"] or 0,
            pages_discovered=row["pages_discovered"] or 0,
            pages_crawled=row["pages_crawled"] or 0,
            pages_failed=row["pages_failed"] or 0,
            created_at=_to_datetime(row["created_at"]),
            started_at=_to_datetime(row["started_at"]),
            completed_at=_to_datetime(row["completed_at"]),
            duration_ms=row["duration_ms"],
            auth_successful=None if auth is None else bool(auth),
            authentication_data=_load(row["authentication_data"], {}),
            errors=_load(row["errors"], []),
        )

    def create_run(self, run: CrawlRun) -> None:
        values = self._run_values(run)
        columns = ", ".join(values.keys())
        placeholders = ", ".join("?" for _ in values)
        with self.conn:
            self.conn.execute(
                f"INSERT INTO crawler_runs ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
        logger.debug(f"Created run {run.run_id} for crawler {run.crawler_id}")

    def update_run(self, run: CrawlRun) -> None:
        values = self._run_values(run)
        run_id = values.pop("run_id")
        assignments = ", ".join(f"{column} = ?" for column in values)
        with self.conn:
            self.conn.execute(
                f"UPDATE crawler_runs SET {assignments} WHERE run_id = ?",
                (*values.values(), run_id),
            )

    def get_run(self, run_id: str) -> Optional[CrawlRun]:
        row = self.conn.execute(
            "SELECT * FROM crawler_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, crawler_id: str) -> List[CrawlRun]:
        cursor = self.conn.execute(
            "SELECT * FROM crawler_runs WHERE crawler_id = ? ORDER BY created_at DESC",
            (crawler_id,),
        )
        return [self._row_to_run(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Discovered pages
    # ------------------------------------------------------------------

    def upsert_page(self, page: DiscoveredPage) -> bool:
        with self.conn:
            existing = self.conn.execute(
                "SELECT 1 FROM crawler_discovered_pages WHERE run_id = ? AND url = ?",
                (page.run_id, page.url),
            ).fetchone()
            self.conn.execute(
                """
                INSERT INTO crawler_discovered_pages (
                    run_id, crawler_id, url, depth, parent_url, discovered_from,
                    title, description, content_type, status_code, response_time_ms,
                    content_hash, links, has_forms, has_login_form, has_search_form,
                    form_count, image_count, link_count, extracted, custom_data, error,
                    first_crawled_at, last_crawled_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, url) DO UPDATE SET
                    last_crawled_at = excluded.last_crawled_at,
                    status_code = excluded.status_code,
                    response_time_ms = excluded.response_time_ms
                """,
                (
                    page.run_id,
                    page.crawler_id,
                    page.url,
                    page.depth,
                    page.parent_url,
                    page.discovered_from,
                    page.title,
                    page.description,
                    page.content_type,
                    page.status_code,
                    page.response_time_ms,
                    page.content_hash,
                    _dump(page.links),
                    int(page.has_forms),
                    int(page.has_login_form),
                    int(page.has_search_form),
                    page.form_count,
                    page.image_count,
                    page.link_count,
                    _dump(page.extracted),
                    _dump(page.custom_data),
                    page.error,
                    _to_iso(page.first_crawled_at),
                    _to_iso(page.last_crawled_at),
                ),
            )
        if existing:
            logger.debug(f"Refreshed existing page {page.url} in run {page.run_id}")
        return existing is None

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> DiscoveredPage:
        return DiscoveredPage(
            run_id=row["run_id"],
            crawler_id=row["crawler_id"],
            url=row["url"],
            depth=row["depth"],
            parent_url=row["parent_url"],
            discovered_from=row["discovered_from"],
            title=row["title"] or "",
            description=row["description"] or "",
            content_type=row["content_type"] or "text/html",
            status_code=row["status_code"] or 0,
            response_time_ms=row["response_time_ms"] or 0,
            content_hash=row["content_hash"] or "",
            links=_load(row["links"], []),
            has_forms=bool(row["has_forms"]),
            has_login_form=bool(row["has_login_form"]),
            has_search_form=bool(row["has_search_form"]),
            form_count=row["form_count"] or 0,
            image_count=row["image_count"] or 0,
            link_count=row["link_count"] or 0,
            extracted=_load(row["extracted"], {}),
            custom_data=_load(row["custom_data"], {}),
            error=row["error"],
            first_crawled_at=_to_datetime(row["first_crawled_at"]),
            last_crawled_at=_to_datetime(row["last_crawled_at"]),
        )

    def get_pages(self, run_id: str) -> List[DiscoveredPage]:
        cursor = self.conn.execute(
            "SELECT * FROM crawler_discovered_pages WHERE run_id = ? ORDER BY depth ASC, id ASC",
            (run_id,),
        )
        return [self._row_to_page(row) for row in cursor.fetchall()]

    def count_pages(self, run_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM crawler_discovered_pages WHERE run_id = ?",
            (run_id,),
        ).fetchone()
        return row["total"]

    # ------------------------------------------------------------------
    # Auth sessions
    # ------------------------------------------------------------------

    def save_auth_session(self, session: SessionData) -> None:
        now = datetime.now().isoformat()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO crawler_auth_sessions (
                    crawler_id, session_name, origin, cookies, local_storage,
                    session_storage, is_active, created_at, last_used_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(crawler_id, session_name) DO UPDATE SET
                    origin = excluded.origin,
                    cookies = excluded.cookies,
                    local_storage = excluded.local_storage,
                    session_storage = excluded.session_storage,
                    is_active = 1,
                    last_used_at = excluded.last_used_at
                """,
                (
                    session.crawler_id,
                    session.session_name,
                    session.origin,
                    _dump(session.cookies),
                    _dump(session.local_storage),
                    _dump(session.session_storage),
                    _to_iso(session.created_at) or now,
                    now,
                ),
            )

    def load_auth_session(self, crawler_id: str) -> Optional[SessionData]:
        row = self.conn.execute(
            """
            SELECT * FROM crawler_auth_sessions
            WHERE crawler_id = ? AND is_active = 1
            ORDER BY last_used_at DESC, id DESC
            LIMIT 1
            """,
            (crawler_id,),
        ).fetchone()
        if row is None:
            return None
        return SessionData.from_dict({
            "crawler_id": row["crawler_id"],
            "session_name": row["session_name"],
            "origin": row["origin"],
            "cookies": _load(row["cookies"], []),
            "local_storage": _load(row["local_storage"], []),
            "session_storage": _load(row["session_storage"], []),
            "is_active": bool(row["is_active"]),
            "created_at": row["created_at"],
            "last_used_at": row["last_used_at"],
        })

    def touch_auth_session(self, crawler_id: str, session_name: str) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE crawler_auth_sessions SET last_used_at = ? WHERE crawler_id = ? AND session_name = ?",
                (datetime.now().isoformat(), crawler_id, session_name),
            )

    def deactivate_auth_session(self, crawler_id: str, session_name: Optional[str] = None) -> int:
        with self.conn:
            if session_name is None:
                cursor = self.conn.execute(
                    "UPDATE crawler_auth_sessions SET is_active = 0 WHERE crawler_id = ? AND is_active = 1",
                    (crawler_id,),
                )
            else:
                cursor = self.conn.execute(
                    """
                    UPDATE crawler_auth_sessions SET is_active = 0
                    WHERE crawler_id = ? AND session_name = ? AND is_active = 1
                    """,
                    (crawler_id, session_name),
                )
        return cursor.rowcount


def get_db_client(db_url: Optional[str] = None) -> CrawlStore:
    """Factory function to create the crawl store for a database URL.

    Args:
        db_url: Database URL. Defaults to settings.DATABASE_URL.

    Returns:
        A CrawlStore instance.

    Raises:
        ConfigurationError: If the URL names an unsupported backend.
    """
    db_url = db_url or settings.DATABASE_URL

    if db_url.startswith("sqlite:///"):
        logger.info("Using local SQLite crawl store")
        return SqliteCrawlStore(db_url)
    raise ConfigurationError(
        f"Unsupported database URL: '{db_url}'. "
        "Supported: 'sqlite:///path/to/file.db'"
    )
