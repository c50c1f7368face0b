"""
Session persistence for authenticated crawling.

Saves the browser's cookies, localStorage and sessionStorage after a run so
the next run of the same crawler can skip logging in again. Sessions are
keyed by crawler id and session name; each save for the same key replaces
the previous one.

Usage:
    from a11y_crawler.utils.session_manager import SessionStore

    sessions = SessionStore(store)

    # After a successful run
    state = await sessions.capture(context, page, origin="https://app.example")
    sessions.save(crawler_id, state, origin="https://app.example")

    # Before the next run
    session = sessions.load(crawler_id)
    if session:
        await sessions.apply(context, session)
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from a11y_crawler.constants import DEFAULT_SESSION_NAME
from a11y_crawler.utils.urls import origin_of

logger = logging.getLogger(__name__)

CAPTURE_STORAGE_SCRIPT = """
    () => {
        const local = {};
        const session = {};

        try {
            for (let i = 0; i < localStorage.length; i++) {
                const key = localStorage.key(i);
                local[key] = localStorage.getItem(key);
            }
        } catch (e) {}

        try {
            for (let i = 0; i < sessionStorage.length; i++) {
                const key = sessionStorage.key(i);
                session[key] = sessionStorage.getItem(key);
            }
        } catch (e) {}

        return { local, session };
    }
"""


def _as_items(mapping: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"name": key, "value": value} for key, value in (mapping or {}).items()]


@dataclass
class SessionData:
    """Stored browsing state for one crawler."""

    crawler_id: str
    session_name: str = DEFAULT_SESSION_NAME
    origin: Optional[str] = None
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    local_storage: List[Dict[str, str]] = field(default_factory=list)
    session_storage: List[Dict[str, str]] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()
        if self.last_used_at is None:
            self.last_used_at = self.created_at

    def is_expired(self, ttl_hours: Optional[int] = None) -> bool:
        """Check if session has expired. Without a TTL, sessions never expire."""
        if ttl_hours is None:
            return False
        return datetime.now() > self.last_used_at + timedelta(hours=ttl_hours)

    def to_state(self) -> Dict[str, List[Dict[str, Any]]]:
        """The opaque ``{cookies, localStorage, sessionStorage}`` triple."""
        return {
            "cookies": list(self.cookies),
            "localStorage": list(self.local_storage),
            "sessionStorage": list(self.session_storage),
        }

    @classmethod
    def from_state(
        cls,
        crawler_id: str,
        state: Dict[str, Any],
        origin: Optional[str] = None,
        session_name: str = DEFAULT_SESSION_NAME,
    ) -> "SessionData":
        """Build session data from a captured state triple."""
        return cls(
            crawler_id=crawler_id,
            session_name=session_name,
            origin=origin,
            cookies=list(state.get("cookies") or []),
            local_storage=list(state.get("localStorage") or []),
            session_storage=list(state.get("sessionStorage") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "crawler_id": self.crawler_id,
            "session_name": self.session_name,
            "origin": self.origin,
            "cookies": self.cookies,
            "local_storage": self.local_storage,
            "session_storage": self.session_storage,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionData":
        """Deserialize from dictionary."""
        created_at = None
        last_used_at = None
        if data.get("created_at"):
            created_at = datetime.fromisoformat(data["created_at"])
        if data.get("last_used_at"):
            last_used_at = datetime.fromisoformat(data["last_used_at"])

        return cls(
            crawler_id=data["crawler_id"],
            session_name=data.get("session_name") or DEFAULT_SESSION_NAME,
            origin=data.get("origin"),
            cookies=data.get("cookies") or [],
            local_storage=data.get("local_storage") or [],
            session_storage=data.get("session_storage") or [],
            is_active=bool(data.get("is_active", True)),
            created_at=created_at,
            last_used_at=last_used_at,
        )


class SessionStore:
    """
    Persists browsing state per crawler on top of a CrawlStore.

    At most one session per (crawler, session name) exists; ``load`` returns
    the most recently used active one, or None when there is nothing to reuse.
    """

    def __init__(
        self,
        store,
        session_name: str = DEFAULT_SESSION_NAME,
        ttl_hours: Optional[int] = None,
    ):
        """
        Initialize session store.

        Args:
            store: CrawlStore used for persistence
            session_name: Name sessions are saved under
            ttl_hours: Optional maximum age since last use
        """
        self.store = store
        self.session_name = session_name
        self.ttl_hours = ttl_hours

    def save(
        self,
        crawler_id: str,
        state: Dict[str, Any],
        origin: Optional[str] = None,
    ) -> SessionData:
        """Upsert the browsing state for a crawler.

        Args:
            crawler_id: Crawler identity
            state: ``{cookies, localStorage, sessionStorage}`` triple
            origin: Origin the storage entries belong to

        Returns:
            SessionData that was saved
        """
        session = SessionData.from_state(
            crawler_id, state, origin=origin, session_name=self.session_name
        )
        self.store.save_auth_session(session)
        logger.info(
            f"Session saved for crawler {crawler_id}: {len(session.cookies)} cookies, "
            f"{len(session.local_storage)} localStorage items"
        )
        return session

    def load(self, crawler_id: str) -> Optional[SessionData]:
        """Return the most recently used active session, or None."""
        session = self.store.load_auth_session(crawler_id)
        if session is None:
            logger.debug(f"No saved session found for crawler {crawler_id}")
            return None

        if session.is_expired(self.ttl_hours):
            logger.info(f"Session for crawler {crawler_id} has expired, not restoring")
            self.store.deactivate_auth_session(crawler_id, session.session_name)
            return None

        self.store.touch_auth_session(crawler_id, session.session_name)
        return session

    def has_session(self, crawler_id: str) -> bool:
        """Check if a usable session exists for the crawler."""
        return self.load(crawler_id) is not None

    def clear(self, crawler_id: str) -> int:
        """Deactivate all sessions for a crawler. Returns count deactivated."""
        count = self.store.deactivate_auth_session(crawler_id)
        if count:
            logger.info(f"Cleared {count} session(s) for crawler {crawler_id}")
        return count

    async def capture(self, context, page=None, origin: Optional[str] = None) -> Dict[str, Any]:
        """
        Capture cookies and web storage from a live browser context.

        Args:
            context: Playwright BrowserContext instance
            page: Optional Page (needed for localStorage/sessionStorage)
            origin: Storage is only read when the page is on this origin

        Returns:
            ``{cookies, localStorage, sessionStorage}`` triple
        """
        cookies = await context.cookies()
        local_items: List[Dict[str, str]] = []
        session_items: List[Dict[str, str]] = []

        if page is not None and (origin is None or origin_of(page.url) == origin_of(origin)):
            try:
                storage = await page.evaluate(CAPTURE_STORAGE_SCRIPT)
                local_items = _as_items(storage.get("local"))
                session_items = _as_items(storage.get("session"))
            except Exception as e:
                logger.warning(f"Could not read web storage from {page.url}: {e}")

        return {
            "cookies": cookies,
            "localStorage": local_items,
            "sessionStorage": session_items,
        }

    async def apply(self, context, session: SessionData) -> bool:
        """
        Restore a saved session into a browser context.

        Cookies are injected directly; web storage is replayed by an init
        script on every document of the session's origin, without overwriting
        keys the application has already set.

        Args:
            context: Playwright BrowserContext instance
            session: Session to restore

        Returns:
            True if anything was restored
        """
        restored = False

        if session.cookies:
            await context.add_cookies(session.cookies)
            logger.debug(f"Restored {len(session.cookies)} cookies for crawler {session.crawler_id}")
            restored = True

        if session.local_storage or session.session_storage:
            await context.add_init_script(script=build_storage_script(session))
            logger.debug(
                f"Restored {len(session.local_storage)} localStorage, "
                f"{len(session.session_storage)} sessionStorage items"
            )
            restored = True

        if restored:
            logger.info(f"Session restored for crawler {session.crawler_id}")
        return restored


def build_storage_script(session: SessionData) -> str:
    """Init script that seeds web storage for the session's origin."""
    payload = json.dumps({
        "origin": session.origin,
        "local": session.local_storage,
        "session": session.session_storage,
    })
    return f"""
        (() => {{
            const data = {payload};
            if (data.origin && window.location.origin !== data.origin) return;
            try {{
                for (const item of data.local) {{
                    if (localStorage.getItem(item.name) === null) localStorage.setItem(item.name, item.value);
                }}
            }} catch (e) {{}}
            try {{
                for (const item of data.session) {{
                    if (sessionStorage.getItem(item.name) === null) sessionStorage.setItem(item.name, item.value);
                }}
            }} catch (e) {{}}
        }})();
    """
