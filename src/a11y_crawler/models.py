"""Data models for crawl runs and discovered pages."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Lifecycle of a crawl run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class AuthOutcome(str, Enum):
    """Result of checking whether the browsing context is authenticated."""

    AUTHENTICATED = "authenticated"
    NOT_AUTHENTICATED = "not_authenticated"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FrontierItem:
    """A queued page: canonical URL, BFS depth and the page that linked to it."""

    url: str
    depth: int
    parent_url: Optional[str] = None
    fragment: str = ""
    discovered_from: Optional[str] = None


@dataclass
class AuthResult:
    """Outcome of one authentication attempt."""

    strategy: str
    outcome: AuthOutcome
    error: Optional[str] = None
    session_restored: bool = False
    final_url: Optional[str] = None
    completed_at: datetime = field(default_factory=datetime.now)

    @property
    def successful(self) -> Optional[bool]:
        """True/False for a definite outcome, None when it could not be told."""
        if self.outcome == AuthOutcome.UNKNOWN:
            return None
        return self.outcome == AuthOutcome.AUTHENTICATED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "strategy": self.strategy,
            "outcome": self.outcome.value,
            "session_restored": self.session_restored,
            "final_url": self.final_url,
            "completed_at": self.completed_at.isoformat(),
        }
        if self.error:
            data["error"] = self.error
        if self.outcome == AuthOutcome.UNKNOWN:
            data["flagged"] = True
        return data


@dataclass
class DiscoveredPage:
    """One crawled URL within a run."""

    run_id: str
    crawler_id: str
    url: str
    depth: int = 0
    parent_url: Optional[str] = None
    discovered_from: Optional[str] = None
    title: str = ""
    description: str = ""
    content_type: str = "text/html"
    status_code: int = 0
    response_time_ms: int = 0
    content_hash: str = ""
    links: List[str] = field(default_factory=list)

    # Structural signals
    has_forms: bool = False
    has_login_form: bool = False
    has_search_form: bool = False
    form_count: int = 0
    image_count: int = 0
    link_count: int = 0

    extracted: Dict[str, Optional[str]] = field(default_factory=dict)
    custom_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    first_crawled_at: datetime = field(default_factory=datetime.now)
    last_crawled_at: datetime = field(default_factory=datetime.now)

    @property
    def failed(self) -> bool:
        return self.status_code == 0 or self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["first_crawled_at"] = self.first_crawled_at.isoformat()
        data["last_crawled_at"] = self.last_crawled_at.isoformat()
        return data


@dataclass
class CrawlRun:
    """One execution of a crawler configuration."""

    crawler_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    triggered_by: str = "manual"
    current_url: Optional[str] = None
    current_depth: int = 0
    queue_size: int = 0
    pages_discovered: int = 0
    pages_crawled: int = 0
    pages_failed: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    auth_successful: Optional[bool] = None
    authentication_data: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, message: str, **details: Any) -> None:
        """Append an error entry with a timestamp."""
        entry = {"message": message, "timestamp": datetime.now().isoformat()}
        entry.update(details)
        self.errors.append(entry)

    def progress(self) -> Dict[str, Any]:
        """Snapshot polled or streamed by callers while the run is live."""
        return {
            "run_id": self.run_id,
            "crawler_id": self.crawler_id,
            "status": self.status.value,
            "current_url": self.current_url,
            "current_depth": self.current_depth,
            "queue_size": self.queue_size,
            "pages_discovered": self.pages_discovered,
            "pages_crawled": self.pages_crawled,
            "pages_failed": self.pages_failed,
            "errors": list(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.progress()
        data.update({
            "triggered_by": self.triggered_by,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "auth_successful": self.auth_successful,
            "authentication_data": self.authentication_data,
        })
        return data
