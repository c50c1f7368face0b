"""Configuration for the site-discovery crawler.

Process-wide settings come from the environment (``.env`` supported).
Per-crawler settings are a frozen, validated ``CrawlerConfig``; loosely
typed values from storage are normalized here, before they reach the crawler.
"""
import base64
import binascii
import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from a11y_crawler.constants import (
    AUTH_STEP_TIMEOUT_MS,
    AUTHENTICATED_SELECTORS,
    DEFAULT_BROWSER_TYPE,
    DEFAULT_CONCURRENT_REQUESTS,
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_PAGES,
    DEFAULT_REQUEST_DELAY_MS,
    DEFAULT_USER_AGENT,
    DEFAULT_VIEWPORT,
    DEFAULT_WAIT_DURATION_MS,
    DEFAULT_WAIT_TIMEOUT_MS,
    LOGIN_TITLE_KEYWORDS,
    LOGIN_URL_KEYWORDS,
    NAVIGATION_TIMEOUT_MS,
    SUBSTANTIAL_BODY_LENGTH,
)
from a11y_crawler.utils.urls import origin_of

load_dotenv()  # Loads variables from .env file

logger = logging.getLogger(__name__)

# String values that storage layers use for "off"
FALSY_STRINGS = frozenset({"false", "0", "no", "off", "none", ""})


class ConfigurationError(ValueError):
    """Raised when a crawler configuration is missing or invalid."""


def coerce_flag(value: Any, default: bool = False) -> bool:
    """Normalize a loosely-typed boolean flag.

    ``False``, ``"false"``, ``0`` and friends are all off; ``None`` falls
    back to ``default``.
    """
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///a11y_crawler.db")

    # Identity used when evaluating robots.txt groups
    USER_AGENT = os.getenv("USER_AGENT", DEFAULT_USER_AGENT)

    HEADLESS = coerce_flag(os.getenv("HEADLESS"), default=True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE")


settings = Settings()


# =============================================================================
# Credentials
# =============================================================================

def encode_credentials(credentials: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Encode plain credentials into the opaque stored form.

    Args:
        credentials: Mapping such as ``{"username": ..., "password": ...}``

    Returns:
        ``{"encrypted": <base64 json>}``, or ``{}`` when there is nothing to store
    """
    if not credentials:
        return {}
    payload = json.dumps(credentials).encode("utf-8")
    return {"encrypted": base64.b64encode(payload).decode("ascii")}


def decode_credentials(encoded: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Decode the opaque stored form back into plain credentials."""
    if not encoded or "encrypted" not in encoded:
        return {}
    try:
        return json.loads(base64.b64decode(encoded["encrypted"]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Stored credentials could not be decoded: {e}")
        return {}


# =============================================================================
# Nested configuration models
# =============================================================================

class WaitCondition(BaseModel):
    """A readiness condition applied after each navigation."""

    model_config = ConfigDict(frozen=True)

    type: Literal["selector", "function", "timeout"]
    selector: Optional[str] = None
    state: Literal["attached", "detached", "visible", "hidden"] = "visible"
    function: Optional[str] = None
    duration: int = Field(default=DEFAULT_WAIT_DURATION_MS, ge=0)
    timeout: int = Field(default=DEFAULT_WAIT_TIMEOUT_MS, ge=0)

    @model_validator(mode="after")
    def _check_target(self) -> "WaitCondition":
        if self.type == "selector" and not self.selector:
            raise ValueError("selector wait condition requires 'selector'")
        if self.type == "function" and not self.function:
            raise ValueError("function wait condition requires 'function'")
        return self


class AuthStep(BaseModel):
    """One scripted login step for the ``custom`` strategy."""

    model_config = ConfigDict(frozen=True)

    action: Literal["goto", "fill", "click", "wait"]
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    credential: Optional[str] = None
    timeout: int = Field(default=AUTH_STEP_TIMEOUT_MS, ge=0)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower().replace("_", "-")
            if value in ("wait-for-selector", "waitforselector"):
                return "wait"
        return value

    @model_validator(mode="after")
    def _check_selector(self) -> "AuthStep":
        if self.action in ("fill", "click", "wait") and not self.selector:
            raise ValueError(f"'{self.action}' step requires 'selector'")
        return self


class AuthWorkflow(BaseModel):
    """Selectors and steps driving form-based and scripted login."""

    model_config = ConfigDict(frozen=True)

    login_url: Optional[str] = None
    username_selector: Optional[str] = None
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None
    steps: List[AuthStep] = Field(default_factory=list)


class FederatedConfig(BaseModel):
    """Heuristics for recognizing SSO login pages and authenticated areas."""

    model_config = ConfigDict(frozen=True)

    login_url_keywords: List[str] = Field(default_factory=lambda: list(LOGIN_URL_KEYWORDS))
    login_title_keywords: List[str] = Field(default_factory=lambda: list(LOGIN_TITLE_KEYWORDS))
    authenticated_selectors: List[str] = Field(default_factory=lambda: list(AUTHENTICATED_SELECTORS))
    min_body_length: int = Field(default=SUBSTANTIAL_BODY_LENGTH, ge=0)
    post_auth_wait_selector: Optional[str] = None


class UrlPattern(BaseModel):
    """An include or exclude regular expression applied to candidate URLs."""

    model_config = ConfigDict(frozen=True)

    type: Literal["include", "exclude"]
    regex: str

    @field_validator("regex")
    @classmethod
    def _compile(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid URL pattern {value!r}: {e}") from e
        return value


# =============================================================================
# Crawler configuration
# =============================================================================

class CrawlerConfig(BaseModel):
    """
    Immutable per-run configuration of one crawler.

    Created when a crawler is defined and replaced (never mutated) by
    ``with_updates`` between runs.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    crawler_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    project_id: Optional[str] = None
    base_url: str

    # Crawl boundaries and throttling
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1)
    max_depth: int = Field(default=DEFAULT_MAX_DEPTH, ge=0)
    concurrent_requests: int = Field(default=DEFAULT_CONCURRENT_REQUESTS, ge=1)
    request_delay_ms: int = Field(default=DEFAULT_REQUEST_DELAY_MS, ge=0)

    # Browser
    browser_type: Literal["chromium", "firefox", "webkit"] = DEFAULT_BROWSER_TYPE
    viewport_config: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    user_agent: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    navigation_timeout_ms: int = Field(default=NAVIGATION_TIMEOUT_MS, ge=1000)
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle"

    # Authentication
    auth_type: Literal["none", "basic", "federated", "custom"] = "none"
    auth_credentials: Dict[str, Any] = Field(default_factory=dict)
    auth_workflow: AuthWorkflow = Field(default_factory=AuthWorkflow)
    federated_config: FederatedConfig = Field(default_factory=FederatedConfig)

    # Scope and extraction
    url_patterns: List[UrlPattern] = Field(default_factory=list)
    wait_conditions: List[WaitCondition] = Field(default_factory=list)
    extraction_rules: Dict[str, str] = Field(default_factory=dict)
    javascript_execution: Dict[str, str] = Field(default_factory=dict)

    # Politeness and persistence
    respect_robots_txt: bool = True
    session_persistence: bool = True
    same_origin_only: bool = True
    use_sitemap: bool = False

    @field_validator("base_url", mode="before")
    @classmethod
    def _check_base_url(cls, value: Any) -> str:
        if not value or not isinstance(value, str):
            raise ValueError("base_url is required")
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got {value!r}")
        return value

    @field_validator(
        "respect_robots_txt", "session_persistence", "same_origin_only", "use_sitemap",
        mode="before",
    )
    @classmethod
    def _normalize_flag(cls, value: Any, info: ValidationInfo) -> bool:
        return coerce_flag(value, default=cls.model_fields[info.field_name].default)

    @field_validator("auth_type", mode="before")
    @classmethod
    def _normalize_auth_type(cls, value: Any) -> Any:
        if value is None:
            return "none"
        if isinstance(value, str):
            value = value.strip().lower()
            if value in ("saml", "sso"):
                return "federated"
        return value

    @field_validator("auth_credentials", mode="before")
    @classmethod
    def _encode_credentials(cls, value: Any) -> Dict[str, Any]:
        if not value:
            return {}
        if isinstance(value, dict) and set(value) == {"encrypted"}:
            return value
        return encode_credentials(value)

    @property
    def origin(self) -> str:
        """Scheme and host of the base URL, default port dropped."""
        return origin_of(self.base_url)

    def credentials(self) -> Dict[str, Any]:
        """Return the decoded login credentials."""
        return decode_credentials(self.auth_credentials)

    def with_updates(self, updates: Dict[str, Any]) -> "CrawlerConfig":
        """Return a new validated config with ``updates`` applied.

        The crawler identity cannot be changed.

        Raises:
            ConfigurationError: If the merged values are invalid
        """
        data = self.model_dump()
        data.update({k: v for k, v in updates.items() if k != "crawler_id"})
        return build_crawler_config(data)


def build_crawler_config(data: Dict[str, Any]) -> CrawlerConfig:
    """Validate a mapping into a CrawlerConfig.

    Raises:
        ConfigurationError: If the mapping is not a valid configuration
    """
    try:
        return CrawlerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid crawler configuration: {e}") from e


def load_crawler_config(source: Union[Dict[str, Any], str, Path]) -> CrawlerConfig:
    """Load a crawler configuration from a dict or a YAML/JSON file.

    A file may hold the configuration at top level or under a ``crawler`` key.

    Args:
        source: Mapping, or path to a ``.yaml``/``.yml``/``.json`` file

    Returns:
        Validated CrawlerConfig

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if isinstance(source, dict):
        return build_crawler_config(source)

    file_path = Path(source)
    if not file_path.exists():
        raise ConfigurationError(f"Config file not found: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            if file_path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read config file {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {file_path} does not contain a mapping")

    return build_crawler_config(data.get("crawler", data))
