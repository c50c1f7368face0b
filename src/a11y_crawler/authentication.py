"""
Authentication before crawling.

Runs one login strategy against the browser context before the first page
is crawled:

- ``basic``: fill and submit a username/password form
- ``federated``: observe the SSO landing state, restoring a saved session if
  the site redirects to an identity provider
- ``custom``: replay a scripted list of goto/fill/click/wait steps

Whether the context ended up authenticated is decided by a pluggable
``AuthDetector`` and reported as a three-valued ``AuthOutcome``. Failures
never escape the handler; they are returned as an ``AuthResult``.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlparse

from playwright.async_api import BrowserContext, Page

from a11y_crawler.config import AuthStep, CrawlerConfig, FederatedConfig
from a11y_crawler.constants import (
    AUTHENTICATED_TEXT_KEYWORDS,
    MAX_ERROR_MESSAGE_LENGTH,
    NETWORK_IDLE_TIMEOUT_MS,
)
from a11y_crawler.models import AuthOutcome, AuthResult
from a11y_crawler.utils.session_manager import SessionStore

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

BODY_TEXT_SCRIPT = "() => document.body ? document.body.innerText : ''"


class AuthenticationError(Exception):
    """Raised by a login strategy when a step cannot be completed."""


def substitute_placeholders(value: str, credentials: Dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders with credential values."""
    return PLACEHOLDER_PATTERN.sub(lambda m: str(credentials.get(m.group(1), "")), value)


def url_has_login_keyword(url: str, keywords: Iterable[str]) -> bool:
    """
    Check the path and query of a URL for login words.

    The host is ignored and keywords only match as whole words, so
    ``/users/sign_in`` and ``/oauth2/authorize`` match while
    ``/authors`` on ``rapidpay.example`` does not.
    """
    parsed = urlparse(url or "")
    target = f"{parsed.path}?{parsed.query}".lower()
    return any(
        re.search(rf"(?<![a-z]){re.escape(keyword.lower().strip('/'))}(?![a-z])", target)
        for keyword in keywords
        if keyword.strip("/")
    )


# =============================================================================
# Detectors
# =============================================================================

class AuthDetector(ABC):
    """
    Decides whether the current page is inside the authenticated area.

    Implement this class to plug in site-specific detection.
    """

    def __init__(self, federated_config: Optional[FederatedConfig] = None):
        self.federated_config = federated_config or FederatedConfig()

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def _detect(self, page: Page) -> AuthOutcome:
        pass

    async def detect(self, page: Page) -> AuthOutcome:
        """Inspect the page; detection errors yield ``UNKNOWN``."""
        try:
            outcome = await self._detect(page)
        except Exception as e:
            logger.warning(f"{self.name} detector could not inspect {page.url}: {e}")
            return AuthOutcome.UNKNOWN
        logger.debug(f"{self.name} detector: {outcome.value} at {page.url}")
        return outcome

    async def is_login_page(self, page: Page) -> bool:
        """True when the URL or title looks like a login or IdP page."""
        if url_has_login_keyword(page.url, self.federated_config.login_url_keywords):
            return True
        title = (await page.title() or "").lower()
        return any(keyword in title for keyword in self.federated_config.login_title_keywords)


class FormLoginDetector(AuthDetector):
    """After a form login: authenticated once no login form is showing."""

    @property
    def name(self) -> str:
        return "form"

    async def _detect(self, page: Page) -> AuthOutcome:
        if await self.is_login_page(page):
            return AuthOutcome.NOT_AUTHENTICATED
        if await page.query_selector("input[type='password']") is not None:
            return AuthOutcome.NOT_AUTHENTICATED
        return AuthOutcome.AUTHENTICATED


class LandingPageDetector(AuthDetector):
    """
    For SSO landings: login-page signals mean not authenticated; navigation,
    dashboard or logout elements, or a substantial body, mean authenticated.
    Anything else is unknown.
    """

    @property
    def name(self) -> str:
        return "landing"

    async def _detect(self, page: Page) -> AuthOutcome:
        if await self.is_login_page(page):
            return AuthOutcome.NOT_AUTHENTICATED

        for selector in self.federated_config.authenticated_selectors:
            if await page.query_selector(selector) is not None:
                return AuthOutcome.AUTHENTICATED

        body_text = await page.evaluate(BODY_TEXT_SCRIPT) or ""
        lowered = body_text.lower()
        if any(keyword in lowered for keyword in AUTHENTICATED_TEXT_KEYWORDS):
            return AuthOutcome.AUTHENTICATED
        if len(body_text) > self.federated_config.min_body_length:
            return AuthOutcome.AUTHENTICATED

        return AuthOutcome.UNKNOWN


# =============================================================================
# Handler
# =============================================================================

class AuthenticationHandler:
    """Executes the configured login strategy once per run."""

    def __init__(
        self,
        config: CrawlerConfig,
        session_store: Optional[SessionStore] = None,
        detector: Optional[AuthDetector] = None,
    ):
        """
        Initialize handler.

        Args:
            config: Crawler configuration
            session_store: Store used by the federated strategy to restore a
                saved session
            detector: Optional detector overriding the strategy default
        """
        self.config = config
        self.session_store = session_store
        if detector is None:
            if config.auth_type == "federated":
                detector = LandingPageDetector(config.federated_config)
            else:
                detector = FormLoginDetector(config.federated_config)
        self.detector = detector

    async def authenticate(
        self,
        context: BrowserContext,
        page: Page,
        session_restored: bool = False,
    ) -> Optional[AuthResult]:
        """
        Authenticate the browsing context.

        Args:
            context: Browser context the crawl will use
            page: Page to drive the login on
            session_restored: A saved session was already applied to the context

        Returns:
            AuthResult, or None when the crawler needs no authentication
        """
        strategy = self.config.auth_type
        if strategy == "none":
            return None

        logger.info(f"Authenticating with '{strategy}' strategy")
        try:
            if strategy == "federated":
                result = await self._federated(context, page, session_restored)
            else:
                result = await self._already_authenticated(page, strategy, session_restored)
                if result is None:
                    if strategy == "basic":
                        await self._basic(page)
                    else:
                        await self._custom(page)
                    result = AuthResult(
                        strategy=strategy,
                        outcome=await self.detector.detect(page),
                        session_restored=session_restored,
                        final_url=page.url,
                    )
        except Exception as e:
            message = (str(e) or type(e).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
            logger.warning(f"⚠️  Authentication failed ({strategy}): {message}")
            return AuthResult(
                strategy=strategy,
                outcome=AuthOutcome.NOT_AUTHENTICATED,
                error=message,
                session_restored=session_restored,
                final_url=page.url,
            )

        if result.outcome == AuthOutcome.AUTHENTICATED:
            logger.info(f"✓ Authenticated ({strategy}) at {result.final_url}")
        elif result.outcome == AuthOutcome.UNKNOWN:
            logger.warning(f"⚠️  Authentication state unknown ({strategy}); crawling anyway")
        else:
            logger.warning(f"⚠️  Not authenticated ({strategy}); crawling reachable content only")
        return result

    async def _already_authenticated(
        self,
        page: Page,
        strategy: str,
        session_restored: bool,
    ) -> Optional[AuthResult]:
        """With a restored session, skip the login when it is still valid."""
        if not session_restored:
            return None
        await self._goto(page, self.config.base_url)
        if await self.detector.detect(page) != AuthOutcome.AUTHENTICATED:
            logger.info("Restored session is not authenticated, logging in")
            return None
        logger.info("Restored session is still valid, skipping login")
        return AuthResult(
            strategy=strategy,
            outcome=AuthOutcome.AUTHENTICATED,
            session_restored=True,
            final_url=page.url,
        )

    async def _goto(self, page: Page, url: str, timeout: Optional[int] = None) -> None:
        await page.goto(
            url,
            wait_until="load",
            timeout=timeout or self.config.navigation_timeout_ms,
        )
        await self._wait_for_network_idle(page)

    @staticmethod
    async def _wait_for_network_idle(page: Page) -> None:
        try:
            await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
        except Exception as e:
            logger.debug(f"Network did not settle on {page.url}, continuing: {e}")

    async def _basic(self, page: Page) -> None:
        workflow = self.config.auth_workflow
        credentials = self.config.credentials()

        await self._goto(page, workflow.login_url or self.config.base_url)

        fields = (
            ("username", workflow.username_selector),
            ("password", workflow.password_selector),
        )
        for field_name, selector in fields:
            if selector and await page.query_selector(selector) is not None:
                await page.fill(selector, str(credentials.get(field_name, "")))
            else:
                logger.warning(f"{field_name} field not found ({selector}), skipping")

        submit = workflow.submit_selector
        if submit and await page.query_selector(submit) is not None:
            await page.click(submit)
        else:
            logger.warning(f"Submit button not found ({submit}), skipping")

        await self._wait_for_network_idle(page)

    async def _custom(self, page: Page) -> None:
        credentials = self.config.credentials()
        steps = self.config.auth_workflow.steps
        if not steps:
            raise AuthenticationError("custom authentication has no steps")

        for index, step in enumerate(steps, start=1):
            try:
                await self._run_step(page, step, credentials)
            except Exception as e:
                raise AuthenticationError(
                    f"step {index} ({step.action} {step.selector or step.url or ''}) failed: {e}"
                ) from e
            logger.debug(f"Auth step {index}/{len(steps)} ({step.action}) done")

        await self._wait_for_network_idle(page)

    async def _run_step(self, page: Page, step: AuthStep, credentials: Dict[str, Any]) -> None:
        if step.action == "goto":
            url = substitute_placeholders(step.url or self.config.base_url, credentials)
            await page.goto(url, wait_until="load", timeout=step.timeout)
        elif step.action == "fill":
            if step.credential:
                value = str(credentials.get(step.credential, ""))
            else:
                value = substitute_placeholders(step.value or "", credentials)
            await page.fill(step.selector, value, timeout=step.timeout)
        elif step.action == "click":
            await page.click(step.selector, timeout=step.timeout)
        elif step.action == "wait":
            await page.wait_for_selector(step.selector, timeout=step.timeout)

    async def _federated(
        self,
        context: BrowserContext,
        page: Page,
        session_restored: bool,
    ) -> AuthResult:
        await self._goto(page, self.config.base_url)
        await self._wait_for_landing(page)
        outcome = await self.detector.detect(page)

        if outcome == AuthOutcome.NOT_AUTHENTICATED and not session_restored:
            session_restored = await self._restore_session(context, page)
            if session_restored:
                outcome = await self.detector.detect(page)
                # Off the login page after restore counts as authenticated
                if outcome == AuthOutcome.UNKNOWN:
                    outcome = AuthOutcome.AUTHENTICATED

        result = AuthResult(
            strategy="federated",
            outcome=outcome,
            session_restored=session_restored,
            final_url=page.url,
        )
        if outcome == AuthOutcome.NOT_AUTHENTICATED:
            result.error = f"Landed on login page: {page.url}"
        return result

    async def _wait_for_landing(self, page: Page) -> None:
        selector = self.config.federated_config.post_auth_wait_selector
        if not selector:
            return
        try:
            await page.wait_for_selector(selector, timeout=NETWORK_IDLE_TIMEOUT_MS)
        except Exception as e:
            logger.debug(f"Post-auth selector {selector} not found: {e}")

    async def _restore_session(self, context: BrowserContext, page: Page) -> bool:
        if self.session_store is None:
            return False
        session = self.session_store.load(self.config.crawler_id)
        if session is None:
            logger.info("No saved session to restore")
            return False
        if not await self.session_store.apply(context, session):
            return False
        # The current page is the IdP; go back to the app with the restored state
        await self._goto(page, self.config.base_url)
        await self._wait_for_landing(page)
        return True
