"""Tests for login strategies and authentication detection."""

import pytest

from a11y_crawler.authentication import (
    AuthenticationHandler,
    FormLoginDetector,
    LandingPageDetector,
    substitute_placeholders,
    url_has_login_keyword,
)
from a11y_crawler.config import CrawlerConfig
from a11y_crawler.constants import LOGIN_URL_KEYWORDS
from a11y_crawler.models import AuthOutcome
from tests.fakes import FakeContext, FakeSite, page_html

BASE = "https://example.test"
LOGIN = f"{BASE}/login"

DASHBOARD = page_html(
    "Dashboard",
    '<nav><a href="/courses">Courses</a><a href="/logout">Log out</a></nav><main>Hi</main>',
)


def protected_site(**kwargs) -> FakeSite:
    return FakeSite(
        {f"{BASE}/": DASHBOARD, f"{BASE}/dashboard": DASHBOARD},
        protected=True,
        login_url=LOGIN,
        landing_url=f"{BASE}/dashboard",
        **kwargs,
    )


def basic_config(password: str = "secret", **overrides) -> CrawlerConfig:
    data = {
        "base_url": f"{BASE}/",
        "auth_type": "basic",
        "auth_credentials": {"username": "alice", "password": password},
        "auth_workflow": {
            "login_url": LOGIN,
            "username_selector": "#username",
            "password_selector": "#password",
            "submit_selector": "#submit",
        },
    }
    data.update(overrides)
    return CrawlerConfig(**data)


async def open_page(site: FakeSite):
    context = FakeContext(site, {})
    return context, await context.new_page()


def test_substitute_placeholders():
    creds = {"username": "alice", "tenant": "north"}
    assert substitute_placeholders("{{username}}@{{ tenant }}", creds) == "alice@north"
    assert substitute_placeholders("{{missing}}", creds) == ""


@pytest.mark.parametrize("url", [
    "https://example.test/login",
    "https://example.test/users/sign_in?next=/",
    "https://idp.example.test/idp/profile/SAML2/Redirect/SSO",
    "https://example.test/oauth2/authorize",
    "https://example.test/Shibboleth.sso/Login",
])
def test_login_url_keywords_match(url):
    assert url_has_login_keyword(url, LOGIN_URL_KEYWORDS)


@pytest.mark.parametrize("url", [
    "https://rapidpay.example/authors",
    "https://oauth.example.test/",
    "https://example.test/blog/catalog",
    "https://example.test/shop/ssortment",
])
def test_login_url_keywords_ignore_host_and_substrings(url):
    assert not url_has_login_keyword(url, LOGIN_URL_KEYWORDS)


class TestDetectors:
    """Tests for AuthDetector implementations."""

    @pytest.mark.asyncio
    async def test_landing_login_url(self):
        context, page = await open_page(protected_site())
        await page.goto(f"{BASE}/")

        assert page.url == LOGIN
        assert await LandingPageDetector().detect(page) == AuthOutcome.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_landing_login_title(self):
        site = FakeSite({f"{BASE}/portal": page_html("Institutional Login", "<p>Choose provider</p>")})
        context, page = await open_page(site)
        await page.goto(f"{BASE}/portal")

        assert await LandingPageDetector().detect(page) == AuthOutcome.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_landing_authenticated_elements(self):
        site = FakeSite({f"{BASE}/": DASHBOARD})
        context, page = await open_page(site)
        await page.goto(f"{BASE}/")

        assert await LandingPageDetector().detect(page) == AuthOutcome.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_landing_keyword_in_host_or_word_is_not_login(self):
        """Test an app page whose host and path merely contain login words."""
        site = FakeSite({"https://rapidpay.example/authors": DASHBOARD})
        context, page = await open_page(site)
        await page.goto("https://rapidpay.example/authors")

        assert await LandingPageDetector().detect(page) == AuthOutcome.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_landing_substantial_body(self):
        site = FakeSite({f"{BASE}/": page_html("Home", "<p>" + "lorem ipsum " * 200 + "</p>")})
        context, page = await open_page(site)
        await page.goto(f"{BASE}/")

        assert await LandingPageDetector().detect(page) == AuthOutcome.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_landing_unknown(self):
        """Test a sparse page without signals is neither state."""
        site = FakeSite({f"{BASE}/": page_html("Home", "<p>Hello</p>")})
        context, page = await open_page(site)
        await page.goto(f"{BASE}/")

        assert await LandingPageDetector().detect(page) == AuthOutcome.UNKNOWN

    @pytest.mark.asyncio
    async def test_form_detector_password_field(self):
        site = FakeSite({f"{BASE}/account": page_html("Account", '<input type="password">')})
        context, page = await open_page(site)
        await page.goto(f"{BASE}/account")

        assert await FormLoginDetector().detect(page) == AuthOutcome.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_detector_error_is_unknown(self):
        class BrokenPage:
            url = f"{BASE}/"

            async def title(self):
                raise RuntimeError("Target closed")

        assert await LandingPageDetector().detect(BrokenPage()) == AuthOutcome.UNKNOWN


class TestAuthenticationHandler:
    """Tests for AuthenticationHandler strategies."""

    @pytest.mark.asyncio
    async def test_none_strategy(self):
        context, page = await open_page(protected_site())
        handler = AuthenticationHandler(CrawlerConfig(base_url=BASE))

        assert await handler.authenticate(context, page) is None
        assert page.url == "about:blank"

    @pytest.mark.asyncio
    async def test_basic_success(self):
        context, page = await open_page(protected_site())
        handler = AuthenticationHandler(basic_config())

        result = await handler.authenticate(context, page)

        assert result.outcome == AuthOutcome.AUTHENTICATED
        assert result.successful is True
        assert result.final_url == f"{BASE}/dashboard"
        assert page.filled == {"#username": "alice", "#password": "secret"}
        assert context.has_cookie("session")

    @pytest.mark.asyncio
    async def test_basic_wrong_password(self):
        context, page = await open_page(protected_site())
        handler = AuthenticationHandler(basic_config(password="wrong"))

        result = await handler.authenticate(context, page)

        assert result.outcome == AuthOutcome.NOT_AUTHENTICATED
        assert result.successful is False
        assert not context.has_cookie("session")

    @pytest.mark.asyncio
    async def test_basic_missing_selectors_skipped(self):
        """Test absent form fields are skipped, not fatal."""
        config = basic_config(auth_workflow={
            "login_url": LOGIN,
            "username_selector": "#email",
            "password_selector": "#password",
            "submit_selector": "#go",
        })
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.error is None
        assert page.filled == {"#password": "secret"}
        assert result.outcome == AuthOutcome.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_basic_falls_back_to_base_url(self):
        config = basic_config(auth_workflow={
            "username_selector": "#username",
            "password_selector": "#password",
            "submit_selector": "#submit",
        })
        site = protected_site()
        context, page = await open_page(site)

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert site.visits[0] == f"{BASE}/"
        assert result.outcome == AuthOutcome.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_navigation_error_becomes_result(self):
        site = protected_site(timeouts={LOGIN})
        context, page = await open_page(site)

        result = await AuthenticationHandler(basic_config()).authenticate(context, page)

        assert result.outcome == AuthOutcome.NOT_AUTHENTICATED
        assert "Timeout" in result.error

    @pytest.mark.asyncio
    async def test_custom_steps(self):
        config = CrawlerConfig(
            base_url=f"{BASE}/",
            auth_type="custom",
            auth_credentials={"username": "alice", "password": "secret"},
            auth_workflow={"steps": [
                {"action": "goto", "url": LOGIN},
                {"action": "wait-for-selector", "selector": "#username"},
                {"action": "fill", "selector": "#username", "value": "{{username}}"},
                {"action": "fill", "selector": "#password", "credential": "password"},
                {"action": "click", "selector": "#submit"},
            ]},
        )
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.strategy == "custom"
        assert result.outcome == AuthOutcome.AUTHENTICATED
        assert page.filled == {"#username": "alice", "#password": "secret"}

    @pytest.mark.asyncio
    async def test_custom_step_failure(self):
        config = CrawlerConfig(
            base_url=f"{BASE}/",
            auth_type="custom",
            auth_workflow={"steps": [
                {"action": "goto", "url": LOGIN},
                {"action": "click", "selector": "#sso-button", "timeout": 500},
            ]},
        )
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.outcome == AuthOutcome.NOT_AUTHENTICATED
        assert "step 2 (click #sso-button)" in result.error

    @pytest.mark.asyncio
    async def test_custom_without_steps(self):
        config = CrawlerConfig(base_url=f"{BASE}/", auth_type="custom")
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.successful is False
        assert "no steps" in result.error

    @pytest.mark.asyncio
    async def test_federated_not_authenticated_without_session(self, session_store):
        config = CrawlerConfig(base_url=f"{BASE}/", auth_type="federated")
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config, session_store).authenticate(context, page)

        assert result.outcome == AuthOutcome.NOT_AUTHENTICATED
        assert result.session_restored is False
        assert LOGIN in result.error

    @pytest.mark.asyncio
    async def test_federated_restores_saved_session(self, session_store):
        """Test a redirect to login triggers a session restore and re-check."""
        config = CrawlerConfig(base_url=f"{BASE}/", auth_type="federated")
        session_store.save(
            config.crawler_id,
            {"cookies": [{"name": "session", "value": "ok", "domain": "example.test", "path": "/"}]},
            origin=BASE,
        )
        context, page = await open_page(protected_site())

        result = await AuthenticationHandler(config, session_store).authenticate(context, page)

        assert result.outcome == AuthOutcome.AUTHENTICATED
        assert result.session_restored is True
        assert page.url == f"{BASE}/"

    @pytest.mark.asyncio
    async def test_federated_already_authenticated(self):
        site = FakeSite({f"{BASE}/": DASHBOARD})
        context, page = await open_page(site)
        config = CrawlerConfig(base_url=f"{BASE}/", auth_type="sso")

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.outcome == AuthOutcome.AUTHENTICATED
        assert result.strategy == "federated"

    @pytest.mark.asyncio
    async def test_federated_unknown_is_flagged(self):
        site = FakeSite({f"{BASE}/": page_html("Home", "<p>Hello</p>")})
        context, page = await open_page(site)
        config = CrawlerConfig(base_url=f"{BASE}/", auth_type="federated")

        result = await AuthenticationHandler(config).authenticate(context, page)

        assert result.successful is None
        assert result.to_dict()["flagged"] is True

    @pytest.mark.asyncio
    async def test_restored_session_skips_login(self):
        site = protected_site()
        context, page = await open_page(site)
        await context.add_cookies([{"name": "session", "value": "ok", "domain": "example.test", "path": "/"}])

        result = await AuthenticationHandler(basic_config()).authenticate(
            context, page, session_restored=True
        )

        assert result.outcome == AuthOutcome.AUTHENTICATED
        assert result.session_restored is True
        assert LOGIN not in site.visits
        assert page.filled == {}
