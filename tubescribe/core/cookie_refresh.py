"""
Cookie refresh via a headless browser login.

The login is a small state machine. Required steps fail with LoginTimeout
when their page element never shows up; optional steps (the "Sign in"
button, consent/continue screens) wait a few seconds and are skipped when
absent. The browser is closed on every exit path.

CredentialRefresher coalesces concurrent refreshes: one harvest runs per
cookie file at a time and everyone waiting on it gets its result.
"""

import logging
import threading
from typing import Callable, Optional

from tubescribe.core.constants import (
    LoginStep, YOUTUBE_HOME_URL, GOOGLE_LOGIN_URL, COOKIE_HARVEST_URLS,
    LOGIN_NAVIGATION_TIMEOUT_SEC, OPTIONAL_STEP_TIMEOUT_SEC, BROWSER_ARGS,
    USER_AGENT, REFRESH_MAX_ATTEMPTS, RETRY_BASE_DELAY_SEC,
)
from tubescribe.core.cookie_store import (
    CredentialBundle, CredentialStore, records_from_browser,
)
from tubescribe.core.error_codes import (
    JobError, CredentialRefreshFailed, MissingCredentials, LoginFailed, LoginTimeout,
)
from tubescribe.core.retry import retry_with_backoff
from tubescribe.core.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# Selectors
SIGN_IN_BUTTON = 'a[aria-label="Sign in"], ytd-button-renderer a[href*="ServiceLogin"]'
IDENTIFIER_INPUT = '#identifierId, input[type="email"]'
IDENTIFIER_NEXT = '#identifierNext'
SECRET_INPUT = 'input[type="password"]'
SECRET_NEXT = '#passwordNext'
CONSENT_BUTTONS = [
    'button[aria-label*="Accept"]',
    'button:has-text("Continue")',
    'button:has-text("Not now")',
]


# ── Browser drivers ───────────────────────────────────────────────────

class BrowserDriver:
    """
    The handful of browser operations the login flow needs.
    Timeouts are in seconds. goto/wait_for_load raise LoginTimeout;
    wait_for returns False when the element does not appear in time.
    """

    def launch(self):
        raise NotImplementedError

    def goto(self, url: str, timeout: float):
        raise NotImplementedError

    def wait_for(self, selector: str, timeout: float) -> bool:
        raise NotImplementedError

    def wait_for_load(self, timeout: float):
        raise NotImplementedError

    def fill(self, selector: str, text: str):
        raise NotImplementedError

    def click(self, selector: str):
        raise NotImplementedError

    def cookies(self, urls: list[str]) -> list[dict]:
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class PlaywrightBrowserDriver(BrowserDriver):
    """Headless Chromium through playwright.sync_api."""

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._pw = None
        self._browser = None
        self._context = None
        self._page = None

    def launch(self):
        from playwright.sync_api import sync_playwright

        self._pw = sync_playwright().start()
        self._browser = self._pw.chromium.launch(headless=self.headless, args=BROWSER_ARGS)
        self._context = self._browser.new_context(user_agent=USER_AGENT, locale="en-US")
        self._page = self._context.new_page()

    def goto(self, url: str, timeout: float):
        from playwright.sync_api import TimeoutError as PlaywrightTimeout
        try:
            self._page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
        except PlaywrightTimeout as e:
            raise LoginTimeout(f"Navigation to {url} timed out") from e

    def wait_for(self, selector: str, timeout: float) -> bool:
        from playwright.sync_api import TimeoutError as PlaywrightTimeout
        try:
            self._page.wait_for_selector(selector, state="visible", timeout=timeout * 1000)
            return True
        except PlaywrightTimeout:
            return False

    def wait_for_load(self, timeout: float):
        from playwright.sync_api import TimeoutError as PlaywrightTimeout
        try:
            self._page.wait_for_load_state("networkidle", timeout=timeout * 1000)
        except PlaywrightTimeout as e:
            raise LoginTimeout("Page did not settle after login") from e

    def fill(self, selector: str, text: str):
        self._page.fill(selector, text)

    def click(self, selector: str):
        self._page.click(selector)

    def cookies(self, urls: list[str]) -> list[dict]:
        return self._context.cookies(urls)

    def close(self):
        for closer in (self._context, self._browser):
            if closer is not None:
                try:
                    closer.close()
                except Exception as e:
                    logger.warning("Browser close failed: %s", e)
        if self._pw is not None:
            self._pw.stop()
        self._pw = self._browser = self._context = self._page = None


# ── Login state machine ───────────────────────────────────────────────

_TRANSITIONS = {
    LoginStep.LAUNCH: LoginStep.NAVIGATE_HOME,
    LoginStep.NAVIGATE_HOME: LoginStep.CLICK_SIGN_IN,
    LoginStep.CLICK_SIGN_IN: LoginStep.NAVIGATE_LOGIN,
    LoginStep.NAVIGATE_LOGIN: LoginStep.SUBMIT_IDENTIFIER,
    LoginStep.SUBMIT_IDENTIFIER: LoginStep.SUBMIT_SECRET,
    LoginStep.SUBMIT_SECRET: LoginStep.HANDLE_CONSENT,
    LoginStep.HANDLE_CONSENT: LoginStep.EXTRACT_COOKIES,
    LoginStep.EXTRACT_COOKIES: LoginStep.PERSIST,
    LoginStep.PERSIST: None,
}


class LoginFlow:
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"

    def __init__(self, driver: BrowserDriver, email: str, secret: str,
                 persist: Callable[[CredentialBundle], None] | None = None,
                 navigation_timeout: float = LOGIN_NAVIGATION_TIMEOUT_SEC,
                 optional_timeout: float = OPTIONAL_STEP_TIMEOUT_SEC):
        self.driver = driver
        self.email = email
        self.secret = secret
        self.persist = persist
        self.navigation_timeout = navigation_timeout
        self.optional_timeout = optional_timeout
        self.trace: list[tuple[str, str]] = []
        self.bundle: Optional[CredentialBundle] = None
        self._handlers = {
            LoginStep.LAUNCH: self._launch,
            LoginStep.NAVIGATE_HOME: self._navigate_home,
            LoginStep.CLICK_SIGN_IN: self._click_sign_in,
            LoginStep.NAVIGATE_LOGIN: self._navigate_login,
            LoginStep.SUBMIT_IDENTIFIER: self._submit_identifier,
            LoginStep.SUBMIT_SECRET: self._submit_secret,
            LoginStep.HANDLE_CONSENT: self._handle_consent,
            LoginStep.EXTRACT_COOKIES: self._extract_cookies,
            LoginStep.PERSIST: self._persist,
        }

    def run(self) -> CredentialBundle:
        step = LoginStep.LAUNCH
        try:
            while step is not None:
                try:
                    outcome = self._handlers[step]()
                except Exception:
                    self.trace.append((step, self.FAILED))
                    logger.warning("Login step %s failed", step)
                    raise
                self.trace.append((step, outcome))
                logger.debug("Login step %s: %s", step, outcome)
                step = _TRANSITIONS[step]
        finally:
            try:
                self.driver.close()
            except Exception as e:
                logger.warning("Browser close raised: %s", e)
            self.trace.append((LoginStep.CLOSE, self.OK))
        return self.bundle

    def outcome(self, step: str) -> Optional[str]:
        for s, o in self.trace:
            if s == step:
                return o
        return None

    # ── Steps ─────────────────────────────────────────────────────────

    def _launch(self):
        self.driver.launch()
        return self.OK

    def _navigate_home(self):
        self.driver.goto(YOUTUBE_HOME_URL, self.navigation_timeout)
        return self.OK

    def _click_sign_in(self):
        if not self.driver.wait_for(SIGN_IN_BUTTON, self.optional_timeout):
            return self.SKIPPED
        self.driver.click(SIGN_IN_BUTTON)
        return self.OK

    def _navigate_login(self):
        # The sign-in click may already have landed on the form
        if self.driver.wait_for(IDENTIFIER_INPUT, self.optional_timeout):
            return self.SKIPPED
        self.driver.goto(GOOGLE_LOGIN_URL, self.navigation_timeout)
        return self.OK

    def _submit_identifier(self):
        self._require(IDENTIFIER_INPUT, "email field")
        self.driver.fill(IDENTIFIER_INPUT, self.email)
        self.driver.click(IDENTIFIER_NEXT)
        return self.OK

    def _submit_secret(self):
        self._require(SECRET_INPUT, "password field")
        self.driver.fill(SECRET_INPUT, self.secret)
        self.driver.click(SECRET_NEXT)
        self.driver.wait_for_load(self.navigation_timeout)
        return self.OK

    def _handle_consent(self):
        clicked = False
        for selector in CONSENT_BUTTONS:
            if self.driver.wait_for(selector, self.optional_timeout):
                self.driver.click(selector)
                clicked = True
        return self.OK if clicked else self.SKIPPED

    def _extract_cookies(self):
        raw = self.driver.cookies(COOKIE_HARVEST_URLS)
        records = records_from_browser(raw or [])
        if not records:
            raise LoginFailed("Login flow finished but no cookies were set")
        self.bundle = CredentialBundle(records)
        logger.info("Harvested %d cookies", len(records))
        return self.OK

    def _persist(self):
        if self.persist is None:
            return self.SKIPPED
        self.persist(self.bundle)
        return self.OK

    def _require(self, selector: str, what: str):
        if not self.driver.wait_for(selector, self.navigation_timeout):
            raise LoginTimeout(f"Timed out waiting for the {what}")


def harvest_cookies(email: str, secret: str,
                    driver_factory: Callable[[], BrowserDriver] | None = None,
                    headless: bool = True) -> CredentialBundle:
    """Log in with a fresh browser session and return the harvested cookies."""
    driver = driver_factory() if driver_factory else PlaywrightBrowserDriver(headless=headless)
    return LoginFlow(driver, email, secret).run()


# ── Refresher ─────────────────────────────────────────────────────────

class CredentialRefresher:
    """
    Keeps the CredentialStore populated with a valid bundle.

    generation increases every time a harvest is persisted. A job that saw
    an authorization failure passes the generation it downloaded with; if
    someone refreshed since then the job reuses that bundle instead of
    logging in again.
    """

    def __init__(self, store: CredentialStore,
                 credentials: Callable[[], tuple[str, Optional[str]]],
                 harvester: Callable[[str, str], CredentialBundle] | None = None,
                 max_attempts: int = REFRESH_MAX_ATTEMPTS,
                 base_delay: float = RETRY_BASE_DELAY_SEC,
                 sleep: Callable[[float], None] | None = None):
        self.store = store
        self._credentials = credentials
        self._harvester = harvester or harvest_cookies
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._flight = SingleFlight()
        self._lock = threading.Lock()
        self._generation = 0
        self.harvest_count = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def ensure_valid(self) -> CredentialBundle:
        """Return a valid bundle, logging in first if the stored one is unusable."""
        seen = self.generation
        bundle = self.store.load()
        if self.store.is_valid(bundle):
            return bundle.copy()
        logger.info("Stored cookies missing or stale, refreshing")
        return self.refresh(seen_generation=seen)

    def refresh(self, seen_generation: int | None = None) -> CredentialBundle:
        """
        Harvest and persist a new bundle. Concurrent callers share one
        in-flight harvest. With seen_generation, a refresh that already
        completed after that generation is reused.
        """
        def run():
            if seen_generation is not None and self.generation > seen_generation:
                bundle = self.store.load()
                if self.store.is_valid(bundle):
                    logger.info("Cookies already refreshed by another job")
                    return bundle
            return self._harvest_and_persist()

        return self._flight.do(str(self.store.path), run).copy()

    def refresh_if_stale(self, force: bool = False) -> CredentialBundle:
        if force:
            return self.refresh()
        return self.ensure_valid()

    def _harvest_and_persist(self) -> CredentialBundle:
        email, secret = self._credentials()
        if not email or not secret:
            raise MissingCredentials(
                "Login email or password not configured "
                "(set YOUTUBE_EMAIL / YOUTUBE_PASSWORD)"
            )

        def attempt(ctx):
            with self._lock:
                self.harvest_count += 1
            logger.info("Harvesting cookies (attempt %d/%d)", ctx.attempt, ctx.max_attempts)
            return self._harvester(email, secret)

        try:
            bundle = retry_with_backoff(
                attempt,
                operation="credential refresh",
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                is_retryable=lambda e: isinstance(e, LoginTimeout),
                sleep=self._sleep,
            )
        except JobError:
            raise
        except Exception as e:
            logger.error("Cookie harvest crashed: %s", e, exc_info=True)
            raise CredentialRefreshFailed(f"Cookie harvest failed: {type(e).__name__}") from e

        if bundle is None or len(bundle) == 0:
            raise LoginFailed("Login flow produced no cookies")
        if not self.store.is_valid(bundle):
            raise LoginFailed(
                f"Login did not yield auth cookies (got {len(bundle)} cookies: "
                f"{', '.join(sorted(set(bundle.names()))[:10])})"
            )

        self.store.save(bundle)
        with self._lock:
            self._generation += 1
        logger.info("Cookie refresh complete (generation %d)", self._generation)
        return bundle
