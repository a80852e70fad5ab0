"""
Browser automation port for the display portal.

PortalSession is the only place that talks to Playwright.  Everything it
raises is translated into displaypush.errors so the worker stays engine
agnostic:
  PlaywrightTimeout during a wait  → WaitTimeout
  click blocked by actionability   → ControlNotInteractable

One session = one browser + one context + one page, owned by exactly one
job.  Playwright's sync API binds objects to the thread that created them,
so a session must be opened, used and closed on the same worker thread.

Usage:
    with PortalSession(config) as session:
        dashboard_url = login(session, config, credentials)
        session.select(config["selectors"]["display"], "12")
"""

import logging
import re
from urllib.parse import urljoin

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout
from playwright.sync_api import sync_playwright

from displaypush.errors import AuthenticationFailed, ControlNotInteractable, WaitTimeout
from displaypush.utils import capture_diagnostics, scaled_timeout

logger = logging.getLogger("displaypush")

# Per-attempt click budget; the worker owns the retry loop.
CLICK_ATTEMPT_TIMEOUT = 2_000

# Fragments of Playwright actionability errors for a present-but-blocked control.
_NOT_INTERACTABLE_MARKERS = (
    "not clickable",
    "not enabled",
    "not visible",
    "not stable",
    "intercepts pointer events",
    "outside of the viewport",
)

_BACKGROUND_URL = re.compile(r'url\("?(.+?)"?\)')


class PortalSession:
    """Playwright-backed session against the display portal."""

    def __init__(self, config: dict):
        self._config = config
        self._playwright = None
        self._browser = None
        self._context = None
        self.page = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def open(self) -> "PortalSession":
        headless = self._config.get("headless", True)
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"],
        )
        # Avoid the default 800×600 viewport, the portal hides controls below it.
        self._context = self._browser.new_context(viewport={"width": 1920, "height": 1080})
        self.page = self._context.new_page()
        logger.debug(f"Browser session opened (headless={headless})")
        return self

    def close(self) -> None:
        """Close page, context, browser and driver.  Never raises."""
        for name, closer in (
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("driver", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception as e:
                logger.debug(f"Ignoring error while closing {name}: {e}")
        self.page = self._context = self._browser = self._playwright = None

    def __enter__(self) -> "PortalSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _timeout(self, key: str) -> int:
        return scaled_timeout(self._config[key], self._config)

    # ── Navigation ────────────────────────────────────────────────────────

    def navigate(self, url: str) -> None:
        try:
            self.page.goto(url, wait_until=self._config["wait_until"], timeout=self._timeout("nav_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Timed out loading {url}") from e

    def current_url(self) -> str:
        return self.page.url

    def submit_and_wait_for_navigation(self, selector: str) -> None:
        """Click a submit control and block until the resulting navigation settles."""
        try:
            with self.page.expect_navigation(
                wait_until=self._config["wait_until"], timeout=self._timeout("nav_timeout")
            ):
                self.page.click(selector, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"No navigation after submitting {selector}") from e

    # ── Form controls ─────────────────────────────────────────────────────

    def type(self, selector: str, value: str) -> None:
        try:
            self.page.fill(selector, value, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Input {selector} did not appear") from e

    def select(self, selector: str, value: str) -> None:
        try:
            self.page.select_option(selector, value=value, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Option {value!r} not selectable in {selector}") from e

    def upload_file(self, selector: str, path: str) -> None:
        try:
            self.page.set_input_files(selector, path, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"File input {selector} did not appear") from e

    def click(self, selector: str) -> None:
        """
        One click attempt.

        Raises ControlNotInteractable when the control exists but Playwright's
        actionability checks block the click; anything else propagates as-is.
        """
        try:
            self.page.click(selector, timeout=CLICK_ATTEMPT_TIMEOUT)
        except PlaywrightTimeout as e:
            if self.page.locator(selector).count() == 0:
                raise WaitTimeout(f"Control {selector} is no longer on the page") from e
            raise ControlNotInteractable(f"Element {selector} is not clickable") from e
        except PlaywrightError as e:
            if any(marker in str(e).lower() for marker in _NOT_INTERACTABLE_MARKERS):
                raise ControlNotInteractable(f"Element {selector} is not clickable") from e
            raise

    # ── Waits ─────────────────────────────────────────────────────────────

    def wait_for_selector(self, selector: str, timeout: int = None) -> None:
        timeout = timeout if timeout is not None else self._timeout("selector_timeout")
        try:
            self.page.wait_for_selector(selector, state="attached", timeout=timeout)
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Waiting for selector {selector} failed: {timeout}ms exceeded") from e

    def wait_for_enabled(self, selector: str, timeout: int = None) -> None:
        timeout = timeout if timeout is not None else self._timeout("enable_timeout")
        try:
            self.page.wait_for_function(
                "(sel) => { const el = document.querySelector(sel); return !!el && !el.disabled; }",
                arg=selector,
                timeout=timeout,
            )
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"{selector} stayed disabled for {timeout}ms") from e

    def count(self, selector: str) -> int:
        """Number of elements matching selector; 0 if the page cannot answer."""
        try:
            return self.page.locator(selector).count()
        except PlaywrightError:
            return 0

    def wait_for_count_above(self, selector: str, baseline: int, timeout: int = None) -> None:
        timeout = timeout if timeout is not None else self._timeout("confirmation_timeout")
        try:
            self.page.wait_for_function(
                "([sel, n]) => document.querySelectorAll(sel).length > n",
                arg=[selector, baseline],
                timeout=timeout,
            )
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"No new {selector} beyond {baseline} within {timeout}ms") from e

    # ── Reads ─────────────────────────────────────────────────────────────

    def read_text(self, selector: str) -> str:
        try:
            return self.page.inner_text(selector, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Could not read text of {selector}") from e

    def read_html(self, selector: str) -> str:
        try:
            return self.page.inner_html(selector, timeout=self._timeout("selector_timeout"))
        except PlaywrightTimeout as e:
            raise WaitTimeout(f"Could not read {selector}") from e

    def list_options(self, selector: str) -> list[dict]:
        return self.page.eval_on_selector_all(
            f"{selector} option",
            "opts => opts.map(o => ({ value: o.value, text: o.innerText }))",
        )

    def read_background_image(self, selector: str) -> str | None:
        style = self.page.eval_on_selector(selector, "el => el.style.backgroundImage")
        match = _BACKGROUND_URL.search(style or "")
        return match.group(1) if match else None

    def pause(self, ms: int) -> None:
        self.page.wait_for_timeout(ms)

    def capture_diagnostics(self, label: str) -> str | None:
        if self.page is None:
            return None
        return capture_diagnostics(self.page, label)


# ── Portal flows shared by the worker and the intake helpers ─────────────

def login(session, config: dict, credentials: dict) -> str:
    """
    Sign in and return the dashboard URL the portal lands on.

    Credential failures are not transient, so every problem here is raised
    as AuthenticationFailed and never retried.
    """
    selectors = config["selectors"]
    login_url = config["login_url"]
    try:
        session.navigate(login_url)
        session.type(selectors["username"], credentials["username"])
        session.type(selectors["password"], credentials["password"])
        session.submit_and_wait_for_navigation(selectors["login_button"])
    except WaitTimeout as e:
        raise AuthenticationFailed(f"Login failed: {e}") from e

    dashboard_url = session.current_url()
    if dashboard_url.rstrip("/").lower() == login_url.rstrip("/").lower():
        raise AuthenticationFailed("Login failed: the portal rejected the credentials.")
    return dashboard_url


def fetch_displays(config: dict, username: str, password: str, *, session_factory=PortalSession) -> list[dict]:
    """Return the selectable displays ({value, text}) for a portal account."""
    selectors = config["selectors"]
    logger.info(f"Fetching displays for user: {username}")
    with session_factory(config) as session:
        login(session, config, {"username": username, "password": password})
        session.wait_for_selector(selectors["display"])
        options = session.list_options(selectors["display"])
    return [o for o in options if o.get("value") and o["value"] != "0"]


def fetch_display_preview(
    config: dict, username: str, password: str, display: str, *, session_factory=PortalSession
) -> str | None:
    """Return the absolute URL of the image currently shown on a display, or None."""
    selectors = config["selectors"]
    with session_factory(config) as session:
        login(session, config, {"username": username, "password": password})
        session.wait_for_selector(selectors["display"])
        session.select(selectors["display"], display)
        # Preview swaps in asynchronously after the selection changes.
        session.pause(2000)
        image_url = session.read_background_image(selectors["preview"])
    if not image_url:
        return None
    return urljoin(config["login_url"], image_url)
