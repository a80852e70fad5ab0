"""
Shared fixtures: a throwaway SQLite store, a tuned config and a scripted
stand-in for the Playwright session.
"""

import pytest

from displaypush.errors import ControlNotInteractable, WaitTimeout
from displaypush.store import JobStore
from displaypush.utils import apply_defaults

LOGIN_URL = "https://portal.example/Login"
DASHBOARD_URL = "https://portal.example/Dashboard"


class FakeSession:
    """
    Scripted browser session.

    Knobs:
        login_timeout     — submit never navigates
        login_rejected    — submit navigates back to the login page
        missing           — selectors that never appear
        never_enabled     — submit button stays disabled
        click_failures    — leading clicks that raise ControlNotInteractable
        click_error       — exception raised by every click after those
        confirm_timeout   — no new status-log entry ever appears
        confirmations     — texts appended per upload (cycled)
        on_upload         — callback(session) after every file attach
    """

    def __init__(self, *, login_timeout=False, login_rejected=False, missing=(), never_enabled=False,
                 click_failures=0, click_error=None, confirm_timeout=False,
                 confirmations=("Upload successful",), on_upload=None):
        self.login_timeout = login_timeout
        self.login_rejected = login_rejected
        self.missing = set(missing)
        self.never_enabled = never_enabled
        self.click_failures = click_failures
        self.click_error = click_error
        self.confirm_timeout = confirm_timeout
        self.confirmations = list(confirmations)
        self.on_upload = on_upload

        self.url = "about:blank"
        self.entries = ["Ready."]
        self.uploads = []
        self.navigations = []
        self.selected = []
        self.typed = {}
        self.click_attempts = 0
        self.diagnostics = []
        self.opened = False
        self.closed = False
        self.options = []
        self.background = None

    def __call__(self, config):
        return self

    def open(self):
        self.opened = True
        return self

    def close(self):
        self.closed = True

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def navigate(self, url):
        self.navigations.append(url)
        self.url = url

    def current_url(self):
        return self.url

    def type(self, selector, value):
        self.typed[selector] = value

    def submit_and_wait_for_navigation(self, selector):
        if self.login_timeout:
            raise WaitTimeout(f"No navigation after submitting {selector}")
        if not self.login_rejected:
            self.url = DASHBOARD_URL

    def wait_for_selector(self, selector, timeout=None):
        if selector in self.missing:
            raise WaitTimeout(f"Waiting for selector {selector} failed")

    def select(self, selector, value):
        self.selected.append(value)

    def upload_file(self, selector, path):
        self.uploads.append(path)
        if self.on_upload:
            self.on_upload(self)

    def wait_for_enabled(self, selector, timeout=None):
        if self.never_enabled:
            raise WaitTimeout(f"{selector} stayed disabled")

    def click(self, selector):
        self.click_attempts += 1
        if self.click_failures > 0:
            self.click_failures -= 1
            raise ControlNotInteractable(f"Element {selector} is not clickable")
        if self.click_error is not None:
            raise self.click_error

    def count(self, selector):
        return len(self.entries)

    def wait_for_count_above(self, selector, baseline, timeout=None):
        if self.confirm_timeout:
            raise WaitTimeout("no new entry")
        text = self.confirmations[(len(self.uploads) - 1) % len(self.confirmations)]
        self.entries.append(text)

    def read_html(self, selector):
        return "".join(f"<p>{e}</p>" for e in self.entries)

    def read_text(self, selector):
        return self.entries[-1]

    def list_options(self, selector):
        return self.options

    def read_background_image(self, selector):
        return self.background

    def pause(self, ms):
        pass

    def capture_diagnostics(self, label):
        self.diagnostics.append(label)
        return None


@pytest.fixture
def config(tmp_path):
    return apply_defaults({
        "login_url": LOGIN_URL,
        "database_url": f"sqlite:///{tmp_path / 'jobs.db'}",
        "upload_dir": str(tmp_path / "uploads"),
    })


@pytest.fixture
def store(config):
    job_store = JobStore(config["database_url"])
    job_store.init_db()
    return job_store


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_job(store, tmp_path):
    """Create image files, queue a job for them and claim it (status=running)."""

    def _make(names=("A.png", "B.png"), interval=0, cycle=False, owner="user-1", display="12"):
        images = []
        for name in names:
            path = tmp_path / name
            path.write_bytes(b"\x89PNG fake")
            images.append({"path": str(path), "name": name})
        store.create_job(
            owner,
            {"username": "alice", "password": "s3cret"},
            images,
            {"interval_minutes": interval, "cycle": cycle, "display": display},
        )
        return store.claim_next()

    return _make
