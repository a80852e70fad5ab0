"""
Utility functions: config loading, logging setup, and helpers.

Config is a single YAML file.  Every key except login_url has a default,
so a minimal config.yaml only needs the portal's login page.
"""

import os
import re
import logging
import socket
import yaml
from datetime import datetime


PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(PROJECT_ROOT, "logs")
DIAGNOSTICS_DIR = os.path.join(LOG_DIR, "diagnostics")

LOGGER_NAME = "displaypush"

# Element ids on the display portal.  Overridable per key under `selectors:`.
DEFAULT_SELECTORS = {
    "username":      "#username",
    "password":      "#password",
    "login_button":  'button[type="submit"]',
    "display":       "#display",
    "preview":       "#preview1",
    "file_input":    "#fileInput1",
    "submit_button": "#pushBtn1",
    "status_log":    "#statuslog",
}

# Millisecond timeouts, all scaled by timeout_multiplier.
DEFAULT_TIMEOUTS = {
    "nav_timeout":          60_000,
    "selector_timeout":     30_000,
    "enable_timeout":       15_000,
    "confirmation_timeout": 120_000,
}


def get_worker_id() -> str:
    """Return a stable machine identifier (hostname) for worker identity."""
    return socket.gethostname()


def setup_logging(verbose: bool = False, log_dir: str = LOG_DIR) -> logging.Logger:
    """
    Configure and return the project logger.

    Console shows INFO (DEBUG with verbose); the per-run file
    <log_dir>/displaypush_<timestamp>.log always gets DEBUG.  Both carry the
    thread name so lines from concurrent job-<id> workers can be told apart.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"displaypush_{datetime.now():%Y%m%d_%H%M%S}.log")

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-7s %(threadName)-12s %(message)s", datefmt="%H:%M:%S"))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"))

    logger.addHandler(ch)
    logger.addHandler(fh)

    # SQL echo and HTTP connection chatter stay out of the job log
    for noisy in ("sqlalchemy.engine", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info(f"Log file: {log_file}")
    return logger


def _require_number(config: dict, key: str, minimum: float, *, integer: bool = False) -> None:
    value = config[key]
    kinds = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, kinds) or value < minimum:
        kind = "int" if integer else "a number"
        raise ValueError(f"{key} must be {kind} >= {minimum}, got: {value!r}")


def apply_defaults(config: dict) -> dict:
    """Fill in defaults and validate an already-parsed config mapping."""
    if config.get("login_url") is None:
        raise ValueError("Missing required config key: 'login_url'")

    config.setdefault("database_url", f"sqlite:///{os.path.join(PROJECT_ROOT, 'displaypush.db')}")
    config.setdefault("poll_interval", 5)
    _require_number(config, "poll_interval", 0.1)
    config.setdefault("headless", True)
    wait_until = config.setdefault("wait_until", "networkidle")
    if wait_until not in ("load", "domcontentloaded", "networkidle", "commit"):
        raise ValueError(
            f"Invalid wait_until '{wait_until}'. Must be load, domcontentloaded, networkidle or commit."
        )

    selectors = dict(DEFAULT_SELECTORS)
    selectors.update(config.get("selectors") or {})
    config["selectors"] = selectors

    for key, default in DEFAULT_TIMEOUTS.items():
        config.setdefault(key, default)
        _require_number(config, key, 1, integer=True)

    config.setdefault("settle_delay", 3)
    _require_number(config, "settle_delay", 0)
    config.setdefault("click_attempts", 10)
    _require_number(config, "click_attempts", 1, integer=True)
    config.setdefault("click_backoff", 1)
    _require_number(config, "click_backoff", 0)

    markers = config.setdefault("failure_markers", ["failed", "error"])
    if not isinstance(markers, list) or not all(isinstance(m, str) for m in markers):
        raise ValueError(f"failure_markers must be a list of strings, got: {markers!r}")
    config["failure_markers"] = [m.lower() for m in markers]

    config.setdefault("timeout_multiplier", 1.0)
    _require_number(config, "timeout_multiplier", 0.1)

    config.setdefault("upload_dir", os.path.join(PROJECT_ROOT, "images_to_upload"))
    config.setdefault("notify_webhook_url", None)

    config.setdefault("enable_api", True)
    config.setdefault("api_host", "0.0.0.0")
    config.setdefault("api_port", 3001)
    _require_number(config, "api_port", 1, integer=True)
    return config


def load_config(config_path: str = None) -> dict:
    """Load and validate config.yaml, applying safe defaults for all optional keys."""
    if config_path is None:
        config_path = os.path.join(PROJECT_ROOT, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    return apply_defaults(config)


def scaled_timeout(base_ms: int, config: dict) -> int:
    """
    Scale a millisecond timeout by timeout_multiplier, rounded up to 100ms.

        scaled_timeout(30_000, {"timeout_multiplier": 1.5}) → 45_000
    """
    multiplier = config.get("timeout_multiplier", 1.0)
    scaled = int(base_ms * multiplier)
    return ((scaled + 99) // 100) * 100


def capture_diagnostics(page, label: str = "failure") -> str | None:
    """
    Save what the portal page looked like when a job went wrong.

    Each call gets its own folder, logs/diagnostics/<timestamp>_<label>/:
      page.txt   label, URL and title
      page.png   viewport screenshot (5s bound), or
      page.html  DOM dump when the screenshot cannot be taken

    Returns the folder path, or None if it could not be created.  Never raises.
    """
    logger = logging.getLogger(LOGGER_NAME)
    safe_label = re.sub(r"[^\w\-]", "_", label)[:80]
    folder = os.path.join(DIAGNOSTICS_DIR, f"{datetime.now():%Y%m%d_%H%M%S}_{safe_label}")
    try:
        os.makedirs(folder, exist_ok=True)
    except OSError as e:
        logger.warning(f"Cannot create diagnostics folder {folder}: {e}")
        return None

    details = {}
    for key, read in (("url", lambda: page.url), ("title", lambda: page.title())):
        try:
            details[key] = read()
        except Exception:
            details[key] = "<unavailable>"
    try:
        with open(os.path.join(folder, "page.txt"), "w", encoding="utf-8") as f:
            f.write(f"label: {label}\nurl:   {details['url']}\ntitle: {details['title']}\n")
    except OSError as e:
        logger.warning(f"Cannot write page details for {label}: {e}")

    try:
        page.screenshot(path=os.path.join(folder, "page.png"), full_page=False, timeout=5_000)
        logger.info(f"Diagnostics saved (screenshot): {folder}")
        return folder
    except Exception as e:
        logger.debug(f"Screenshot failed ({e}), dumping page HTML instead")

    try:
        html = page.content()
        with open(os.path.join(folder, "page.html"), "w", encoding="utf-8") as f:
            f.write(html)
        logger.info(f"Diagnostics saved (HTML dump): {folder}")
    except Exception as e:
        logger.warning(f"Page HTML unavailable for {label}: {e}")
    return folder
