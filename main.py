"""
Display Push Automation — Entry Point

Runs the job dispatcher (and, unless disabled, the intake API).

Usage:
    python main.py
    python main.py --config path/to/config.yaml
    python main.py --no-api
    python main.py --verbose
"""

import argparse
import os
import signal
import threading

from displaypush.api import create_app
from displaypush.dispatcher import Dispatcher
from displaypush.notifier import build_notifier
from displaypush.store import JobStore
from displaypush.utils import load_config, setup_logging
from displaypush.worker import UploadWorker


def _start_api(logger, config: dict, store, notifier) -> None:
    """Serve the intake API on a daemon thread; it dies with the main process."""
    app = create_app(store, config, notifier)
    host, port = config["api_host"], config["api_port"]
    api_thread = threading.Thread(
        target=lambda: app.run(host=host, port=port, threaded=True, use_reloader=False),
        daemon=True,
        name="intake-api",
    )
    api_thread.start()
    logger.info(f"Intake API listening on {host}:{port}")


def main():
    # ── Parse arguments ──────────────────────────────────────────────
    parser = argparse.ArgumentParser(
        description="Queue-driven image uploads to a display portal"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Run only the dispatcher, without the intake API"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show DEBUG lines on the console"
    )
    args = parser.parse_args()

    # ── Setup ────────────────────────────────────────────────────────
    logger = setup_logging(verbose=args.verbose)
    config = load_config(args.config)

    logger.info("Configuration loaded:")
    logger.info(f"  Portal:           {config['login_url']}")
    logger.info(f"  Database:         {config['database_url'].split('@')[-1]}")
    logger.info(f"  Poll interval:    {config['poll_interval']}s")
    logger.info(f"  Headless:         {config['headless']}")
    logger.info(f"  Click attempts:   {config['click_attempts']}")

    os.makedirs(config["upload_dir"], exist_ok=True)

    store = JobStore(config["database_url"])
    store.init_db()
    notifier = build_notifier(config)
    worker = UploadWorker(store, config, notifier=notifier)
    dispatcher = Dispatcher(store, worker, poll_interval=config["poll_interval"])

    if config["enable_api"] and not args.no_api:
        _start_api(logger, config, store, notifier)

    # ── Run until Ctrl+C ─────────────────────────────────────────────
    stop_event = threading.Event()

    def _request_stop(*_):
        logger.info("Shutdown requested — finishing current tick...")
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    dispatcher.run(stop_event)

    running = dispatcher.active_workers()
    if running:
        logger.warning(
            f"{len(running)} job(s) still running; they stop with the process "
            f"and remain 'running' in the store."
        )
    logger.info("Goodbye!")


if __name__ == "__main__":
    main()
