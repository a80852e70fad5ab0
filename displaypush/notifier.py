"""
Chat-ops notifications over an incoming webhook.

Two classes:
  WebhookNotifier — POSTs a short text message per event
  NullNotifier    — no-op drop-in when notify_webhook_url is not set

Fire-and-forget: one retry on ConnectionError/Timeout, then the event is
dropped with a warning.  A notification failure never touches job state.
"""

import logging
import time

import requests as _requests

from displaypush.utils import get_worker_id

logger = logging.getLogger("displaypush")


class NullNotifier:
    """Drop-in notifier that does nothing."""

    enabled = False

    def job_created(self, job_id: int, owner_id: str, image_count: int) -> None:
        pass

    def job_finished(self, job) -> None:
        pass


class WebhookNotifier:

    enabled = True

    _TIMEOUT = 10       # seconds per HTTP request
    _RETRY_BACKOFF = 2  # seconds to wait before retry

    def __init__(self, webhook_url: str):
        self._url = webhook_url
        self._worker_id = get_worker_id()

    def _post(self, text: str) -> bool:
        """POST {"text": ...} with one retry.  Returns True if delivered."""
        body = {"text": text}
        for attempt in range(2):
            try:
                r = _requests.post(self._url, json=body, timeout=self._TIMEOUT)
                r.raise_for_status()
                return True
            except (_requests.ConnectionError, _requests.Timeout) as exc:
                if attempt == 0:
                    logger.warning(f"  [notify] POST failed ({exc}), retrying in {self._RETRY_BACKOFF}s…")
                    time.sleep(self._RETRY_BACKOFF)
                else:
                    logger.warning("  [notify] POST failed after retry — dropping notification")
            except _requests.RequestException as exc:
                logger.warning(f"  [notify] POST error: {exc}")
                return False
        return False

    def job_created(self, job_id: int, owner_id: str, image_count: int) -> None:
        self._post(f"Job {job_id} queued for {owner_id}: {image_count} image(s).")

    def job_finished(self, job) -> None:
        if job is None:
            return
        self._post(f"Job {job.id} for {job.owner_id} is {job.status} ({self._worker_id}): {job.progress}")


def build_notifier(config: dict) -> "WebhookNotifier | NullNotifier":
    """Return a WebhookNotifier when notify_webhook_url is set, else a NullNotifier."""
    url = config.get("notify_webhook_url")
    if not url:
        logger.info("Notifications: disabled (NullNotifier)")
        return NullNotifier()
    logger.info("Notifications: webhook enabled")
    return WebhookNotifier(url)
