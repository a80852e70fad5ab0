"""
Upload worker: drives one claimed job to completed, failed or cancelled.

Flow:
  1. Log into the portal (fatal on any failure, credentials are not transient)
  2. For each image, in order:
       a. cancellation checkpoint (re-read status from the store)
       b. reset to the dashboard (all but the very first image) and select
          the display
       c. attach the file, wait for the submit button to enable, click it
          (only "not interactable" is retried, click_attempts × click_backoff)
       d. settle, snapshot the status-log entry count, wait for a new entry,
          save the log and scan the newest entry for failure markers
       e. sleep interval_minutes if more images remain or the job cycles
  3. cycle=true → go back to step 2 with the first image
  4. Cleanup on every path: close the browser, delete the job's image files

Cancellation is only observed at 2a.  A cancel issued during the interval
sleep or an in-flight upload takes effect at the next image boundary.
"""

import logging
import os
import time

from displaypush.errors import (
    ClickRetriesExhausted,
    ConfirmationTimeout,
    ControlNotInteractable,
    DisplayNotFound,
    JobFailure,
    PortalReportedError,
    UploadControlDisabled,
    WaitTimeout,
)
from displaypush.models import Job
from displaypush.notifier import NullNotifier
from displaypush.portal import PortalSession, login
from displaypush.reporter import StatusReporter

logger = logging.getLogger("displaypush")

LOGIN_MESSAGE   = "Logging into portal..."
CONFIRM_MESSAGE = "Waiting for upload confirmation..."


class UploadWorker:
    """
    Runs jobs handed over by the dispatcher.  One instance may serve many
    jobs; every run() opens its own browser session.

    Args:
        store: JobStore the job was claimed from.
        config: Loaded config dict (selectors, timings, failure markers).
        session_factory: Callable(config) → browser session (PortalSession).
        sleep: Blocking sleep used for settle/backoff/interval waits.
        notifier: Receives a job_finished() call after cleanup.
    """

    def __init__(self, store, config: dict, *, session_factory=PortalSession, sleep=time.sleep, notifier=None):
        self._store = store
        self._config = config
        self._selectors = config["selectors"]
        self._session_factory = session_factory
        self._sleep = sleep
        self._notifier = notifier or NullNotifier()

    def __call__(self, job: Job) -> str:
        return self.run(job)

    def run(self, job: Job) -> str:
        """Execute a claimed job and return its final status."""
        reporter = StatusReporter(self._store, job.id)
        session = None
        logger.info(f"[Job {job.id}] Starting ({len(job.images)} image(s), "
                    f"interval={job.interval_minutes}m, cycle={job.cycle})")
        try:
            reporter.progress(LOGIN_MESSAGE)
            session = self._session_factory(self._config)
            session.open()
            dashboard_url = login(session, self._config, job.credentials)
            logger.info(f"[Job {job.id}] Logged in. Dashboard URL is: {dashboard_url}")

            if self._upload_all(job, session, reporter, dashboard_url):
                reporter.completed()
        except Exception as exc:
            if isinstance(exc, JobFailure):
                logger.error(f"[Job {job.id}] Job failed: {exc}")
            else:
                logger.exception(f"[Job {job.id}] Unexpected error processing job")
            if session is not None:
                session.capture_diagnostics(f"job_{job.id}_failed")
            message = reporter.failed(exc, selector=self._selectors["submit_button"])
            logger.info(f"[Job {job.id}] {message}")
        finally:
            if session is not None:
                logger.info(f"[Job {job.id}] Closing browser.")
                try:
                    session.close()
                except Exception as close_err:
                    logger.warning(f"[Job {job.id}] Error closing browser: {close_err}")
            self._delete_images(job)

        final = self._store.get_job(job.id)
        self._notifier.job_finished(final)
        return final.status

    # ── Per-image loop ────────────────────────────────────────────────────

    def _upload_all(self, job: Job, session, reporter: StatusReporter, dashboard_url: str) -> bool:
        """Run the image loop.  Returns False if the job was cancelled, True when done."""
        total = len(job.images)
        first_of_job = True
        cycle_no = 1
        while True:
            for index, image in enumerate(job.images, start=1):
                if not reporter.still_running():
                    return False

                if not first_of_job:
                    logger.info(f"[Job {job.id}] Resetting page for image {index}...")
                    session.navigate(dashboard_url)
                first_of_job = False

                self._select_display(session, reporter, job, index)
                self._upload_image(session, reporter, job, index, total, image)
                self._await_confirmation(session, reporter, job)

                more_to_do = index < total or job.cycle
                if job.interval_minutes > 0 and more_to_do:
                    reporter.progress(f"Waiting for {job.interval_minutes} minute(s)...")
                    self._sleep(job.interval_minutes * 60)

            if not job.cycle:
                return True
            cycle_no += 1
            logger.info(f"[Job {job.id}] Cycling — starting pass {cycle_no}")

    def _select_display(self, session, reporter: StatusReporter, job: Job, index: int) -> None:
        selector = self._selectors["display"]
        reporter.progress(f"Selecting display for image {index}...")
        try:
            session.wait_for_selector(selector)
            session.select(selector, job.display)
        except WaitTimeout as e:
            raise DisplayNotFound(f"Could not select display {job.display!r}: {e}") from e
        logger.debug(f"[Job {job.id}] Display selected.")

    def _upload_image(self, session, reporter: StatusReporter, job: Job, index: int, total: int, image: dict) -> None:
        file_input = self._selectors["file_input"]
        submit = self._selectors["submit_button"]

        reporter.progress(f"Uploading image {index} of {total}: {image['name']}")
        try:
            session.wait_for_selector(file_input)
            session.upload_file(file_input, image["path"])
        except WaitTimeout as e:
            raise JobFailure(f"File input {file_input} not available: {e}") from e
        logger.debug(f"[Job {job.id}] File selected for upload: {image['path']}")

        try:
            session.wait_for_enabled(submit)
        except WaitTimeout as e:
            raise UploadControlDisabled(f"The upload button never became enabled: {e}") from e

        attempts = self._click_submit(session, job.id)
        logger.debug(f"[Job {job.id}] Click successful on attempt {attempts}.")

    def _click_submit(self, session, job_id: int) -> int:
        """
        Click the submit button, retrying only ControlNotInteractable.

        Returns the attempt number that succeeded.
        """
        selector = self._selectors["submit_button"]
        max_attempts = self._config["click_attempts"]
        backoff = self._config["click_backoff"]
        for attempt in range(1, max_attempts + 1):
            try:
                session.click(selector)
                return attempt
            except ControlNotInteractable:
                logger.info(f"[Job {job_id}] Attempt {attempt}: upload button not clickable, retrying...")
                if attempt < max_attempts:
                    self._sleep(backoff)
        raise ClickRetriesExhausted(
            f"The upload button was enabled but not clickable after {max_attempts} retries."
        )

    def _await_confirmation(self, session, reporter: StatusReporter, job: Job) -> None:
        status_log = self._selectors["status_log"]
        entries = f"{status_log} p"

        reporter.progress(CONFIRM_MESSAGE)
        # Let the portal's own "uploading..." line land before taking the baseline.
        self._sleep(self._config["settle_delay"])
        baseline = session.count(entries)
        logger.debug(f"[Job {job.id}] Log count after initial wait: {baseline}")

        try:
            session.wait_for_count_above(entries, baseline)
        except WaitTimeout as e:
            raise ConfirmationTimeout(
                "Timed out waiting for a new confirmation entry in the status log."
            ) from e

        reporter.logs(session.read_html(status_log))
        last_entry = session.read_text(f"{entries}:last-child").strip().lower()
        logger.info(f'[Job {job.id}] Last log entry: "{last_entry}"')

        if any(marker in last_entry for marker in self._config["failure_markers"]):
            raise PortalReportedError(f'The portal reported an error on the last log entry: "{last_entry}"')

    # ── Cleanup ───────────────────────────────────────────────────────────

    def _delete_images(self, job: Job) -> None:
        logger.info(f"[Job {job.id}] Cleaning up image files.")
        for image in job.images:
            try:
                os.remove(image["path"])
            except OSError as e:
                logger.error(f"[Job {job.id}] Error deleting file {image['path']}: {e}")
