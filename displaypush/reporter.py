"""
Status reporter: the worker's only channel to the outside world.

Every call writes straight through to the job row before returning, so
anyone polling the store sees progress advance step by step.  Writes are
guarded by status='running' in the store, which keeps a user's
cancellation (status and message) intact.
"""

import logging

from displaypush.errors import describe_failure
from displaypush.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING

logger = logging.getLogger("displaypush")

COMPLETED_MESSAGE = "All images uploaded successfully."


class StatusReporter:

    def __init__(self, store, job_id: int):
        self._store = store
        self.job_id = job_id

    def progress(self, message: str) -> None:
        logger.info(f"[Job {self.job_id}] {message}")
        self._store.update_progress(self.job_id, message)

    def logs(self, text: str) -> None:
        self._store.update_logs(self.job_id, text)
        logger.debug(f"[Job {self.job_id}] Logs saved to database.")

    def still_running(self) -> bool:
        """Cancellation checkpoint: re-read the row and report whether work may continue."""
        status = self._store.get_status(self.job_id)
        if status != STATUS_RUNNING:
            logger.info(f"[Job {self.job_id}] Status changed to '{status}'. Halting execution.")
            return False
        return True

    def completed(self) -> None:
        if self._store.finish_job(self.job_id, STATUS_COMPLETED, COMPLETED_MESSAGE):
            logger.info(f"[Job {self.job_id}] {COMPLETED_MESSAGE}")
        else:
            logger.info(f"[Job {self.job_id}] Finished, but the job was no longer running; status left as is.")

    def failed(self, exc: BaseException, selector: str = "") -> str:
        """Mark the job failed with a readable message and return that message."""
        message = describe_failure(exc, selector)
        if not self._store.finish_job(self.job_id, STATUS_FAILED, message):
            logger.info(f"[Job {self.job_id}] Failure after the job left 'running'; status left as is.")
        return message
