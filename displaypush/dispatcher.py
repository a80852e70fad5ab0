"""
Job dispatcher: a fixed-cadence loop that claims at most one queued job
per tick and starts a worker thread for it.

The dispatcher never waits on a worker.  Claim errors and worker start
failures are logged and the next tick happens regardless.
"""

import logging
import threading

from displaypush.errors import describe_failure
from displaypush.models import STATUS_FAILED

logger = logging.getLogger("displaypush")


class Dispatcher:
    """
    Args:
        store: JobStore providing claim_next().
        run_job: Callable(job) executed on a new daemon thread per claimed job.
        poll_interval: Seconds between ticks.
    """

    def __init__(self, store, run_job, *, poll_interval: float = 5.0):
        self._store = store
        self._run_job = run_job
        self._poll_interval = poll_interval
        self._workers: list[threading.Thread] = []
        self._workers_lock = threading.Lock()

    def tick(self):
        """Claim the oldest queued job and dispatch it.  Returns the job or None."""
        try:
            job = self._store.claim_next()
        except Exception as e:
            logger.error(f"Error in job checker: {e}")
            return None

        if job is None:
            return None

        logger.info(f"Picked up job {job.id} to process.")
        try:
            thread = threading.Thread(
                target=self._run_guarded, args=(job,), daemon=True, name=f"job-{job.id}"
            )
            thread.start()
        except Exception as e:
            logger.error(f"Could not start worker for job {job.id}: {e}")
            self._store.finish_job(job.id, STATUS_FAILED, describe_failure(e))
            return job

        with self._workers_lock:
            self._workers = [t for t in self._workers if t.is_alive()]
            self._workers.append(thread)
        return job

    def _run_guarded(self, job) -> None:
        try:
            self._run_job(job)
        except Exception:
            logger.exception(f"Unhandled exception in worker for job {job.id}")

    def active_workers(self) -> list[threading.Thread]:
        with self._workers_lock:
            return [t for t in self._workers if t.is_alive()]

    def join(self, timeout: float = None) -> None:
        """Wait for every dispatched worker thread (used by tests and shutdown)."""
        for thread in self.active_workers():
            thread.join(timeout)

    def run(self, stop_event: threading.Event) -> None:
        """Tick every poll_interval seconds until stop_event is set."""
        logger.info(f"Dispatcher started (every {self._poll_interval}s)")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Dispatcher tick failed")
            stop_event.wait(self._poll_interval)
        logger.info("Dispatcher stopped.")
