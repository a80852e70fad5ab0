"""
Job Record Store: the shared table every dispatcher, worker and status
reader goes through.

The store is the only synchronisation point between jobs:
  claim_next()   — single-statement queued → running transition; on
                   PostgreSQL the candidate row is picked with
                   FOR UPDATE SKIP LOCKED, on SQLite the UPDATE itself holds
                   the write lock.  The trailing status='queued' guard means
                   a second claimant that picked the same id updates 0 rows.
  worker writes  — update_progress / update_logs / finish_job only touch
                   rows that are still 'running', so a cancellation that
                   landed mid-job is never overwritten.

Usage:
    store = JobStore(config["database_url"])
    store.init_db()
    job_id = store.create_job(owner, creds, images, settings)
    job = store.claim_next()
"""

import logging
import os
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, SQLModel, col, create_engine, select

from displaypush.models import (
    CANCELLABLE_STATUSES,
    STATUS_CANCELLED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    Job,
)

logger = logging.getLogger("displaypush")

CREATED_MESSAGE   = "Job created and waiting to be processed."
CLAIMED_MESSAGE   = "Starting job processing..."
CANCELLED_MESSAGE = "Job cancelled by user."


def normalize_images(images, upload_dir: Optional[str] = None) -> list:
    """
    Validate the ordered image list; order is preserved as given.

    With upload_dir set, every path must resolve (symlinks included) to a
    file inside that directory.  The worker deletes each listed path when
    the job ends.
    """
    if not isinstance(images, list) or not images:
        raise ValueError("A job needs at least one image.")
    root = os.path.realpath(upload_dir) if upload_dir else None
    normalized = []
    for i, image in enumerate(images, start=1):
        if not isinstance(image, dict) or not image.get("path"):
            raise ValueError(f"Image {i} is missing its storage path.")
        if root is not None:
            resolved = os.path.realpath(str(image["path"]))
            if resolved == root or os.path.commonpath([root, resolved]) != root:
                raise ValueError(f"Image {i} is not inside the upload directory.")
        normalized.append({
            "path": str(image["path"]),
            "name": str(image.get("name") or image["path"]),
        })
    return normalized


def normalize_settings(settings) -> dict:
    """
    Coerce form-style settings into their typed shape.

    interval_minutes accepts ints or digit strings ("" → 0); cycle accepts
    booleans or the strings "true"/"false".
    """
    if not isinstance(settings, dict):
        raise ValueError("Job settings must be a mapping.")

    raw_interval = settings.get("interval_minutes", 0)
    if raw_interval in (None, ""):
        raw_interval = 0
    try:
        interval = int(raw_interval)
    except (TypeError, ValueError):
        raise ValueError(f"interval_minutes must be a whole number, got: {raw_interval!r}") from None
    if interval < 0:
        raise ValueError(f"interval_minutes must be >= 0, got: {interval}")

    cycle = settings.get("cycle", False)
    if isinstance(cycle, str):
        cycle = cycle.strip().lower() == "true"

    display = settings.get("display")
    if display in (None, ""):
        raise ValueError("A display target is required.")

    return {"interval_minutes": interval, "cycle": bool(cycle), "display": str(display)}


class JobStore:
    """SQLModel-backed persistence for Job records."""

    def __init__(self, database_url: str, *, echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # Workers run in their own threads; SQLite waits up to 30s on a busy lock.
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)

    def init_db(self) -> None:
        SQLModel.metadata.create_all(self.engine)
        logger.info("Database initialized, 'jobs' table is ready.")

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ── Intake side ───────────────────────────────────────────────────────

    def create_job(
        self, owner_id: str, credentials: dict, images: list, settings: dict, *, upload_dir: Optional[str] = None
    ) -> int:
        """
        Insert a queued job and return its id.  Raises ValueError on bad input.

        Pass upload_dir to refuse image paths outside it.
        """
        if not owner_id:
            raise ValueError("owner_id is required.")
        if not isinstance(credentials, dict) or not credentials.get("username") or not credentials.get("password"):
            raise ValueError("Portal username and password are required.")

        job = Job(
            owner_id=str(owner_id),
            credentials={"username": credentials["username"], "password": credentials["password"]},
            images=normalize_images(images, upload_dir),
            settings=normalize_settings(settings),
            status=STATUS_QUEUED,
            progress=CREATED_MESSAGE,
        )
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info(f"Job {job.id} created for owner {owner_id} ({len(job.images)} image(s))")
        return job.id

    def cancel_job(self, job_id: int) -> bool:
        """
        Flip a queued/running job to cancelled.

        Returns False when the job does not exist or is already terminal.
        """
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id, col(Job.status).in_(CANCELLABLE_STATUSES))
            .values(status=STATUS_CANCELLED, progress=CANCELLED_MESSAGE)
        )
        with self.engine.begin() as conn:
            changed = conn.execute(stmt).rowcount
        if changed:
            logger.info(f"Job {job_id} has been marked for cancellation.")
        return changed > 0

    def latest_for_owner(self, owner_id: str) -> Optional[Job]:
        """Most recently created job of an owner, or None."""
        stmt = (
            select(Job)
            .where(Job.owner_id == str(owner_id))
            .order_by(col(Job.created_at).desc(), col(Job.id).desc())
            .limit(1)
        )
        with self._session() as session:
            return session.exec(stmt).first()

    # ── Dispatcher side ───────────────────────────────────────────────────

    def claim_next(self, progress: str = CLAIMED_MESSAGE) -> Optional[Job]:
        """
        Atomically move the oldest queued job to running and return it.

        Returns None when nothing is queued or another claimant won the row.
        """
        candidate = (
            select(Job.id)
            .where(Job.status == STATUS_QUEUED)
            .order_by(col(Job.created_at).asc(), col(Job.id).asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(col(Job.id) == candidate, Job.status == STATUS_QUEUED)
            .values(status=STATUS_RUNNING, progress=progress)
            .returning(Job.id)
        )
        with self.engine.begin() as conn:
            claimed_id = conn.execute(stmt).scalar_one_or_none()

        if claimed_id is None:
            return None
        return self.get_job(claimed_id)

    # ── Worker side ───────────────────────────────────────────────────────

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    def get_status(self, job_id: int) -> Optional[str]:
        with self._session() as session:
            return session.exec(select(Job.status).where(Job.id == job_id)).first()

    def _update_running(self, job_id: int, **values) -> bool:
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id, Job.status == STATUS_RUNNING)
            .values(**values)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount > 0

    def update_progress(self, job_id: int, progress: str) -> bool:
        return self._update_running(job_id, progress=progress)

    def update_logs(self, job_id: int, logs: str) -> bool:
        return self._update_running(job_id, logs=logs)

    def finish_job(self, job_id: int, status: str, progress: str) -> bool:
        """Write a terminal status.  No-op (returns False) unless the job is running."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status!r}")
        return self._update_running(job_id, status=status, progress=progress)
