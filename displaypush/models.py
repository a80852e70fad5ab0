"""
Job record: one user's request to push an ordered list of images to a
portal display.

JSON columns:
  credentials — {"username": ..., "password": ...}, forwarded verbatim
  images      — [{"path": ..., "name": ...}, ...], order is upload order
  settings    — {"interval_minutes": int, "cycle": bool, "display": str}
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

# ── Status constants ──────────────────────────────────────────────────────
STATUS_QUEUED    = "queued"
STATUS_RUNNING   = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED    = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
CANCELLABLE_STATUSES = (STATUS_QUEUED, STATUS_RUNNING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True, nullable=False)
    credentials: dict = Field(sa_column=Column(JSON, nullable=False))
    images: list = Field(sa_column=Column(JSON, nullable=False))
    settings: dict = Field(sa_column=Column(JSON, nullable=False))
    status: str = Field(default=STATUS_QUEUED, index=True, nullable=False)
    progress: Optional[str] = Field(default=None)
    logs: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=_utcnow, index=True, nullable=False)

    # ── Convenience accessors over the JSON columns ───────────────────────

    @property
    def interval_minutes(self) -> int:
        return int(self.settings.get("interval_minutes") or 0)

    @property
    def cycle(self) -> bool:
        return bool(self.settings.get("cycle", False))

    @property
    def display(self) -> str:
        return self.settings.get("display", "")

    def status_view(self) -> dict:
        """The fields an external status query reads back."""
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "logs": self.logs,
        }
