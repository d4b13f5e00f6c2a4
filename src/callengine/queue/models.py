"""
SQLAlchemy models backing the durable job queue.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from callengine.shared.database import Base, UTCDateTime, utcnow


def _new_job_id() -> str:
    return uuid4().hex


class QueueJob(Base):
    """One unit of work; visible to every worker process sharing the database."""

    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_claim", "queue", "kind", "status", "run_at"),
        Index("ix_queue_jobs_finished", "queue", "status", "finished_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_job_id)
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")

    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_type: Mapped[str] = mapped_column(String(16), nullable=False, default="exponential")
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    remove_on_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    remove_on_fail: Mapped[int] = mapped_column(Integer, nullable=False, default=500)

    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<QueueJob(id={self.id}, kind={self.kind}, status={self.status})>"


class RecurringJob(Base):
    """Registration of a job that is enqueued on a fixed interval."""

    __tablename__ = "queue_recurring_jobs"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    every_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    # JobOptions applied to every enqueued occurrence
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
