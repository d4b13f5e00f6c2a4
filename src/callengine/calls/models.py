"""
SQLAlchemy model for call records.

One row per outbound call attempt, including business retries. Retries keep
their lineage in retry_count / parent_call_id.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from callengine.shared.database import Base, UTCDateTime, utcnow
from callengine.telephony.interface import CallStatus


def _new_call_id() -> str:
    return str(uuid4())


class CallRecord(Base):
    """Call record tracking one outbound call end to end."""

    __tablename__ = "calls"
    __table_args__ = (
        Index("ix_calls_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_call_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_number: Mapped[str] = mapped_column(String(32), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    vendor: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    vendor_call_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        index=True,
    )
    vendor_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[CallStatus] = mapped_column(
        Enum(
            CallStatus,
            name="call_status",
            native_enum=False,
            length=16,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=CallStatus.QUEUED,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parent_call_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("calls.id", ondelete="SET NULL"),
        nullable=True,
    )
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_status_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CallRecord(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, retry_count={self.retry_count})>"
        )
