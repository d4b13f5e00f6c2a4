"""
SQLAlchemy model for the user call profile.

The engine only reads this table; profiles are owned by the onboarding /
settings surface of the wider platform.
"""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from callengine.shared.database import Base, UTCDateTime, utcnow


class UserProfile(Base):
    """Per-user call preferences."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # IANA timezone name; null means the configured default
    local_tz: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # HH:MM[:SS] in local_tz; null means the configured default
    call_time: Mapped[str | None] = mapped_column(String(8), nullable=True)
    call_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, call_enabled={self.call_enabled})>"
