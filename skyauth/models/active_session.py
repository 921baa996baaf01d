"""Active session model - one row per issued session token."""

from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel, UTCDateTime, utcnow


class ActiveSession(BaseModel):
    """A signed-in device, used for the "your devices" listing.

    Expiry mirrors the token it was created with.
    """

    __tablename__ = "active_sessions"
    __table_args__ = (Index("ix_active_sessions_subject", "subject_id", "subject_type"),)

    jti: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    device_info: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ActiveSession {self.jti[:8]} {self.subject_type}:{self.subject_id}>"
