"""Blacklisted session tokens, keyed by jti."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.core.database import Base
from skyauth.models.base import UTCDateTime, utcnow


class TokenBlacklist(Base):
    """A revoked token identified by its jti claim.

    Entries are created on logout, session termination and refresh rotation,
    and garbage-collected after ``expires_at``.
    """

    __tablename__ = "token_blacklist"

    jti: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False, default="logout")
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
