"""Issued refresh tokens, tracked so they can be revoked with their session."""

from datetime import datetime

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel, UTCDateTime


class RefreshToken(BaseModel):
    """A remember-me refresh token, keyed by its jti claim.

    ``session_jti`` links it to the session token it was issued with.
    A token is usable while ``revoked_at`` is empty; rotation sets
    ``revoked_at`` and ``replaced_by``, so presenting a rotated token again
    is recognisable as reuse.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (Index("ix_refresh_tokens_subject", "subject_id", "subject_type"),)

    jti: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    session_jti: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    replaced_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<RefreshToken {self.jti[:8]} {self.subject_type}:{self.subject_id}>"
