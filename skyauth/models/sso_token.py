"""Single-use SSO redemption tokens."""

import uuid
from datetime import datetime

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel, UTCDateTime


class SsoToken(BaseModel):
    """A cross-origin handoff token.

    Only the SHA-256 of the raw token and of the issuing client IP are stored.
    ``used_at`` is set by a conditional update on the first redemption.
    """

    __tablename__ = "sso_tokens"

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    ip_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
