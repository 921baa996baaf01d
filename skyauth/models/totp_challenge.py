"""Pending second-factor challenges issued by password login."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel, UTCDateTime


class TotpChallenge(BaseModel):
    """Proof that the password step succeeded, waiting for a TOTP code.

    The raw challenge token is handed to the client once; only its hash is
    stored. Deleted on success, on expiry, or after too many attempts.
    """

    __tablename__ = "totp_challenges"

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    remember_me: Mapped[bool] = mapped_column(default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
