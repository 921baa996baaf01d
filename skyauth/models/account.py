"""Account model - organization members and internal staff share one table."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel, UTCDateTime


class Account(BaseModel):
    """A login identity.

    ``subject_type`` is either ``member`` (belongs to an organization, which
    is required) or ``staff`` (internal operator, organization optional).
    The TOTP columns hold the second factor; the secret is stored encrypted
    and backup codes only as keyed hashes.
    """

    __tablename__ = "accounts"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    organization_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    organization_slug: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subscription_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)

    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Email verification; only the hash of the emailed token is kept
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_token_hash: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    verification_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Two-factor authentication
    totp_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    totp_secret_encrypted: Mapped[str | None] = mapped_column(String(512), nullable=True)
    totp_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    backup_codes_hash: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    totp_recovery_codes_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    totp_last_used_step: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Account {self.email} ({self.subject_type})>"
