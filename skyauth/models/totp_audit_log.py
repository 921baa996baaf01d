"""Append-only audit trail for two-factor events."""

from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from skyauth.models.base import BaseModel


class TotpAuditLog(BaseModel):
    """One two-factor event: setup, verification, backup-code use, disable."""

    __tablename__ = "totp_audit_log"
    __table_args__ = (Index("ix_totp_audit_log_subject", "subject_id", "subject_type"),)

    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
