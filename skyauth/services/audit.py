"""Two-factor audit logging.

Appends setup, verification and disable events to ``totp_audit_log``. The log
is write-only from this service's point of view. A failed audit write is
logged and swallowed so it never blocks the operation being audited.
"""

import logging
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.models.totp_audit_log import TotpAuditLog

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {"password", "secret", "token", "code"}


class AuditAction(str, Enum):
    """Two-factor audit action types."""

    SETUP_INITIATED = "setup_initiated"
    SETUP_COMPLETED = "setup_completed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_SUCCESS = "verification_success"
    BACKUP_CODE_USED = "backup_code_used"
    DISABLED = "disabled"


def _sanitize_details(details: dict[str, Any]) -> dict[str, Any]:
    """Redact anything that looks like a credential."""
    sanitized: dict[str, Any] = {}
    for key, value in details.items():
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_details(value)
        else:
            sanitized[key] = value
    return sanitized


class AuditService:
    """Writes two-factor audit entries in the caller's database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        action: AuditAction,
        subject_id: str,
        subject_type: str,
        ip_address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit entry and commit it."""
        entry = TotpAuditLog(
            subject_id=str(subject_id),
            subject_type=str(subject_type),
            action=action.value,
            ip_address=ip_address,
            details=_sanitize_details(details) if details else None,
        )
        try:
            self.session.add(entry)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to write 2FA audit entry {action.value} for {subject_id}: {e}")
