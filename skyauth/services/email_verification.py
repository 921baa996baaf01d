"""Email address verification links."""

import enum
import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.config import Settings
from skyauth.models.account import Account
from skyauth.services.errors import VerificationTokenExpiredError, VerificationTokenInvalidError
from skyauth.services.mail import Mailer, OutgoingEmail
from skyauth.services.sso import hash_token

logger = logging.getLogger(__name__)

VERIFICATION_EMAIL_SUBJECT = "Confirm your Sky Planner email address"


class VerificationStatus(str, enum.Enum):
    SENT = "sent"
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"


class EmailVerificationService:
    """Send verification links and confirm them.

    The account row holds the SHA-256 of the outstanding token and its expiry.
    Sending a new link replaces the previous one.
    """

    def __init__(self, session: AsyncSession, settings: Settings, mailer: Mailer):
        self.session = session
        self.settings = settings
        self.mailer = mailer

    async def send_verification(self, account: Account) -> VerificationStatus:
        if account.email_verified:
            return VerificationStatus.ALREADY_VERIFIED

        raw_token = secrets.token_urlsafe(32)
        ttl_hours = self.settings.email_verification_ttl_hours
        account.verification_token_hash = hash_token(raw_token)
        account.verification_expires_at = datetime.now(UTC) + timedelta(hours=ttl_hours)
        await self.session.commit()

        link = f"{self.settings.email_verification_url}?{urlencode({'token': raw_token})}"
        body = (
            "Confirm the email address for your Sky Planner account by opening this link\n"
            f"(valid for {ttl_hours} hours):\n{link}\n"
        )
        await self.mailer.send(
            OutgoingEmail(to=account.email, subject=VERIFICATION_EMAIL_SUBJECT, body=body)
        )
        logger.info(f"Verification link sent for account {account.id}")
        return VerificationStatus.SENT

    async def verify(self, raw_token: str) -> VerificationStatus:
        """Confirm an address.

        Raises:
            VerificationTokenInvalidError: No account holds this token.
            VerificationTokenExpiredError: The link is past its expiry.
        """
        token_hash = hash_token(raw_token)
        result = await self.session.execute(
            select(Account).where(Account.verification_token_hash == token_hash)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise VerificationTokenInvalidError()
        if account.verification_expires_at and account.verification_expires_at < datetime.now(UTC):
            raise VerificationTokenExpiredError()
        if account.email_verified:
            return VerificationStatus.ALREADY_VERIFIED

        # Matching on the hash makes the link single use under concurrency
        claimed: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            update(Account)
            .where(Account.id == account.id, Account.verification_token_hash == token_hash)
            .values(
                email_verified=True,
                verification_token_hash=None,
                verification_expires_at=None,
            )
        )
        await self.session.commit()
        if claimed.rowcount != 1:
            raise VerificationTokenInvalidError()
        logger.info(f"Email verified for account {account.id}")
        return VerificationStatus.VERIFIED
