"""Forgotten-password flow: emailed single-use reset links.

Only the SHA-256 of a reset token is stored. A new request replaces any
earlier link for the account, and redeeming a link revokes every session and
refresh token of the account.
"""

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.config import Settings
from skyauth.models.account import Account
from skyauth.models.password_reset_token import PasswordResetToken
from skyauth.services.auth import AuthService, hash_password
from skyauth.services.errors import ResetTokenInvalidError, StoreUnavailableError
from skyauth.services.mail import Mailer, OutgoingEmail, redact_email
from skyauth.services.password_policy import UserContext, assert_valid_password
from skyauth.services.sso import hash_token

logger = logging.getLogger(__name__)

RESET_EMAIL_SUBJECT = "Reset your Sky Planner password"


def reset_email(to: str, link: str, ttl_minutes: int) -> OutgoingEmail:
    body = (
        "Someone asked to reset the password for your Sky Planner account.\n\n"
        f"Choose a new password here (the link works once, for {ttl_minutes} minutes):\n"
        f"{link}\n\n"
        "If this was not you, ignore this email; your password is unchanged."
    )
    return OutgoingEmail(to=to, subject=RESET_EMAIL_SUBJECT, body=body)


class PasswordResetService:
    """Issue and redeem password reset links."""

    def __init__(self, session: AsyncSession, settings: Settings, mailer: Mailer):
        self.session = session
        self.settings = settings
        self.mailer = mailer
        self.auth = AuthService(session, settings)

    async def request_reset(self, email: str) -> None:
        """Email a reset link when the address belongs to an active account.

        Unknown and inactive addresses are silently ignored; the caller gets the
        same answer either way.
        """
        account = await self.auth.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info(f"Password reset requested for unknown address {redact_email(email)}")
            return

        raw_token = secrets.token_urlsafe(32)
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        try:
            await self.session.execute(
                delete(PasswordResetToken).where(PasswordResetToken.account_id == account.id)
            )
            self.session.add(
                PasswordResetToken(
                    account_id=account.id,
                    token_hash=hash_token(raw_token),
                    expires_at=datetime.now(UTC) + ttl,
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to store password reset token: {e}")
            raise StoreUnavailableError() from e

        link = f"{self.settings.password_reset_url}?{urlencode({'token': raw_token})}"
        await self.mailer.send(
            reset_email(account.email, link, self.settings.password_reset_ttl_minutes)
        )
        logger.info(f"Password reset link issued for account {account.id}")

    async def redeem_reset(self, raw_token: str, new_password: str) -> Account:
        """Set a new password with a reset token.

        The token is consumed by a conditional update, so a link works once
        even when submitted concurrently.

        Raises:
            ResetTokenInvalidError: Unknown, expired or used token.
            PasswordTooWeakError: The new password fails validation; the token
                stays usable.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == hash_token(raw_token),
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > now,
            )
        )
        reset = result.scalar_one_or_none()
        if reset is None:
            raise ResetTokenInvalidError()

        account = await self.session.get(Account, reset.account_id)
        if account is None or not account.is_active:
            raise ResetTokenInvalidError()

        assert_valid_password(new_password, user_context=UserContext(account.email, account.name))

        consumed: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            update(PasswordResetToken)
            .where(PasswordResetToken.id == reset.id, PasswordResetToken.used_at.is_(None))
            .values(used_at=now)
        )
        if consumed.rowcount != 1:
            await self.session.rollback()
            raise ResetTokenInvalidError()
        account.password_hash = hash_password(new_password)
        await self.session.commit()

        revoked = await self.auth.revoke_all_sessions(
            str(account.id), account.subject_type, reason="password_reset"
        )
        logger.info(f"Password reset for account {account.id}; {revoked} sessions revoked")
        return account


async def cleanup_expired_reset_tokens(session: AsyncSession) -> int:
    """Delete used and expired reset tokens. Returns the count removed."""
    result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
        delete(PasswordResetToken).where(
            or_(
                PasswordResetToken.expires_at < datetime.now(UTC),
                PasswordResetToken.used_at.is_not(None),
            )
        )
    )
    await session.commit()
    return result.rowcount or 0
