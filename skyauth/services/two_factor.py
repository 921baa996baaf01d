"""Two-factor setup, verification and disable.

State per account: ``disabled -> secret_generated (enabled=false) -> enabled``.
State changes are conditional UPDATEs so concurrent requests cannot both win:

- a TOTP code is accepted only when its time step is newer than
  ``totp_last_used_step``, so the same code cannot be replayed within its
  validity window;
- a backup code is consumed against ``totp_recovery_codes_used`` as an
  optimistic version, so one code cannot be spent twice.
"""

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.config import Settings
from skyauth.models.account import Account
from skyauth.models.totp_challenge import TotpChallenge
from skyauth.services.audit import AuditAction, AuditService
from skyauth.services.crypto import CryptoError, decrypt_secret, encrypt_secret
from skyauth.services.errors import (
    BackupCodeExhaustedError,
    ChallengeAttemptsExceededError,
    InvalidCredentialsError,
    ServiceMisconfiguredError,
    StoreUnavailableError,
    TokenInvalidError,
    TotpAlreadyEnabledError,
    TotpCodeInvalidError,
    TotpError,
    TotpNotConfiguredError,
)
from skyauth.services.totp import (
    DIGITS,
    build_provisioning_uri,
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    match_time_step,
    verify_backup_code,
)

logger = logging.getLogger(__name__)

SecondFactorMethod = Literal["totp", "backup"]


@dataclass(frozen=True)
class TotpSecrets:
    """Server-held key material for two-factor storage."""

    encryption_key: str
    encryption_salt: str
    backup_code_salt: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "TotpSecrets":
        """Raises ServiceMisconfiguredError when any secret is unset."""
        if not (
            settings.totp_encryption_key
            and settings.totp_encryption_salt
            and settings.backup_code_salt
        ):
            logger.error("2FA requested but TOTP encryption secrets are not configured")
            raise ServiceMisconfiguredError("Two-factor authentication is not configured")
        return cls(
            encryption_key=settings.totp_encryption_key,
            encryption_salt=settings.totp_encryption_salt,
            backup_code_salt=settings.backup_code_salt,
        )


@dataclass(frozen=True)
class SetupResult:
    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass(frozen=True)
class ClaimedChallenge:
    """Snapshot of a login challenge taken out of the table while it is checked."""

    id: uuid.UUID
    token_hash: str
    account_id: uuid.UUID
    remember_me: bool
    attempts: int
    expires_at: datetime


def _hash_challenge_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _looks_like_totp(code: str) -> bool:
    stripped = code.strip().replace(" ", "")
    return len(stripped) == DIGITS and stripped.isdigit()


def totp_status(account: Account) -> dict[str, Any]:
    """Two-factor state of an account; needs no key material."""
    return {
        "enabled": account.totp_enabled,
        "verified_at": account.totp_verified_at,
        "backup_codes_remaining": len([h for h in account.backup_codes_hash or [] if h]),
    }


class TwoFactorService:
    """TOTP lifecycle for accounts, plus the pending login challenge."""

    def __init__(
        self,
        session: AsyncSession,
        totp_secrets: TotpSecrets,
        issuer: str = "Sky Planner",
        challenge_ttl: timedelta = timedelta(minutes=5),
        challenge_max_attempts: int = 5,
    ):
        self.session = session
        self.secrets = totp_secrets
        self.issuer = issuer
        self.challenge_ttl = challenge_ttl
        self.challenge_max_attempts = challenge_max_attempts
        self.audit = AuditService(session)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "TwoFactorService":
        return cls(
            session,
            TotpSecrets.from_settings(settings),
            issuer=settings.totp_issuer,
            challenge_ttl=timedelta(seconds=settings.totp_challenge_ttl_seconds),
            challenge_max_attempts=settings.totp_challenge_max_attempts,
        )

    def _decrypt(self, account: Account) -> str:
        if not account.totp_secret_encrypted:
            raise TotpNotConfiguredError()
        try:
            return decrypt_secret(
                account.totp_secret_encrypted,
                self.secrets.encryption_key,
                self.secrets.encryption_salt,
            )
        except CryptoError as e:
            logger.error(f"Stored TOTP secret for account {account.id} could not be decrypted")
            raise TotpNotConfiguredError("Stored two-factor secret is unreadable") from e

    async def _conditional_update(self, *criteria: Any, **values: Any) -> bool:
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            update(Account).where(*criteria).values(**values)
        )
        return result.rowcount == 1

    async def _record(
        self,
        action: AuditAction,
        actor: tuple[uuid.UUID, str],
        ip_address: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        subject_id, subject_type = actor
        await self.audit.log(action, str(subject_id), subject_type, ip_address, details)

    # --- Setup ---------------------------------------------------------------

    async def begin_setup(self, account: Account, ip_address: str | None = None) -> SetupResult:
        """Generate and store a new (not yet enabled) secret and backup codes.

        Raises:
            TotpAlreadyEnabledError: 2FA is on; the stored secret is untouched.
        """
        if account.totp_enabled:
            raise TotpAlreadyEnabledError()
        actor = (account.id, account.subject_type)
        label = account.email

        secret = generate_secret()
        backup_codes = generate_backup_codes()
        stored = await self._conditional_update(
            Account.id == account.id,
            Account.totp_enabled.is_(False),
            totp_secret_encrypted=encrypt_secret(
                secret, self.secrets.encryption_key, self.secrets.encryption_salt
            ),
            backup_codes_hash=[
                hash_backup_code(code, self.secrets.backup_code_salt) for code in backup_codes
            ],
            totp_recovery_codes_used=0,
            totp_last_used_step=None,
            totp_verified_at=None,
        )
        if not stored:
            await self.session.rollback()
            raise TotpAlreadyEnabledError()
        await self.session.commit()

        await self._record(AuditAction.SETUP_INITIATED, actor, ip_address)
        await self.session.refresh(account)
        return SetupResult(
            secret=secret,
            provisioning_uri=build_provisioning_uri(secret, label, self.issuer),
            backup_codes=backup_codes,
        )

    async def confirm_setup(
        self, account: Account, code: str, ip_address: str | None = None
    ) -> None:
        """Enable 2FA after one correct code for the pending secret."""
        if account.totp_enabled:
            raise TotpAlreadyEnabledError()
        actor = (account.id, account.subject_type)
        pending_secret = account.totp_secret_encrypted
        secret = self._decrypt(account)

        step = match_time_step(secret, code)
        if step is None:
            await self._record(
                AuditAction.VERIFICATION_FAILED, actor, ip_address, {"stage": "setup"}
            )
            raise TotpCodeInvalidError()

        enabled = await self._conditional_update(
            Account.id == actor[0],
            Account.totp_enabled.is_(False),
            Account.totp_secret_encrypted == pending_secret,
            totp_enabled=True,
            totp_verified_at=datetime.now(UTC),
            totp_last_used_step=step,
        )
        if not enabled:
            await self.session.rollback()
            raise TotpCodeInvalidError()
        await self.session.commit()

        await self._record(AuditAction.SETUP_COMPLETED, actor, ip_address)
        await self.session.refresh(account)
        logger.info(f"2FA enabled for account {actor[0]}")

    # --- Verification --------------------------------------------------------

    async def verify(
        self, account: Account, code: str, ip_address: str | None = None
    ) -> SecondFactorMethod:
        """Check a TOTP or backup code for an account with 2FA enabled.

        Raises:
            TotpNotConfiguredError: 2FA is not enabled.
            TotpCodeInvalidError: Wrong, replayed, or concurrently used code.
            BackupCodeExhaustedError: A backup code was given but none remain.
        """
        await self.session.refresh(account)
        if not account.totp_enabled:
            raise TotpNotConfiguredError()

        code = (code or "").strip()
        if _looks_like_totp(code):
            await self._verify_totp(account, code, ip_address)
            method: SecondFactorMethod = "totp"
        else:
            await self._consume_backup_code(account, code, ip_address)
            method = "backup"
        await self.session.refresh(account)
        return method

    async def _verify_totp(self, account: Account, code: str, ip_address: str | None) -> None:
        actor = (account.id, account.subject_type)
        secret = self._decrypt(account)
        step = match_time_step(secret, code)
        last_step = account.totp_last_used_step
        if step is None or (last_step is not None and step <= last_step):
            await self._record(
                AuditAction.VERIFICATION_FAILED, actor, ip_address, {"method": "totp"}
            )
            raise TotpCodeInvalidError()

        claimed = await self._conditional_update(
            Account.id == actor[0],
            or_(Account.totp_last_used_step.is_(None), Account.totp_last_used_step < step),
            totp_last_used_step=step,
        )
        if not claimed:
            await self.session.rollback()
            await self._record(
                AuditAction.VERIFICATION_FAILED, actor, ip_address, {"method": "totp"}
            )
            raise TotpCodeInvalidError()
        await self.session.commit()

        await self._record(AuditAction.VERIFICATION_SUCCESS, actor, ip_address, {"method": "totp"})

    async def _consume_backup_code(
        self, account: Account, code: str, ip_address: str | None
    ) -> None:
        actor = (account.id, account.subject_type)
        hashes = list(account.backup_codes_hash or [])
        if not any(hashes):
            raise BackupCodeExhaustedError()

        index = verify_backup_code(code, hashes, self.secrets.backup_code_salt)
        if index == -1:
            await self._record(
                AuditAction.VERIFICATION_FAILED, actor, ip_address, {"method": "backup"}
            )
            raise TotpCodeInvalidError()

        remaining = hashes[:index] + hashes[index + 1 :]
        used = account.totp_recovery_codes_used
        consumed = await self._conditional_update(
            Account.id == actor[0],
            Account.totp_recovery_codes_used == used,
            backup_codes_hash=remaining,
            totp_recovery_codes_used=used + 1,
        )
        if not consumed:
            await self.session.rollback()
            await self._record(
                AuditAction.VERIFICATION_FAILED, actor, ip_address, {"method": "backup"}
            )
            raise TotpCodeInvalidError()
        await self.session.commit()

        await self._record(
            AuditAction.BACKUP_CODE_USED, actor, ip_address, {"remaining": len(remaining)}
        )
        logger.info(f"Backup code used for account {actor[0]}; {len(remaining)} remaining")

    # --- Disable -------------------------------------------------------------

    async def disable(
        self,
        account: Account,
        *,
        password: str | None = None,
        code: str | None = None,
        verify_password: Callable[[str, str], bool],
        ip_address: str | None = None,
    ) -> None:
        """Turn 2FA off after re-proof of identity, wiping all TOTP state.

        Either the account password or a valid TOTP/backup code is required.
        """
        if not account.totp_enabled:
            raise TotpNotConfiguredError()
        actor = (account.id, account.subject_type)

        if password:
            if not verify_password(password, account.password_hash):
                await self._record(
                    AuditAction.VERIFICATION_FAILED, actor, ip_address, {"method": "password"}
                )
                raise InvalidCredentialsError()
        elif code:
            await self.verify(account, code, ip_address)
        else:
            raise InvalidCredentialsError()

        await self._conditional_update(
            Account.id == actor[0],
            totp_enabled=False,
            totp_secret_encrypted=None,
            totp_verified_at=None,
            backup_codes_hash=None,
            totp_recovery_codes_used=0,
            totp_last_used_step=None,
        )
        await self.session.commit()

        await self._record(AuditAction.DISABLED, actor, ip_address)
        await self.session.refresh(account)
        logger.info(f"2FA disabled for account {actor[0]}")

    # --- Pending login challenge --------------------------------------------

    async def create_challenge(self, account: Account, remember_me: bool = False) -> str:
        """Record that the password step passed. Returns the raw challenge token."""
        raw_token = secrets.token_urlsafe(32)
        self.session.add(
            TotpChallenge(
                token_hash=_hash_challenge_token(raw_token),
                account_id=account.id,
                remember_me=remember_me,
                attempts=0,
                expires_at=datetime.now(UTC) + self.challenge_ttl,
            )
        )
        await self.session.commit()
        return raw_token

    async def complete_challenge(
        self, raw_token: str, code: str, ip_address: str | None = None
    ) -> tuple[Account, bool]:
        """Verify the second factor for a pending login.

        The challenge row is claimed (deleted) before the code is checked, so
        concurrent submissions for one challenge cannot both issue a session.
        A rejected code puts the challenge back with its attempt counted.

        Returns the account and the remember-me flag from the password step.

        Raises:
            TokenInvalidError: Unknown, expired or already claimed challenge.
            ChallengeAttemptsExceededError: Attempt limit reached; the
                challenge is gone and the user must log in again.
            TotpError: The code was rejected (attempt counted).
            StoreUnavailableError: The challenge could not be claimed.
        """
        result = await self.session.execute(
            select(TotpChallenge).where(
                TotpChallenge.token_hash == _hash_challenge_token(raw_token)
            )
        )
        challenge = result.scalar_one_or_none()
        if challenge is None or challenge.expires_at <= datetime.now(UTC):
            raise TokenInvalidError("Login challenge expired or invalid")

        claimed = ClaimedChallenge(
            id=challenge.id,
            token_hash=challenge.token_hash,
            account_id=challenge.account_id,
            remember_me=challenge.remember_me,
            attempts=challenge.attempts,
            expires_at=challenge.expires_at,
        )
        self.session.expunge(challenge)
        if not await self._claim_challenge(claimed):
            raise TokenInvalidError("Login challenge expired or invalid")

        if claimed.attempts >= self.challenge_max_attempts:
            raise ChallengeAttemptsExceededError()

        account = await self.session.get(Account, claimed.account_id)
        if account is None or not account.is_active:
            raise TokenInvalidError("Login challenge expired or invalid")

        try:
            await self.verify(account, code, ip_address)
        except TotpError:
            if claimed.attempts + 1 >= self.challenge_max_attempts:
                raise ChallengeAttemptsExceededError() from None
            await self._restore_challenge(claimed)
            raise

        return account, claimed.remember_me

    async def _claim_challenge(self, claimed: ClaimedChallenge) -> bool:
        """Delete the challenge if nobody else has. True for the single winner."""
        try:
            result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                delete(TotpChallenge).where(
                    TotpChallenge.id == claimed.id,
                    TotpChallenge.attempts == claimed.attempts,
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to claim login challenge: {e}")
            raise StoreUnavailableError() from e
        return result.rowcount == 1

    async def _restore_challenge(self, claimed: ClaimedChallenge) -> None:
        self.session.add(
            TotpChallenge(
                id=claimed.id,
                token_hash=claimed.token_hash,
                account_id=claimed.account_id,
                remember_me=claimed.remember_me,
                attempts=claimed.attempts + 1,
                expires_at=claimed.expires_at,
            )
        )
        await self.session.commit()


async def cleanup_expired_challenges(session: AsyncSession) -> int:
    """Remove login challenges past their expiry. Returns count removed."""
    result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
        delete(TotpChallenge).where(TotpChallenge.expires_at < datetime.now(UTC))
    )
    await session.commit()
    return result.rowcount or 0
