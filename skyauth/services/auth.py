"""Authentication service: credentials, session issuance and token checks."""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.config import Settings
from skyauth.models.account import Account
from skyauth.services.errors import (
    InvalidCredentialsError,
    ServiceMisconfiguredError,
    SessionRevokedError,
    TokenInvalidError,
)
from skyauth.services.password_policy import UserContext, assert_valid_password
from skyauth.services.sessions import SessionStore
from skyauth.services.tokens import (
    MemberSubject,
    StaffSubject,
    Subject,
    SubjectType,
    TokenKind,
    TokenPayload,
    sign_token,
    verify_token,
)

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

# Compared against when the account does not exist so timing matches
_DUMMY_HASH = ph.hash("skyauth-dummy-password")


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except (VerificationError, InvalidHashError):
        return False


def parse_device_info(user_agent: str | None) -> str:
    """Short "Browser on OS" description of a User-Agent string."""
    if not user_agent:
        return "Unknown device"

    browser = "Unknown browser"
    if "Firefox/" in user_agent:
        browser = "Firefox"
    elif "Edg/" in user_agent:
        browser = "Edge"
    elif "Chrome/" in user_agent:
        browser = "Chrome"
    elif "Safari/" in user_agent:
        browser = "Safari"

    # Mobile platforms first: Android UAs contain "Linux", iOS UAs "Mac OS X"
    os_name = "Unknown OS"
    if "Android" in user_agent:
        os_name = "Android"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Windows" in user_agent:
        os_name = "Windows"
    elif "Mac OS X" in user_agent or "Macintosh" in user_agent:
        os_name = "macOS"
    elif "Linux" in user_agent:
        os_name = "Linux"

    return f"{browser} on {os_name}"


def subject_for(account: Account) -> Subject:
    """Token subject for an account."""
    organization_id = str(account.organization_id) if account.organization_id else None
    if account.subject_type == SubjectType.MEMBER.value:
        if organization_id is None:
            raise InvalidCredentialsError("Account is not linked to an organization")
        return MemberSubject(
            user_id=str(account.id),
            organization_id=organization_id,
            email=account.email,
            organization_slug=account.organization_slug,
            subscription_status=account.subscription_status,
            subscription_plan=account.subscription_plan,
        )
    return StaffSubject(
        user_id=str(account.id),
        email=account.email,
        organization_id=organization_id,
        organization_slug=account.organization_slug,
    )


@dataclass(frozen=True)
class IssuedSession:
    """Tokens handed to the client after a successful login."""

    session_token: str
    session_jti: str
    session_max_age: int
    expires_at: datetime
    refresh_token: str | None = None
    refresh_max_age: int | None = None


class AuthService:
    """Service for authentication operations."""

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings
        self.store = SessionStore(session, timedelta(days=settings.refresh_token_ttl_days))

    @property
    def signing_secret(self) -> str:
        if not self.settings.jwt_secret_key:
            logger.error("JWT_SECRET_KEY is not configured; refusing to issue or verify sessions")
            raise ServiceMisconfiguredError()
        return self.settings.jwt_secret_key

    # --- Accounts ------------------------------------------------------------

    async def get_account_by_email(self, email: str) -> Account | None:
        result = await self.session.execute(
            select(Account).where(Account.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_account_by_id(self, account_id: str | uuid.UUID) -> Account | None:
        try:
            key = account_id if isinstance(account_id, uuid.UUID) else uuid.UUID(str(account_id))
        except ValueError:
            return None
        return await self.session.get(Account, key)

    async def create_account(
        self,
        email: str,
        password: str,
        name: str = "",
        subject_type: SubjectType = SubjectType.MEMBER,
        organization_id: uuid.UUID | None = None,
        organization_slug: str | None = None,
    ) -> Account:
        """Create an account. Members must belong to an organization."""
        if subject_type is SubjectType.MEMBER and organization_id is None:
            raise ValueError("Member accounts require an organization")
        account = Account(
            email=email.strip().lower(),
            name=name,
            subject_type=subject_type.value,
            password_hash=hash_password(password),
            organization_id=organization_id,
            organization_slug=organization_slug,
        )
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        logger.info(f"Created {subject_type.value} account {account.id}")
        return account

    async def authenticate(self, email: str, password: str) -> Account:
        """Check credentials and return the account.

        Raises InvalidCredentialsError for unknown accounts, wrong passwords and
        inactive accounts alike, to prevent account enumeration.
        """
        account = await self.get_account_by_email(email)

        if account is None:
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentialsError()

        if not verify_password(password, account.password_hash):
            raise InvalidCredentialsError()

        if not account.is_active:
            raise InvalidCredentialsError()

        if ph.check_needs_rehash(account.password_hash):
            account.password_hash = hash_password(password)
        account.last_login_at = datetime.now(UTC)
        await self.session.commit()
        return account

    async def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        current_jti: str,
    ) -> int:
        """Change a password and revoke every other session of the account.

        All of the account's refresh tokens are revoked as well. Returns the
        number of sessions revoked.
        """
        if not verify_password(current_password, account.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        assert_valid_password(new_password, user_context=UserContext(account.email, account.name))

        account_id = account.id
        subject_type = account.subject_type
        account.password_hash = hash_password(new_password)
        await self.session.commit()

        revoked = await self.store.terminate_all_except(str(account_id), subject_type, current_jti)
        # Remember-me on every device, this one included, must be re-established
        await self.store.revoke_refresh_tokens(
            str(account_id), subject_type, reason="password_change"
        )
        logger.info(f"Password changed for account {account_id}; {revoked} other sessions revoked")
        return revoked

    # --- Sessions ------------------------------------------------------------

    async def issue_session(
        self,
        account: Account,
        remember_me: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
        refresh_jti: str | None = None,
    ) -> IssuedSession:
        """Sign a session token (and a refresh token for remember-me) and record the device.

        The refresh token is recorded against the session it was issued with,
        so revoking the session revokes it too.
        """
        secret = self.signing_secret
        subject = subject_for(account)
        now = datetime.now(UTC)

        if remember_me:
            lifetime = timedelta(days=self.settings.remember_me_ttl_days)
        else:
            lifetime = timedelta(hours=self.settings.session_token_ttl_hours)

        jti = secrets.token_hex(16)
        expires_at = now + lifetime
        session_token = sign_token(subject, secret, expires_in=lifetime, jti=jti, now=now)

        await self.store.create_session(
            jti=jti,
            subject_id=subject.user_id,
            subject_type=subject.subject_type.value,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=parse_device_info(user_agent),
        )

        refresh_token = None
        refresh_max_age = None
        if remember_me:
            refresh_lifetime = timedelta(days=self.settings.refresh_token_ttl_days)
            refresh_jti = refresh_jti or secrets.token_hex(16)
            refresh_token = sign_token(
                subject,
                secret,
                expires_in=refresh_lifetime,
                kind="refresh",
                jti=refresh_jti,
                now=now,
            )
            await self.store.create_refresh_token(
                jti=refresh_jti,
                session_jti=jti,
                subject_id=subject.user_id,
                subject_type=subject.subject_type.value,
                expires_at=now + refresh_lifetime,
            )
            refresh_max_age = int(refresh_lifetime.total_seconds())

        return IssuedSession(
            session_token=session_token,
            session_jti=jti,
            session_max_age=int(lifetime.total_seconds()),
            expires_at=expires_at,
            refresh_token=refresh_token,
            refresh_max_age=refresh_max_age,
        )

    async def authenticate_token(self, token: str, kind: TokenKind = "session") -> TokenPayload:
        """Verify a token, then check it has not been revoked.

        Raises:
            TokenExpiredError, TokenInvalidError, TokenMalformedError
            SessionRevokedError: The jti is blacklisted.
            StoreUnavailableError: Revocation could not be checked.
        """
        payload = verify_token(token, self.signing_secret).raise_for_error()
        if payload.kind != kind:
            raise TokenInvalidError(f"Expected a {kind} token")
        if await self.store.is_blacklisted(payload.jti):
            raise SessionRevokedError()
        return payload

    async def rotate_refresh_token(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[Account, IssuedSession]:
        """Exchange a refresh token for a new session and refresh token.

        Each refresh token works once: the stored row is claimed with a
        conditional update before anything is issued. Presenting a token that
        was already rotated is treated as theft and revokes every session and
        refresh token of the subject.

        Raises:
            SessionRevokedError: The token was revoked, rotated or never recorded.
        """
        payload = await self.authenticate_token(refresh_token, kind="refresh")
        account = await self.get_account_by_id(payload.subject_id)
        if account is None or not account.is_active:
            raise TokenInvalidError()

        subject_id = payload.subject_id
        subject_type = payload.subject_type.value
        new_refresh_jti = secrets.token_hex(16)
        if not await self.store.claim_refresh_token(payload.jti, replaced_by=new_refresh_jti):
            record = await self.store.get_refresh_token(payload.jti)
            if record is not None and record.replaced_by is not None:
                logger.warning(
                    f"Rotated refresh token reused for {subject_type}:{subject_id}; "
                    "revoking all sessions"
                )
                await self.revoke_all_sessions(subject_id, subject_type, reason="refresh_reuse")
            raise SessionRevokedError()

        record = await self.store.get_refresh_token(payload.jti)
        if record is not None:
            await self.store.revoke_session(
                record.session_jti,
                subject_id,
                subject_type,
                reason="refresh_rotated",
                ttl=timedelta(days=self.settings.remember_me_ttl_days),
            )
        issued = await self.issue_session(
            account,
            remember_me=True,
            ip_address=ip_address,
            user_agent=user_agent,
            refresh_jti=new_refresh_jti,
        )
        return account, issued

    async def revoke_all_sessions(self, subject_id: str, subject_type: str, reason: str) -> int:
        """Revoke every session and refresh token of a subject."""
        revoked = await self.store.terminate_all_except(
            subject_id, subject_type, keep_jti=None, reason=reason
        )
        await self.store.revoke_refresh_tokens(subject_id, subject_type, reason=reason)
        return revoked
