"""Session revocation store and active-session records.

Revocation lookups fail closed: any store error rejects the request. The one
exception is a missing ``token_blacklist`` table (schema not migrated yet),
which is logged at CRITICAL and treated as "not revoked". Results are never
cached across requests, so a committed revocation is visible immediately.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.request_utils import MAX_USER_AGENT_LENGTH
from skyauth.models.active_session import ActiveSession
from skyauth.models.refresh_token import RefreshToken
from skyauth.models.token_blacklist import TokenBlacklist
from skyauth.services.errors import (
    CannotTerminateCurrentSessionError,
    SessionNotFoundError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TTL = timedelta(days=90)
# Authenticated requests refresh last_activity_at at most this often
ACTIVITY_TOUCH_INTERVAL = timedelta(seconds=60)
# Rotated or revoked refresh tokens stay this long for reuse detection
REVOKED_REFRESH_RETENTION = timedelta(days=7)

UNDEFINED_TABLE_SQLSTATE = "42P01"


def is_missing_table_error(exc: SQLAlchemyError) -> bool:
    """True when the error means the queried table does not exist."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == UNDEFINED_TABLE_SQLSTATE:
        return True
    message = str(orig).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)


class SessionStore:
    """Revocation entries and active sessions for one database session."""

    def __init__(self, session: AsyncSession, refresh_ttl: timedelta = DEFAULT_REFRESH_TTL):
        self.session = session
        self.refresh_ttl = refresh_ttl

    def _insert(self, model: Any):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")

    # --- Revocation ----------------------------------------------------------

    async def is_blacklisted(self, jti: str) -> bool:
        """Check whether a jti has been revoked.

        Raises:
            StoreUnavailableError: The lookup failed for any reason other than
                the revocation table being absent.
        """
        try:
            result = await self.session.execute(
                select(TokenBlacklist.jti).where(TokenBlacklist.jti == jti)
            )
        except SQLAlchemyError as e:
            if is_missing_table_error(e):
                await self.session.rollback()
                logger.critical(
                    "token_blacklist table is missing; revocation checks are DISABLED "
                    "until migrations run"
                )
                return False
            logger.error(f"Revocation lookup failed, rejecting request: {e}")
            raise StoreUnavailableError() from e
        return result.scalar_one_or_none() is not None

    async def blacklist(
        self,
        jti: str,
        subject_id: str,
        subject_type: str,
        reason: str = "logout",
        ttl: timedelta | None = None,
    ) -> bool:
        """Revoke a jti. Inserting the same jti twice is a no-op.

        The entry lives at least as long as a refresh token, whatever ``ttl``
        the caller passes. Returns True only when this call inserted the entry.
        """
        now = datetime.now(UTC)
        expires_at = now + max(ttl or timedelta(0), self.refresh_ttl)
        stmt = (
            self._insert(TokenBlacklist)
            .values(
                jti=jti,
                subject_id=str(subject_id),
                subject_type=str(subject_type),
                reason=reason,
                expires_at=expires_at,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["jti"])
        )
        try:
            result: CursorResult[Any] = await self.session.execute(stmt)  # type: ignore[assignment]
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to blacklist token: {e}")
            raise StoreUnavailableError() from e

        if result.rowcount != 1:
            return False
        logger.info(f"Token revoked ({reason}) for {subject_type}:{subject_id}")
        return True

    # --- Refresh tokens ------------------------------------------------------

    async def create_refresh_token(
        self,
        jti: str,
        session_jti: str,
        subject_id: str,
        subject_type: str,
        expires_at: datetime,
    ) -> RefreshToken:
        """Record a refresh token issued alongside session ``session_jti``."""
        record = RefreshToken(
            jti=jti,
            session_jti=session_jti,
            subject_id=str(subject_id),
            subject_type=str(subject_type),
            expires_at=expires_at,
        )
        self.session.add(record)
        await self.session.commit()
        return record

    async def get_refresh_token(self, jti: str) -> RefreshToken | None:
        result = await self.session.execute(
            select(RefreshToken)
            .where(RefreshToken.jti == jti)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_refresh_token(self, jti: str, replaced_by: str) -> bool:
        """Mark a live refresh token as rotated into ``replaced_by``.

        The UPDATE only matches an unrevoked, unexpired row, so of several
        concurrent callers presenting the same token exactly one gets True.
        """
        now = datetime.now(UTC)
        try:
            result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                update(RefreshToken)
                .where(
                    RefreshToken.jti == jti,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
                .values(revoked_at=now, revoked_reason="rotated", replaced_by=replaced_by)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to claim refresh token: {e}")
            raise StoreUnavailableError() from e
        return result.rowcount == 1

    async def revoke_refresh_tokens(
        self,
        subject_id: str,
        subject_type: str,
        reason: str,
        *,
        jti: str | None = None,
        session_jti: str | None = None,
        keep_session_jti: str | None = None,
    ) -> int:
        """Revoke a subject's live refresh tokens. Returns the count revoked.

        With no filter every token of the subject is revoked. ``jti`` and
        ``session_jti`` narrow it to one token or to one session's tokens;
        ``keep_session_jti`` spares the tokens of that session.
        """
        conditions = [
            RefreshToken.subject_id == str(subject_id),
            RefreshToken.subject_type == str(subject_type),
            RefreshToken.revoked_at.is_(None),
        ]
        if jti is not None:
            conditions.append(RefreshToken.jti == jti)
        if session_jti is not None:
            conditions.append(RefreshToken.session_jti == session_jti)
        if keep_session_jti is not None:
            conditions.append(RefreshToken.session_jti != keep_session_jti)

        try:
            result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                update(RefreshToken)
                .where(*conditions)
                .values(revoked_at=datetime.now(UTC), revoked_reason=reason)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to revoke refresh tokens: {e}")
            raise StoreUnavailableError() from e

        revoked = result.rowcount or 0
        if revoked:
            logger.info(
                f"{revoked} refresh tokens revoked ({reason}) for {subject_type}:{subject_id}"
            )
        return revoked

    # --- Active sessions -----------------------------------------------------

    async def create_session(
        self,
        jti: str,
        subject_id: str,
        subject_type: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str | None = None,
    ) -> ActiveSession:
        """Record a newly issued session token."""
        record = ActiveSession(
            jti=jti,
            subject_id=str(subject_id),
            subject_type=str(subject_type),
            ip_address=ip_address,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            device_info=device_info,
            last_activity_at=datetime.now(UTC),
            expires_at=expires_at,
        )
        self.session.add(record)
        await self.session.commit()
        return record

    async def list_active_sessions(self, subject_id: str, subject_type: str) -> list[ActiveSession]:
        """Unexpired sessions, most recently active first."""
        result = await self.session.execute(
            select(ActiveSession)
            .where(
                ActiveSession.subject_id == str(subject_id),
                ActiveSession.subject_type == str(subject_type),
                ActiveSession.expires_at > datetime.now(UTC),
            )
            .order_by(ActiveSession.last_activity_at.desc())
        )
        return list(result.scalars().all())

    async def touch(self, jti: str) -> None:
        """Refresh last_activity_at, at most once per ACTIVITY_TOUCH_INTERVAL."""
        now = datetime.now(UTC)
        try:
            await self.session.execute(
                update(ActiveSession)
                .where(
                    ActiveSession.jti == jti,
                    ActiveSession.last_activity_at < now - ACTIVITY_TOUCH_INTERVAL,
                )
                .values(last_activity_at=now)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.warning(f"Failed to update session activity: {e}")

    async def terminate(
        self,
        session_id: uuid.UUID | str,
        subject_id: str,
        subject_type: str,
        caller_jti: str,
    ) -> None:
        """Terminate one of the caller's other sessions.

        Raises:
            SessionNotFoundError: No such session for this subject.
            CannotTerminateCurrentSessionError: It is the caller's own session.
        """
        try:
            session_uuid = (
                session_id if isinstance(session_id, uuid.UUID) else uuid.UUID(str(session_id))
            )
        except (ValueError, AttributeError, TypeError) as e:
            raise SessionNotFoundError() from e

        result = await self.session.execute(
            select(ActiveSession).where(
                ActiveSession.id == session_uuid,
                ActiveSession.subject_id == str(subject_id),
                ActiveSession.subject_type == str(subject_type),
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise SessionNotFoundError()
        if record.jti == caller_jti:
            raise CannotTerminateCurrentSessionError()

        await self.blacklist(
            record.jti,
            subject_id,
            subject_type,
            reason="terminated",
            ttl=record.expires_at - datetime.now(UTC),
        )
        await self.revoke_refresh_tokens(
            subject_id, subject_type, reason="terminated", session_jti=record.jti
        )
        await self.session.execute(delete(ActiveSession).where(ActiveSession.id == session_uuid))
        await self.session.commit()

    async def revoke_session(
        self,
        jti: str,
        subject_id: str,
        subject_type: str,
        reason: str = "logout",
        ttl: timedelta | None = None,
    ) -> None:
        """Blacklist a token, revoke its refresh tokens and drop its active-session row."""
        await self.blacklist(jti, subject_id, subject_type, reason=reason, ttl=ttl)
        await self.revoke_refresh_tokens(subject_id, subject_type, reason=reason, session_jti=jti)
        await self.session.execute(delete(ActiveSession).where(ActiveSession.jti == jti))
        await self.session.commit()

    async def terminate_all_except(
        self,
        subject_id: str,
        subject_type: str,
        keep_jti: str | None,
        reason: str = "password_change",
    ) -> int:
        """Revoke every session of a subject but ``keep_jti`` (all when None).

        Refresh tokens issued with the revoked sessions go with them.
        Returns the number of sessions revoked.
        """
        conditions = [
            ActiveSession.subject_id == str(subject_id),
            ActiveSession.subject_type == str(subject_type),
        ]
        if keep_jti is not None:
            conditions.append(ActiveSession.jti != keep_jti)
        result = await self.session.execute(select(ActiveSession).where(*conditions))
        records = list(result.scalars().all())
        now = datetime.now(UTC)
        for record in records:
            await self.blacklist(
                record.jti,
                subject_id,
                subject_type,
                reason=reason,
                ttl=record.expires_at - now,
            )
            await self.session.execute(delete(ActiveSession).where(ActiveSession.id == record.id))
        await self.session.commit()
        await self.revoke_refresh_tokens(
            subject_id, subject_type, reason=reason, keep_session_jti=keep_jti
        )
        return len(records)

    async def cleanup_expired(self) -> int:
        """Remove expired revocation entries, sessions and refresh tokens.

        Revoked refresh tokens are kept for REVOKED_REFRESH_RETENTION so that
        reuse of a rotated token is still recognised. Returns count removed.
        """
        now = datetime.now(UTC)
        blacklist_result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(TokenBlacklist).where(TokenBlacklist.expires_at < now)
        )
        sessions_result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(ActiveSession).where(ActiveSession.expires_at < now)
        )
        refresh_result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(RefreshToken).where(
                or_(
                    RefreshToken.expires_at < now,
                    RefreshToken.revoked_at < now - REVOKED_REFRESH_RETENTION,
                )
            )
        )
        await self.session.commit()
        return (
            (blacklist_result.rowcount or 0)
            + (sessions_result.rowcount or 0)
            + (refresh_result.rowcount or 0)
        )
