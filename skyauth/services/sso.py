"""Cross-domain SSO relay.

A signed-in user on the marketing origin is handed to the app origin with a
one-time redemption token. The token travels in the body of a self-submitting
POST form, never in a URL, so it cannot leak through history, access logs or
a Referer header. Tokens live 30 seconds, are bound to the issuing client IP
and can be redeemed once.
"""

import base64
import hashlib
import hmac
import html
import logging
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.core.request_utils import hash_client_ip
from skyauth.models.sso_token import SsoToken
from skyauth.services.errors import (
    SsoIpMismatchError,
    SsoOriginMismatchError,
    SsoTokenExpiredOrUsedError,
    StoreUnavailableError,
)
from skyauth.services.tokens import Subject

logger = logging.getLogger(__name__)

MAX_TOKEN_TTL_SECONDS = 30

_SUBMIT_SCRIPT = "document.getElementById('sso-form').submit();"
_SUBMIT_SCRIPT_HASH = base64.b64encode(hashlib.sha256(_SUBMIT_SCRIPT.encode()).digest()).decode()

_LAUNCH_FORM_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="referrer" content="no-referrer">
  <title>Redirecting...</title>
</head>
<body>
  <form id="sso-form" method="POST" action="{action}">
    <input type="hidden" name="token" value="{token}">
    <noscript><button type="submit">Continue to the application</button></noscript>
  </form>
  <script>{script}</script>
</body>
</html>
"""


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _netloc(url: str) -> str | None:
    try:
        netloc = urlsplit(url).netloc
    except ValueError:
        return None
    return netloc.lower() or None


def check_same_origin(host: str | None, origin: str | None, referer: str | None) -> None:
    """Reject launch requests not made from a page on this host.

    The Referer wins when both headers are present. A request with neither is
    rejected, so a third-party ``<img>`` or bare link cannot trigger issuance.

    Raises:
        SsoOriginMismatchError
    """
    source = referer or origin
    if not source or not host:
        raise SsoOriginMismatchError()
    if _netloc(source) != host.lower():
        logger.warning(f"SSO launch rejected: {_netloc(source)!r} does not match host {host!r}")
        raise SsoOriginMismatchError()


def render_launch_form(token: str, action_url: str) -> str:
    """HTML page that POSTs the token to the redeeming origin."""
    return _LAUNCH_FORM_TEMPLATE.format(
        action=html.escape(action_url, quote=True),
        token=html.escape(token, quote=True),
        script=_SUBMIT_SCRIPT,
    )


def launch_form_headers(action_url: str) -> dict[str, str]:
    """Response headers for the launch page.

    The page is never cached, sends no Referer, may only run its own submit
    script and may only post to the redeeming origin.
    """
    parts = urlsplit(action_url)
    form_origin = f"{parts.scheme}://{parts.netloc}"
    return {
        "Cache-Control": "no-store, no-cache, must-revalidate",
        "Referrer-Policy": "no-referrer",
        "X-Content-Type-Options": "nosniff",
        "Content-Security-Policy": (
            f"default-src 'none'; script-src 'sha256-{_SUBMIT_SCRIPT_HASH}'; "
            f"form-action {form_origin}; frame-ancestors 'none'"
        ),
    }


class SsoService:
    """Issues and redeems SSO tokens."""

    def __init__(self, session: AsyncSession, ttl_seconds: int = MAX_TOKEN_TTL_SECONDS):
        self.session = session
        self.ttl = timedelta(seconds=min(ttl_seconds, MAX_TOKEN_TTL_SECONDS))

    async def issue(self, subject: Subject, client_ip: str | None) -> str:
        """Store a new redemption token and return the raw value."""
        raw_token = secrets.token_hex(32)
        organization_id = subject.organization_id
        record = SsoToken(
            token_hash=hash_token(raw_token),
            subject_id=subject.user_id,
            subject_type=subject.subject_type.value,
            organization_id=uuid.UUID(str(organization_id)) if organization_id else None,
            ip_hash=hash_client_ip(client_ip),
            expires_at=datetime.now(UTC) + self.ttl,
        )
        self.session.add(record)
        await self.session.commit()
        logger.info(f"SSO token issued for {record.subject_type}:{record.subject_id}")
        return raw_token

    async def redeem(self, raw_token: str, client_ip: str | None) -> SsoToken:
        """Consume a redemption token.

        Raises:
            SsoTokenExpiredOrUsedError: Unknown, expired, already redeemed, or
                redeemed concurrently by another request.
            SsoIpMismatchError: Redeeming IP differs from the issuing IP. The
                token is not consumed.
        """
        if not raw_token:
            raise SsoTokenExpiredOrUsedError()

        now = datetime.now(UTC)
        result = await self.session.execute(
            select(SsoToken).where(SsoToken.token_hash == hash_token(raw_token))
        )
        record = result.scalar_one_or_none()
        if record is None or record.used_at is not None or record.expires_at <= now:
            raise SsoTokenExpiredOrUsedError()

        if not hmac.compare_digest(record.ip_hash, hash_client_ip(client_ip)):
            logger.warning(
                f"SSO redemption from a different IP for {record.subject_type}:{record.subject_id}"
            )
            raise SsoIpMismatchError()

        try:
            claimed: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                update(SsoToken)
                .where(
                    SsoToken.id == record.id,
                    SsoToken.used_at.is_(None),
                    SsoToken.expires_at > now,
                )
                .values(used_at=now)
            )
            if claimed.rowcount != 1:
                await self.session.rollback()
                raise SsoTokenExpiredOrUsedError()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"SSO redemption failed: {e}")
            raise StoreUnavailableError() from e

        return record

    async def cleanup_expired(self) -> int:
        """Remove expired and used tokens. Returns count removed."""
        now = datetime.now(UTC)
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(SsoToken).where(or_(SsoToken.expires_at < now, SsoToken.used_at.is_not(None)))
        )
        await self.session.commit()
        return result.rowcount or 0
