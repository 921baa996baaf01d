"""Session token codec.

Tokens are HS256 JWTs. The algorithm is fixed: verification only ever accepts
HS256, so a token that names another algorithm (including ``none``) is
rejected as invalid.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Literal

import jwt
from jwt.exceptions import ExpiredSignatureError, MissingRequiredClaimError, PyJWTError

from skyauth.services.errors import (
    ServiceMisconfiguredError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
)

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_EXPIRES_IN = timedelta(hours=24)
REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub", "type"]

TokenKind = Literal["session", "refresh"]
TOKEN_KINDS: tuple[str, ...] = ("session", "refresh")
VerifyError = Literal["expired", "invalid", "malformed"]


class SubjectType(str, Enum):
    """The two mutually exclusive account kinds."""

    MEMBER = "member"
    STAFF = "staff"


@dataclass(frozen=True)
class MemberSubject:
    """A user belonging to a customer organization."""

    subject_type: ClassVar[SubjectType] = SubjectType.MEMBER

    user_id: str
    organization_id: str
    email: str | None = None
    organization_slug: str | None = None
    subscription_status: str | None = None
    subscription_plan: str | None = None
    trial_ends_at: str | None = None
    current_period_end: str | None = None


@dataclass(frozen=True)
class StaffSubject:
    """An internal operator; may act on behalf of an organization."""

    subject_type: ClassVar[SubjectType] = SubjectType.STAFF

    user_id: str
    email: str | None = None
    organization_id: str | None = None
    organization_slug: str | None = None


Subject = MemberSubject | StaffSubject

# Wire claim name -> subject attribute, for the optional claims
_OPTIONAL_CLAIMS = {
    "email": "email",
    "org_id": "organization_id",
    "org_slug": "organization_slug",
    "sub_status": "subscription_status",
    "plan": "subscription_plan",
    "trial_ends_at": "trial_ends_at",
    "period_end": "current_period_end",
}


@dataclass(frozen=True)
class TokenPayload:
    """Verified token contents."""

    subject: Subject
    jti: str
    issued_at: datetime
    expires_at: datetime
    kind: str = "session"

    @property
    def subject_id(self) -> str:
        return self.subject.user_id

    @property
    def subject_type(self) -> SubjectType:
        return self.subject.subject_type


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of verify_token: a payload on success, an error tag otherwise."""

    payload: TokenPayload | None = None
    error: VerifyError | None = None
    detail: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return self.payload is not None

    def raise_for_error(self) -> TokenPayload:
        """Return the payload or raise the matching token error."""
        if self.payload is not None:
            return self.payload
        if self.error == "expired":
            raise TokenExpiredError()
        if self.error == "malformed":
            raise TokenMalformedError()
        raise TokenInvalidError()


def _require_secret(secret: str | None) -> str:
    if not secret:
        raise ServiceMisconfiguredError("Token signing secret is not configured")
    return secret


def subject_to_claims(subject: Subject) -> dict[str, Any]:
    claims: dict[str, Any] = {
        "sub": str(subject.user_id),
        "type": subject.subject_type.value,
    }
    for claim, attr in _OPTIONAL_CLAIMS.items():
        value = getattr(subject, attr, None)
        if value is not None:
            claims[claim] = str(value)
    return claims


def subject_from_claims(claims: dict[str, Any]) -> Subject:
    """Rebuild the tagged subject from wire claims.

    Raises:
        TokenMalformedError: unknown subject type, or a member without an
            organization id.
    """
    try:
        subject_type = SubjectType(claims.get("type"))
    except ValueError as e:
        raise TokenMalformedError(f"Unknown subject type: {claims.get('type')!r}") from e

    optional = {
        attr: claims[claim] for claim, attr in _OPTIONAL_CLAIMS.items() if claims.get(claim)
    }
    user_id = str(claims["sub"])

    if subject_type is SubjectType.MEMBER:
        if "organization_id" not in optional:
            raise TokenMalformedError("Member token without organization")
        return MemberSubject(user_id=user_id, **optional)

    return StaffSubject(
        user_id=user_id,
        email=optional.get("email"),
        organization_id=optional.get("organization_id"),
        organization_slug=optional.get("organization_slug"),
    )


def sign_token(
    subject: Subject,
    secret: str | None,
    expires_in: timedelta = DEFAULT_EXPIRES_IN,
    kind: TokenKind = "session",
    jti: str | None = None,
    now: datetime | None = None,
) -> str:
    """Sign a token for a subject.

    A random jti is generated when the caller does not supply one.
    """
    secret = _require_secret(secret)
    if kind not in TOKEN_KINDS:
        raise ValueError(f"Unknown token kind: {kind}")

    issued_at = now or datetime.now(UTC)
    payload = subject_to_claims(subject)
    payload.update(
        {
            "kind": kind,
            "jti": jti or secrets.token_hex(16),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + expires_in).timestamp()),
        }
    )
    return str(jwt.encode(payload, secret, algorithm=ALGORITHM))


def verify_token(token: str, secret: str | None) -> VerifyResult:
    """Verify signature, expiry and shape of a token. No I/O."""
    secret = _require_secret(secret)
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={"require": REQUIRED_CLAIMS},
        )
    except ExpiredSignatureError as e:
        return VerifyResult(error="expired", detail=str(e))
    except MissingRequiredClaimError as e:
        return VerifyResult(error="malformed", detail=str(e))
    except PyJWTError as e:
        return VerifyResult(error="invalid", detail=str(e))

    kind = claims.get("kind", "session")
    if kind not in TOKEN_KINDS:
        return VerifyResult(error="malformed", detail=f"Unknown token kind: {kind!r}")

    try:
        subject = subject_from_claims(claims)
    except TokenMalformedError as e:
        return VerifyResult(error="malformed", detail=e.message)

    try:
        issued_at = datetime.fromtimestamp(int(claims["iat"]), UTC)
        expires_at = datetime.fromtimestamp(int(claims["exp"]), UTC)
    except (TypeError, ValueError, OverflowError) as e:
        return VerifyResult(error="malformed", detail=str(e))

    return VerifyResult(
        payload=TokenPayload(
            subject=subject,
            jti=str(claims["jti"]),
            issued_at=issued_at,
            expires_at=expires_at,
            kind=kind,
        )
    )


def decode_token(token: str) -> dict[str, Any] | None:
    """Read claims without checking the signature.

    Only for cheap expiry pre-checks; never for authorization decisions.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def get_token_ttl(token: str, now: datetime | None = None) -> int:
    """Seconds until the token expires; 0 when expired or unreadable."""
    claims = decode_token(token)
    if not claims or not isinstance(claims.get("exp"), int | float):
        return 0
    current = (now or datetime.now(UTC)).timestamp()
    return max(0, int(claims["exp"] - current))


def is_token_expired(token: str, now: datetime | None = None) -> bool:
    return get_token_ttl(token, now) <= 0
