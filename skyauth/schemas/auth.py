"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AccountResponse(BaseModel):
    """The signed-in account."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str
    subject_type: str
    organization_id: UUID | None
    organization_slug: str | None
    email_verified: bool
    totp_enabled: bool
    last_login_at: datetime | None
    created_at: datetime


class LoginRequest(BaseModel):
    """Request for login."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)
    remember_me: bool = Field(
        default=False, description="Issue a 30-day session and a refresh token"
    )


class LoginResponse(BaseModel):
    """Result of the password step.

    When two-factor authentication is enabled no session is issued yet; the
    client must call /auth/verify-2fa with ``challenge_token``.
    """

    requires_2fa: bool = False
    challenge_token: str | None = Field(
        default=None, description="One-time token for /auth/verify-2fa (valid 5 minutes)"
    )
    expires_at: datetime | None = Field(default=None, description="Session expiry")
    account: AccountResponse | None = None


class VerifyTwoFactorLoginRequest(BaseModel):
    """Second step of a login with 2FA enabled."""

    challenge_token: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=6, max_length=16, description="TOTP or backup code")


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=256)


class ChangePasswordResponse(BaseModel):
    message: str
    sessions_revoked: int


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=256)
    email: str | None = None
    name: str | None = None


class PasswordStrengthResponse(BaseModel):
    valid: bool
    errors: list[str]
    strength: str = Field(description="weak, fair, good or strong")
    score: int = Field(ge=0, le=100)


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str



class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Second step of a password reset: the emailed token and the new password."""

    token: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=256)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class VerificationStatusResponse(BaseModel):
    status: str = Field(description="sent, verified or already_verified")
