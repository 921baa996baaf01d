"""Pydantic schemas for two-factor authentication API."""

from datetime import datetime

from pydantic import BaseModel, Field


class TwoFactorSetupResponse(BaseModel):
    """Secret and backup codes, shown once.

    ``provisioning_uri`` is rendered as a QR code by the UI.
    """

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8, description="Six-digit TOTP code")


class TwoFactorDisableRequest(BaseModel):
    """Re-proof of identity: the account password or a TOTP/backup code."""

    password: str | None = Field(default=None, max_length=256)
    code: str | None = Field(default=None, max_length=16)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    verified_at: datetime | None
    backup_codes_remaining: int
