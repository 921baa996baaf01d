"""Two-factor authentication API endpoints.

Setup is two-step: /2fa/setup stores a pending secret and returns it once,
/2fa/verify enables 2FA after a correct code for that secret.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.api.auth import get_app_settings, get_current_account
from skyauth.core import get_db
from skyauth.core.config import Settings
from skyauth.core.request_utils import get_client_ip
from skyauth.models.account import Account
from skyauth.schemas.two_factor import (
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from skyauth.services.auth import verify_password
from skyauth.services.two_factor import TwoFactorService, totp_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/2fa", tags=["two-factor"])


def get_two_factor_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> TwoFactorService:
    """Dependency to get the two-factor service (503 when keys are unset)."""
    return TwoFactorService.from_settings(db, settings)


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup_two_factor(
    http_request: Request,
    current_account: Account = Depends(get_current_account),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorSetupResponse:
    """Generate a new secret and backup codes.

    Calling it again before verification replaces the pending secret.
    """
    result = await two_factor.begin_setup(current_account, get_client_ip(http_request))
    return TwoFactorSetupResponse(
        secret=result.secret,
        provisioning_uri=result.provisioning_uri,
        backup_codes=result.backup_codes,
    )


@router.post("/verify", response_model=TwoFactorStatusResponse)
async def verify_two_factor_setup(
    request: TwoFactorVerifyRequest,
    http_request: Request,
    current_account: Account = Depends(get_current_account),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorStatusResponse:
    """Enable 2FA with a code from the authenticator app."""
    await two_factor.confirm_setup(current_account, request.code, get_client_ip(http_request))
    return TwoFactorStatusResponse(**totp_status(current_account))


@router.post("/disable", response_model=TwoFactorStatusResponse)
async def disable_two_factor(
    request: TwoFactorDisableRequest,
    http_request: Request,
    current_account: Account = Depends(get_current_account),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorStatusResponse:
    """Disable 2FA. Requires the password or a current TOTP/backup code."""
    await two_factor.disable(
        current_account,
        password=request.password,
        code=request.code,
        verify_password=verify_password,
        ip_address=get_client_ip(http_request),
    )
    return TwoFactorStatusResponse(**totp_status(current_account))


@router.get("/status", response_model=TwoFactorStatusResponse)
async def get_two_factor_status(
    current_account: Account = Depends(get_current_account),
) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(**totp_status(current_account))
