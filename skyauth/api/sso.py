"""Cross-domain SSO endpoints.

GET /sso-launch runs on the issuing origin and answers with a page that
POSTs a one-time token to /sso/redeem on the app origin, which turns it into
an ordinary session cookie.
"""

import logging

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from skyauth.api.auth import (
    get_app_settings,
    get_auth_service,
    get_current_session,
    set_session_cookies,
)
from skyauth.core import get_db
from skyauth.core.config import Settings
from skyauth.core.request_utils import get_client_ip, get_request_host, get_user_agent
from skyauth.services.auth import AuthService
from skyauth.services.errors import SsoTokenExpiredOrUsedError
from skyauth.services.sso import (
    SsoService,
    check_same_origin,
    launch_form_headers,
    render_launch_form,
)
from skyauth.services.tokens import TokenPayload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sso"])


def require_same_origin(request: Request) -> None:
    """Dependency rejecting launch requests that did not come from this host."""
    check_same_origin(
        get_request_host(request),
        request.headers.get("origin"),
        request.headers.get("referer"),
    )


def get_sso_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> SsoService:
    return SsoService(db, settings.sso_token_ttl_seconds)


@router.get(
    "/sso-launch",
    response_class=HTMLResponse,
    dependencies=[Depends(require_same_origin)],
)
async def sso_launch(
    request: Request,
    payload: TokenPayload = Depends(get_current_session),
    sso_service: SsoService = Depends(get_sso_service),
    settings: Settings = Depends(get_app_settings),
) -> HTMLResponse:
    """Issue a redemption token and return the self-submitting form."""
    raw_token = await sso_service.issue(payload.subject, get_client_ip(request))
    return HTMLResponse(
        content=render_launch_form(raw_token, settings.sso_redeem_url),
        headers=launch_form_headers(settings.sso_redeem_url),
    )


@router.post("/sso/redeem", response_class=RedirectResponse)
async def sso_redeem(
    request: Request,
    token: str = Form(default=""),
    sso_service: SsoService = Depends(get_sso_service),
    auth_service: AuthService = Depends(get_auth_service),
) -> RedirectResponse:
    """Consume a redemption token, set the session cookie and redirect."""
    settings = auth_service.settings
    client_ip = get_client_ip(request)

    record = await sso_service.redeem(token, client_ip)
    account = await auth_service.get_account_by_id(record.subject_id)
    if account is None or not account.is_active or account.subject_type != record.subject_type:
        raise SsoTokenExpiredOrUsedError()

    issued = await auth_service.issue_session(
        account,
        ip_address=client_ip,
        user_agent=get_user_agent(request),
    )
    response = RedirectResponse(settings.sso_success_path, status_code=status.HTTP_303_SEE_OTHER)
    set_session_cookies(response, settings, issued)
    logger.info(f"SSO session established for {record.subject_type}:{record.subject_id}")
    return response
