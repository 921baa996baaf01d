"""Active session API endpoints."""

import logging

from fastapi import APIRouter, Depends

from skyauth.api.auth import get_auth_service, get_current_session
from skyauth.schemas.auth import MessageResponse
from skyauth.schemas.sessions import (
    ActiveSessionListResponse,
    ActiveSessionResponse,
    TerminateSessionRequest,
)
from skyauth.services.auth import AuthService
from skyauth.services.tokens import TokenPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=ActiveSessionListResponse)
async def list_sessions(
    payload: TokenPayload = Depends(get_current_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> ActiveSessionListResponse:
    """List the caller's signed-in devices, flagging the current one."""
    records = await auth_service.store.list_active_sessions(
        payload.subject_id, payload.subject_type.value
    )
    sessions = []
    for record in records:
        item = ActiveSessionResponse.model_validate(record)
        item.is_current = record.jti == payload.jti
        sessions.append(item)
    return ActiveSessionListResponse(sessions=sessions)


@router.post("/terminate", response_model=MessageResponse)
async def terminate_session(
    request: TerminateSessionRequest,
    payload: TokenPayload = Depends(get_current_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Sign out another device. The current session cannot be terminated here."""
    await auth_service.store.terminate(
        request.session_id,
        payload.subject_id,
        payload.subject_type.value,
        caller_jti=payload.jti,
    )
    logger.info(f"Session {request.session_id} terminated by {payload.subject_id}")
    return MessageResponse(message="Session terminated")
