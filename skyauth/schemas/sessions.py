"""Pydantic schemas for active session API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ActiveSessionResponse(BaseModel):
    """One signed-in device."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ip_address: str | None
    device_info: str | None
    last_activity_at: datetime
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class ActiveSessionListResponse(BaseModel):
    sessions: list[ActiveSessionResponse]


class TerminateSessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)
