"""
Pydantic schemas for the sessions API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus


class SessionCreateRequest(BaseModel):
    """Schema for placing a call or sending a message."""

    kind: SessionKind = Field(..., description="call or message")
    counterpart_number: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Destination phone number; normalized to E.164",
    )
    lead_id: UUID | None = Field(default=None, description="Lead this communication relates to")
    record: bool = Field(default=True, description="Record the call (calls only)")
    content: str | None = Field(default=None, max_length=1600, description="Message body (messages only)")
    customer_name: str | None = Field(default=None, max_length=255)
    media_urls: list[HttpUrl] = Field(
        default_factory=list,
        max_length=10,
        description="Media attached to a message (MMS); messages only",
    )
    tags: list[str] = Field(default_factory=list, max_length=20)


class SessionCreatedResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    provider_correlation_id: str | None


class InitiationFailureResponse(BaseModel):
    """Body returned when the provider rejected or timed out an outbound attempt."""

    code: str
    message: str
    retryable: bool
    session_id: UUID
    status: SessionStatus = SessionStatus.FAILED


class SessionResponse(BaseModel):
    """Schema for a single session."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    kind: SessionKind
    direction: SessionDirection
    status: SessionStatus
    owner_user_id: UUID | None
    counterpart_number: str
    owner_number: str
    provider_correlation_id: str | None
    initiated_at: datetime
    terminated_at: datetime | None
    duration_seconds: int | None
    lead_id: UUID | None
    customer_name: str | None = None
    content: str | None
    recording_url: str | None
    failure_reason: str | None
    tags: list[str]
    metadata: dict[str, str] = Field(default_factory=dict, validation_alias="session_metadata")


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class SessionListResponse(BaseModel):
    """Schema for paginated session list response."""

    items: list[SessionResponse]
    pagination: Pagination


class SessionEndRequest(BaseModel):
    tags: list[str] = Field(default_factory=list, max_length=20)
    notes: str | None = Field(default=None, max_length=2000)


class SessionEndResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    termination_acknowledged: bool


class SessionMuteResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    muted: bool


class CallStats(BaseModel):
    total: int
    today: int
    completed: int
    missed: int
    total_duration: int
    average_duration: int


class MessageStats(BaseModel):
    total: int
    today: int
    delivered: int
    failed: int
    delivery_rate: float


class SessionStatsResponse(BaseModel):
    calls: CallStats
    messages: MessageStats
