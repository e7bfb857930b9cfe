"""
API router for communication sessions.

Outbound initiation, best-effort termination, mute controls for live calls,
and the scoped read paths (listing, single session, dashboard stats).
"""

import math
from datetime import datetime, time, timezone
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.auth.middleware import CurrentUser, get_current_user
from comms_engine.sessions.access import AccessScope
from comms_engine.sessions.call_control import CallController
from comms_engine.sessions.initiator import InitiationOptions, OutboundInitiator
from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus
from comms_engine.sessions.repository import SessionFilters, SessionRepository
from comms_engine.sessions.schemas import (
    InitiationFailureResponse,
    Pagination,
    SessionCreatedResponse,
    SessionCreateRequest,
    SessionEndRequest,
    SessionEndResponse,
    SessionListResponse,
    SessionMuteResponse,
    SessionResponse,
    SessionStatsResponse,
)
from comms_engine.sessions.terminator import SessionTerminator
from comms_engine.shared.audit import AuditSink, StructuredAuditSink
from comms_engine.shared.database import get_db_session
from comms_engine.shared.exceptions import NotFoundError
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.factory import ProviderAdapters, get_adapters

logger = get_logger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def get_audit_sink(request: Request) -> AuditSink:
    return getattr(request.app.state, "audit", None) or StructuredAuditSink()


def get_initiator(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db_session)],
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    audit: Annotated[AuditSink, Depends(get_audit_sink)],
) -> OutboundInitiator:
    """Dependency for the outbound initiator."""
    return OutboundInitiator(
        session,
        adapters,
        audit=audit,
        timeout_seconds=request.app.state.telephony_config.initiation_timeout_seconds,
    )


def get_terminator(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    audit: Annotated[AuditSink, Depends(get_audit_sink)],
) -> SessionTerminator:
    return SessionTerminator(session, adapters, audit=audit)


def get_call_controller(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    audit: Annotated[AuditSink, Depends(get_audit_sink)],
) -> CallController:
    return CallController(session, adapters, audit=audit)


@router.post(
    "",
    response_model=SessionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        502: {"model": InitiationFailureResponse, "description": "Transient provider failure"},
        422: {"model": InitiationFailureResponse, "description": "Permanent provider failure"},
    },
    summary="Place a call or send a message",
)
async def create_session(
    body: SessionCreateRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    initiator: Annotated[OutboundInitiator, Depends(get_initiator)],
) -> SessionCreatedResponse | JSONResponse:
    result = await initiator.initiate(
        body.kind,
        owner_user_id=current_user.id,
        counterpart_number=body.counterpart_number,
        lead_id=body.lead_id,
        options=InitiationOptions(
            record=body.record,
            content=body.content,
            customer_name=body.customer_name,
            media_urls=tuple(str(url) for url in body.media_urls),
            tags=tuple(body.tags),
        ),
    )

    if result.error is not None:
        failure = InitiationFailureResponse(
            code=result.error.provider_code or result.error.code,
            message=result.error.message,
            retryable=result.error.retryable,
            session_id=result.session.id,
            status=SessionStatus(result.session.status),
        )
        return JSONResponse(status_code=result.error.status_code, content=failure.model_dump(mode="json"))

    return SessionCreatedResponse(
        session_id=result.session.id,
        status=SessionStatus(result.session.status),
        provider_correlation_id=result.session.provider_correlation_id,
    )


@router.get("", response_model=SessionListResponse, summary="List visible sessions")
async def list_sessions(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[SessionStatus | None, Query(alias="status")] = None,
    kind: SessionKind | None = None,
    direction: SessionDirection | None = None,
    search: Annotated[str | None, Query(max_length=50)] = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> SessionListResponse:
    scope = await AccessScope(session).filter_for(current_user)
    filters = SessionFilters(
        status=status_filter,
        kind=kind,
        direction=direction,
        search=search,
        date_from=date_from,
        date_to=date_to,
    )
    items, total = await SessionRepository(session).list_visible(scope, filters, page=page, limit=limit)

    return SessionListResponse(
        items=[SessionResponse.model_validate(item) for item in items],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.get("/stats", response_model=SessionStatsResponse, summary="Dashboard counters")
async def session_stats(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SessionStatsResponse:
    scope = await AccessScope(session).filter_for(current_user)
    start_of_day = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    stats = await SessionRepository(session).stats(scope, since=start_of_day)
    return SessionStatsResponse.model_validate(stats)


@router.get("/{session_id}", response_model=SessionResponse, summary="Get one session")
async def get_session(
    session_id: UUID,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> SessionResponse:
    record = await SessionRepository(session).get(session_id)
    if record is None or not await AccessScope(session).can_see(current_user, record):
        raise NotFoundError("Session not found", {"session_id": str(session_id)})
    return SessionResponse.model_validate(record)


@router.post(
    "/{session_id}/end",
    response_model=SessionEndResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request termination of a live session",
)
async def end_session(
    session_id: UUID,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    terminator: Annotated[SessionTerminator, Depends(get_terminator)],
    body: SessionEndRequest | None = None,
) -> SessionEndResponse:
    body = body or SessionEndRequest()
    outcome = await terminator.terminate(session_id, current_user, tags=body.tags, notes=body.notes)
    logger.info(
        "Termination requested",
        extra={
            "session_id": str(session_id),
            "user_id": str(current_user.id),
            "acknowledged": outcome.acknowledged,
        },
    )
    return SessionEndResponse(
        session_id=outcome.session.id,
        status=SessionStatus(outcome.session.status),
        termination_acknowledged=outcome.acknowledged,
    )


@router.post("/{session_id}/mute", response_model=SessionMuteResponse, summary="Mute a live call")
async def mute_session(
    session_id: UUID,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    controller: Annotated[CallController, Depends(get_call_controller)],
) -> SessionMuteResponse:
    outcome = await controller.set_muted(session_id, current_user, muted=True)
    return SessionMuteResponse(
        session_id=outcome.session.id,
        status=SessionStatus(outcome.session.status),
        muted=outcome.muted,
    )


@router.post("/{session_id}/unmute", response_model=SessionMuteResponse, summary="Unmute a live call")
async def unmute_session(
    session_id: UUID,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    controller: Annotated[CallController, Depends(get_call_controller)],
) -> SessionMuteResponse:
    outcome = await controller.set_muted(session_id, current_user, muted=False)
    return SessionMuteResponse(
        session_id=outcome.session.id,
        status=SessionStatus(outcome.session.status),
        muted=outcome.muted,
    )
