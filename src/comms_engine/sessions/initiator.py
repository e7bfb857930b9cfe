"""
Outbound call / message initiation.

The session row is committed before the provider is contacted, and it is
always moved out of its initial status before ``initiate`` returns: to
``ringing``/``sent`` when the provider accepts, to ``failed`` when it rejects,
does not answer within the initiation timeout, or the adapter itself breaks.
"""

from dataclasses import dataclass, field
from uuid import UUID

import anyio
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.leads.models import Lead
from comms_engine.sessions.models import CommunicationSession, SessionDirection, SessionKind, SessionStatus, utcnow
from comms_engine.sessions.repository import SessionRepository
from comms_engine.sessions.state_machine import ACCEPTED_OUTBOUND, INITIAL_OUTBOUND
from comms_engine.shared.audit import AuditFact, AuditSink, StructuredAuditSink
from comms_engine.shared.exceptions import (
    FailureKind,
    InitiationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.factory import ProviderAdapters
from comms_engine.telephony.interface import PlacementRequest, PlacementResult, ProviderFailure, join_media_urls

logger = get_logger(__name__)

DEFAULT_INITIATION_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class InitiationOptions:
    record: bool = True
    content: str | None = None
    customer_name: str | None = None
    media_urls: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InitiationResult:
    session: CommunicationSession
    error: InitiationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OutboundInitiator:
    """Places outbound calls and messages and records their outcome."""

    def __init__(
        self,
        db: AsyncSession,
        adapters: ProviderAdapters,
        audit: AuditSink | None = None,
        timeout_seconds: float = DEFAULT_INITIATION_TIMEOUT_SECONDS,
    ) -> None:
        self._db = db
        self._repo = SessionRepository(db)
        self._adapters = adapters
        self._audit = audit or StructuredAuditSink()
        self._timeout_seconds = timeout_seconds

    async def initiate(
        self,
        kind: SessionKind,
        owner_user_id: UUID,
        counterpart_number: str,
        lead_id: UUID | None = None,
        options: InitiationOptions | None = None,
    ) -> InitiationResult:
        """Place a call or send a message on behalf of ``owner_user_id``.

        Raises:
            InvalidAddressError: Destination cannot be normalized. Nothing is persisted.
            ValidationError: A message without content, or media on a call. Nothing is persisted.
            NotFoundError: ``lead_id`` names no lead. Nothing is persisted.
        """
        options = options or InitiationOptions()
        adapter = self._adapters.for_kind(kind)

        destination = adapter.normalize_address(counterpart_number)
        if kind == SessionKind.MESSAGE and not (options.content or "").strip():
            raise ValidationError("Message content is required", {"field": "content"})
        if kind == SessionKind.CALL and options.media_urls:
            raise ValidationError("Media can only be attached to messages", {"field": "media_urls"})

        customer_name = options.customer_name
        if lead_id is not None:
            lead = await self._db.get(Lead, lead_id)
            if lead is None:
                raise NotFoundError("Lead not found", {"lead_id": str(lead_id)})
            customer_name = customer_name or lead.customer_name or None

        metadata = dict(options.metadata)
        if options.media_urls:
            metadata["media_urls"] = join_media_urls(options.media_urls)

        record = await self._repo.create(
            kind=kind,
            direction=SessionDirection.OUTBOUND,
            status=INITIAL_OUTBOUND[kind],
            counterpart_number=destination,
            owner_number=adapter.origin_number,
            owner_user_id=owner_user_id,
            lead_id=lead_id,
            customer_name=customer_name,
            content=options.content if kind == SessionKind.MESSAGE else None,
            tags=options.tags,
            metadata=metadata,
        )
        await self._db.commit()
        session_id = record.id

        logger.info(
            "Outbound session created",
            extra={"session_id": str(session_id), "kind": kind.value, "owner_user_id": str(owner_user_id)},
        )

        request = PlacementRequest(
            kind=kind,
            destination=destination,
            origin=adapter.origin_number,
            session_id=str(session_id),
            record=options.record,
            content=options.content,
            media_urls=tuple(options.media_urls),
            metadata=dict(options.metadata),
        )
        result = await self._place(request)

        if result.ok:
            return await self._accept(kind, session_id, owner_user_id, result)
        return await self._fail(kind, session_id, owner_user_id, result.failure)

    async def _place(self, request: PlacementRequest) -> PlacementResult:
        adapter = self._adapters.for_kind(request.kind)
        try:
            with anyio.fail_after(self._timeout_seconds):
                return await adapter.place(request)
        except TimeoutError:
            logger.warning(
                "Provider did not answer in time",
                extra={"session_id": request.session_id, "timeout_seconds": self._timeout_seconds},
            )
            return PlacementResult.rejected(
                ProviderFailure(
                    FailureKind.TRANSIENT,
                    "TIMEOUT",
                    f"Provider timed out after {self._timeout_seconds:g}s",
                )
            )
        except Exception as e:
            logger.exception(
                "Provider adapter raised during placement",
                extra={"session_id": request.session_id, "kind": request.kind.value},
            )
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.TRANSIENT, "ADAPTER_ERROR", f"{type(e).__name__}: {e}")
            )

    async def _accept(
        self,
        kind: SessionKind,
        session_id: UUID,
        owner_user_id: UUID,
        result: PlacementResult,
    ) -> InitiationResult:
        target = ACCEPTED_OUTBOUND[kind]
        try:
            moved = await self._repo.transition(
                session_id,
                kind,
                target,
                provider_correlation_id=result.correlation_id,
            )
            if result.metadata:
                await self._repo.annotate(session_id, metadata=result.metadata)
            await self._db.commit()
        except (SQLAlchemyError, PersistenceError) as e:
            await self._db.rollback()
            logger.exception(
                "Could not record provider acceptance",
                extra={"session_id": str(session_id), "correlation_id": result.correlation_id},
            )
            return await self._fail(
                kind,
                session_id,
                owner_user_id,
                ProviderFailure(
                    FailureKind.TRANSIENT,
                    "PERSISTENCE_ERROR",
                    f"Provider accepted {result.correlation_id} but it could not be stored: {type(e).__name__}",
                ),
            )

        if not moved:
            logger.error(
                "Accepted session could not leave its initial status",
                extra={"session_id": str(session_id), "correlation_id": result.correlation_id},
            )

        self._audit.emit(
            AuditFact(
                action="session.initiated",
                session_id=str(session_id),
                actor_id=str(owner_user_id),
                details={"kind": kind.value, "correlation_id": result.correlation_id, "status": target.value},
            )
        )
        logger.info(
            "Outbound session accepted by provider",
            extra={"session_id": str(session_id), "correlation_id": result.correlation_id},
        )
        record = await self._repo.get(session_id)
        return InitiationResult(session=record)

    async def _fail(
        self,
        kind: SessionKind,
        session_id: UUID,
        owner_user_id: UUID,
        failure: ProviderFailure | None,
    ) -> InitiationResult:
        failure = failure or ProviderFailure(FailureKind.TRANSIENT, "UNKNOWN", "Provider returned no result")
        await self._repo.transition(
            session_id,
            kind,
            SessionStatus.FAILED,
            terminated_at=utcnow(),
            duration_seconds=0,
            failure_reason=f"{failure.code}: {failure.message}"[:1024],
        )
        await self._db.commit()

        self._audit.emit(
            AuditFact(
                action="session.initiation_failed",
                session_id=str(session_id),
                actor_id=str(owner_user_id),
                details={"kind": kind.value, "failure_kind": failure.kind.value, "code": failure.code},
            )
        )
        logger.warning(
            "Outbound session failed at initiation",
            extra={
                "session_id": str(session_id),
                "failure_kind": failure.kind.value,
                "provider_code": failure.code,
            },
        )
        record = await self._repo.get(session_id)
        error = InitiationError(
            failure.message,
            kind=failure.kind,
            provider_code=failure.code,
            session_id=session_id,
        )
        return InitiationResult(session=record, error=error)
