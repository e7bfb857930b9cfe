"""
Webhook event ingestion.

Reconciles parsed provider events into session records. Delivery may be
duplicated, reordered or concurrent; correctness rests on two store-level
guarantees rather than on any in-process state:

* status changes are conditional UPDATEs guarded by the legal predecessor
  set, so a duplicate or stale event simply matches zero rows;
* ``provider_correlation_id`` is UNIQUE, so two deliveries racing to create
  the same inbound session cannot both insert. The loser re-reads the row
  and applies its event as an update.
"""

import asyncio
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comms_engine.leads.resolver import LeadMatch, LeadResolver
from comms_engine.sessions.models import CommunicationSession, SessionDirection, SessionKind, SessionStatus
from comms_engine.sessions.repository import SessionRepository, call_duration
from comms_engine.sessions.state_machine import is_terminal
from comms_engine.shared.audit import AuditFact, AuditSink, StructuredAuditSink
from comms_engine.shared.exceptions import (
    AppException,
    IllegalTransitionError,
    PersistenceError,
    WebhookValidationError,
)
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.addressing import DEFAULT_REGION
from comms_engine.telephony.interface import ProviderEvent
from comms_engine.telephony.webhooks.dead_letter import DeadLetterLog

logger = get_logger(__name__)


class IngestionOutcome(str, Enum):
    APPLIED = "applied"
    CREATED = "created"
    REJECTED = "rejected"
    INVALID = "invalid"
    DEAD_LETTERED = "dead_lettered"


class WebhookIngestor:
    """Applies provider events to sessions. Never raises to the caller."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dead_letter: DeadLetterLog,
        audit: AuditSink | None = None,
        max_retries: int = 3,
        retry_base_seconds: float = 0.05,
        default_region: str = DEFAULT_REGION,
    ) -> None:
        self._session_factory = session_factory
        self._dead_letter = dead_letter
        self._audit = audit or StructuredAuditSink()
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._default_region = default_region

    async def handle(self, event: ProviderEvent) -> IngestionOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._handle_once(event)
            except WebhookValidationError as e:
                logger.warning(
                    "Webhook event rejected as invalid",
                    extra={"correlation_id": event.correlation_id, "event_kind": event.kind.value, "error": e.message},
                )
                self._audit.emit(
                    AuditFact(
                        action="session.webhook_invalid",
                        session_id=None,
                        details={"correlation_id": event.correlation_id, "event_kind": event.kind.value, "reason": e.message},
                    )
                )
                return IngestionOutcome.INVALID
            except (SQLAlchemyError, PersistenceError) as e:
                if attempt > self._max_retries:
                    failure = PersistenceError(
                        f"Event could not be stored after {attempt} attempts: {e}",
                        {"correlation_id": event.correlation_id, "attempts": attempt},
                    )
                    await self._dead_letter.append(event, failure, attempt)
                    return IngestionOutcome.DEAD_LETTERED
                delay = self._retry_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Persisting webhook event failed, retrying",
                    extra={
                        "correlation_id": event.correlation_id,
                        "attempt": attempt,
                        "retry_in_seconds": delay,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay)
            except Exception as e:
                logger.exception(
                    "Unexpected error ingesting webhook event",
                    extra={"correlation_id": event.correlation_id, "event_kind": event.kind.value},
                )
                failure = AppException(f"{type(e).__name__}: {e}", "INGESTION_ERROR")
                await self._dead_letter.append(event, failure, attempt)
                return IngestionOutcome.DEAD_LETTERED

    async def _handle_once(self, event: ProviderEvent) -> IngestionOutcome:
        async with self._session_factory() as db:
            repo = SessionRepository(db)
            record = await repo.get_by_correlation_id(event.correlation_id)

            if record is None:
                if not event.is_new_inbound:
                    raise WebhookValidationError(
                        "No session for correlation id",
                        {"correlation_id": event.correlation_id, "event_kind": event.kind.value},
                    )
                try:
                    created, match = await self._create_inbound(db, repo, event)
                    await db.commit()
                except IntegrityError:
                    # Lost the insert race to a concurrent delivery of the same event.
                    await db.rollback()
                    record = await repo.get_by_correlation_id(event.correlation_id)
                    if record is None:
                        raise
                    logger.info(
                        "Inbound session already created by concurrent delivery",
                        extra={"correlation_id": event.correlation_id},
                    )
                else:
                    self._audit.emit(
                        AuditFact(
                            action="session.inbound_created",
                            session_id=str(created.id),
                            details={
                                "kind": created.kind,
                                "status": created.status,
                                "lead_id": str(created.lead_id) if created.lead_id else None,
                            },
                        )
                    )
                    ambiguity = match.ambiguity_fact(created.id) if match else None
                    if ambiguity is not None:
                        self._audit.emit(ambiguity)
                    return IngestionOutcome.CREATED

            return await self._apply(db, repo, record, event)

    async def _create_inbound(
        self,
        db: AsyncSession,
        repo: SessionRepository,
        event: ProviderEvent,
    ) -> tuple[CommunicationSession, LeadMatch | None]:
        kind = event.session_kind
        status = event.target_status
        if not event.counterpart_number or status is None:
            raise WebhookValidationError(
                "Inbound event missing sender",
                {"correlation_id": event.correlation_id},
            )

        terminal = is_terminal(kind, status)
        record = await repo.create(
            kind=kind,
            direction=SessionDirection.INBOUND,
            status=status,
            counterpart_number=event.counterpart_number,
            owner_number=event.owner_number or "",
            provider_correlation_id=event.correlation_id,
            content=event.content if kind == SessionKind.MESSAGE else None,
            metadata=event.metadata,
            initiated_at=event.timestamp,
            terminated_at=event.timestamp if terminal else None,
        )

        match = await LeadResolver(db, self._default_region).resolve(event.counterpart_number)
        if match is not None:
            await repo.assign_lead(record.id, match.lead_id, match.assigned_agent_id, match.customer_name)
            record = await repo.get(record.id)

        logger.info(
            "Inbound session created",
            extra={
                "session_id": str(record.id),
                "correlation_id": event.correlation_id,
                "kind": kind.value,
                "lead_id": str(record.lead_id) if record.lead_id else None,
            },
        )
        return record, match

    async def _apply(
        self,
        db: AsyncSession,
        repo: SessionRepository,
        record: CommunicationSession,
        event: ProviderEvent,
    ) -> IngestionOutcome:
        kind = record.session_kind
        session_id = record.id
        previous = record.status
        if event.session_kind != kind:
            raise WebhookValidationError(
                "Event kind does not match session kind",
                {"correlation_id": event.correlation_id, "session_kind": kind.value},
            )

        target = event.target_status
        if target is None:
            return await self._apply_data(db, repo, record, event)

        duration = None
        if kind == SessionKind.CALL and is_terminal(kind, target):
            duration = call_duration(record.initiated_at, event.timestamp, event.duration_seconds)

        failure_reason = None
        if target in (SessionStatus.FAILED, SessionStatus.UNDELIVERED) and (event.error_code or event.error_message):
            failure_reason = ": ".join(p for p in (event.error_code, event.error_message) if p)[:1024]

        moved = await repo.transition(
            session_id,
            kind,
            target,
            terminated_at=event.timestamp,
            duration_seconds=duration,
            failure_reason=failure_reason,
        )

        if not moved:
            await db.rollback()
            illegal = IllegalTransitionError(previous, target)
            logger.debug(
                "Dropped webhook event",
                extra={"session_id": str(session_id), "correlation_id": event.correlation_id, **illegal.details},
            )
            self._audit.emit(
                AuditFact(
                    action="session.transition_rejected",
                    session_id=str(session_id),
                    details={"event_kind": event.kind.value, **illegal.details},
                )
            )
            return IngestionOutcome.REJECTED

        if event.metadata:
            await repo.annotate(session_id, metadata=event.metadata)
        await db.commit()

        logger.info(
            "Session status updated",
            extra={
                "session_id": str(session_id),
                "correlation_id": event.correlation_id,
                "from_status": previous,
                "to_status": target.value,
            },
        )
        self._audit.emit(
            AuditFact(
                action="session.transition_applied",
                session_id=str(session_id),
                details={"event_kind": event.kind.value, "from_status": previous, "to_status": target.value},
            )
        )
        return IngestionOutcome.APPLIED

    async def _apply_data(
        self,
        db: AsyncSession,
        repo: SessionRepository,
        record: CommunicationSession,
        event: ProviderEvent,
    ) -> IngestionOutcome:
        if not event.recording_url:
            return IngestionOutcome.REJECTED

        stored = await repo.set_recording_url(record.id, event.recording_url)
        await db.commit()
        if not stored:
            logger.debug(
                "Recording URL already set",
                extra={"session_id": str(record.id), "correlation_id": event.correlation_id},
            )
            return IngestionOutcome.REJECTED

        logger.info("Recording URL stored", extra={"session_id": str(record.id)})
        self._audit.emit(
            AuditFact(
                action="session.recording_stored",
                session_id=str(record.id),
                details={"event_kind": event.kind.value},
            )
        )
        return IngestionOutcome.APPLIED
