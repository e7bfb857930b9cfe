"""
Best-effort termination of live sessions.

Asking the provider to hang up (or cancel) never changes the session's
status here. The acknowledgment is only noted in metadata and tags; the
terminal status arrives later through the provider's webhook.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.auth.middleware import CurrentUser
from comms_engine.sessions.access import AccessScope
from comms_engine.sessions.models import CommunicationSession, utcnow
from comms_engine.sessions.repository import SessionRepository
from comms_engine.sessions.state_machine import is_terminal
from comms_engine.shared.audit import AuditFact, AuditSink, StructuredAuditSink
from comms_engine.shared.exceptions import NotFoundError
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.factory import ProviderAdapters

logger = get_logger(__name__)

TERMINATION_TAG = "termination_requested"


@dataclass(frozen=True)
class TerminationOutcome:
    session: CommunicationSession
    acknowledged: bool


class SessionTerminator:
    def __init__(
        self,
        db: AsyncSession,
        adapters: ProviderAdapters,
        audit: AuditSink | None = None,
    ) -> None:
        self._db = db
        self._repo = SessionRepository(db)
        self._scope = AccessScope(db)
        self._adapters = adapters
        self._audit = audit or StructuredAuditSink()

    async def terminate(
        self,
        session_id: UUID,
        user: CurrentUser,
        tags: Iterable[str] | None = None,
        notes: str | None = None,
    ) -> TerminationOutcome:
        """Request termination of a session the caller can see.

        Raises:
            NotFoundError: Session missing or not visible to ``user``.
        """
        record = await self._repo.get(session_id)
        if record is None or not await self._scope.can_see(user, record):
            raise NotFoundError("Session not found", {"session_id": str(session_id)})

        metadata: dict[str, str] = {}
        extra_tags = list(tags or ())
        if notes:
            metadata["termination_notes"] = notes

        if is_terminal(record.session_kind, record.session_status) or not record.provider_correlation_id:
            logger.info(
                "Termination not forwarded to provider",
                extra={"session_id": str(session_id), "status": record.status},
            )
            if metadata or extra_tags:
                record = await self._repo.annotate(session_id, metadata=metadata, tags=extra_tags)
                await self._db.commit()
            return TerminationOutcome(session=record, acknowledged=False)

        adapter = self._adapters.for_kind(record.session_kind)
        ack = await adapter.terminate(record.provider_correlation_id)

        if ack.acknowledged:
            metadata["termination_requested_at"] = utcnow().isoformat()
            extra_tags.append(TERMINATION_TAG)
        else:
            logger.warning(
                "Provider did not acknowledge termination",
                extra={
                    "session_id": str(session_id),
                    "provider_code": ack.failure.code if ack.failure else None,
                },
            )

        if metadata or extra_tags:
            record = await self._repo.annotate(session_id, metadata=metadata, tags=extra_tags)
            await self._db.commit()

        self._audit.emit(
            AuditFact(
                action="session.termination_requested",
                session_id=str(session_id),
                actor_id=str(user.id),
                details={"acknowledged": ack.acknowledged},
            )
        )
        return TerminationOutcome(session=record, acknowledged=ack.acknowledged)
