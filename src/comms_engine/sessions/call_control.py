"""
In-call controls for live voice sessions.

Muting is a provider-side action on the call leg; like termination it never
changes the session's status. An acknowledged change is noted in metadata.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.auth.middleware import CurrentUser
from comms_engine.sessions.access import AccessScope
from comms_engine.sessions.models import CommunicationSession, SessionKind, utcnow
from comms_engine.sessions.repository import SessionRepository
from comms_engine.sessions.state_machine import is_terminal
from comms_engine.shared.audit import AuditFact, AuditSink, StructuredAuditSink
from comms_engine.shared.exceptions import CallControlError, NotFoundError, ValidationError
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.factory import ProviderAdapters

logger = get_logger(__name__)


@dataclass(frozen=True)
class MuteOutcome:
    session: CommunicationSession
    muted: bool


class CallController:
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

    async def set_muted(self, session_id: UUID, user: CurrentUser, muted: bool) -> MuteOutcome:
        """Mute or unmute a live call the caller can see.

        Raises:
            NotFoundError: Session missing or not visible to ``user``.
            ValidationError: Not a call, already finished, or not yet known to the provider.
            CallControlError: The provider refused or could not be reached.
        """
        record = await self._repo.get(session_id)
        if record is None or not await self._scope.can_see(user, record):
            raise NotFoundError("Session not found", {"session_id": str(session_id)})
        if record.session_kind != SessionKind.CALL:
            raise ValidationError("Only calls can be muted", {"session_id": str(session_id)})
        if is_terminal(record.session_kind, record.session_status) or not record.provider_correlation_id:
            raise ValidationError(
                "Call is not live",
                {"session_id": str(session_id), "status": record.status},
            )

        ack = await self._adapters.voice.set_muted(record.provider_correlation_id, muted)
        if not ack.acknowledged:
            failure = ack.failure
            logger.warning(
                "Provider did not apply mute change",
                extra={
                    "session_id": str(session_id),
                    "muted": muted,
                    "provider_code": failure.code if failure else None,
                },
            )
            raise CallControlError(
                failure.message if failure else "Provider did not acknowledge the request",
                kind=failure.kind if failure else None,
                provider_code=failure.code if failure else None,
                session_id=session_id,
            )

        record = await self._repo.annotate(
            session_id,
            metadata={"muted": "true" if muted else "false", "muted_changed_at": utcnow().isoformat()},
        )
        await self._db.commit()

        self._audit.emit(
            AuditFact(
                action="session.mute_changed",
                session_id=str(session_id),
                actor_id=str(user.id),
                details={"muted": muted},
            )
        )
        logger.info("Call mute changed", extra={"session_id": str(session_id), "muted": muted})
        return MuteOutcome(session=record, muted=muted)
