"""
Repository for communication session database operations.

Every status change goes through ``transition``, a single conditional
UPDATE whose WHERE clause carries the set of legal predecessor statuses.
Two concurrent writers for the same session therefore cannot both succeed
on incompatible transitions, and a loser sees ``rowcount == 0``. The
repository deliberately offers no delete.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.sessions.models import (
    CommunicationSession,
    SessionDirection,
    SessionKind,
    SessionStatus,
    utcnow,
)
from comms_engine.sessions.state_machine import is_terminal, legal_predecessors
from comms_engine.shared.exceptions import PersistenceError

ANNOTATE_ATTEMPTS = 5


@dataclass(frozen=True)
class SessionFilters:
    status: SessionStatus | None = None
    kind: SessionKind | None = None
    direction: SessionDirection | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        model = CommunicationSession
        result: list[ColumnElement[bool]] = []
        if self.status is not None:
            result.append(model.status == self.status.value)
        if self.kind is not None:
            result.append(model.kind == self.kind.value)
        if self.direction is not None:
            result.append(model.direction == self.direction.value)
        if self.search:
            result.append(model.counterpart_number.ilike(f"%{self.search.strip()}%"))
        if self.date_from is not None:
            result.append(model.initiated_at >= self.date_from)
        if self.date_to is not None:
            result.append(model.initiated_at <= self.date_to)
        return result


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    return sorted({t.strip() for t in tags or () if t and t.strip()})


def call_duration(
    initiated_at: datetime,
    terminated_at: datetime,
    reported: int | None = None,
) -> int:
    """Whole seconds of a call: the provider's figure if given, else wall time."""
    if reported is not None:
        return max(0, int(reported))
    if initiated_at.tzinfo is None and terminated_at.tzinfo is not None:
        terminated_at = terminated_at.replace(tzinfo=None)
    elif initiated_at.tzinfo is not None and terminated_at.tzinfo is None:
        initiated_at = initiated_at.replace(tzinfo=None)
    return max(0, int((terminated_at - initiated_at).total_seconds()))


class SessionRepository:
    """Repository for communication session persistence."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create(
        self,
        *,
        kind: SessionKind,
        direction: SessionDirection,
        status: SessionStatus,
        counterpart_number: str,
        owner_number: str,
        owner_user_id: UUID | None = None,
        provider_correlation_id: str | None = None,
        lead_id: UUID | None = None,
        customer_name: str | None = None,
        content: str | None = None,
        tags: Iterable[str] | None = None,
        metadata: dict[str, str] | None = None,
        initiated_at: datetime | None = None,
        terminated_at: datetime | None = None,
    ) -> CommunicationSession:
        """Insert a new session and flush it.

        Raises:
            sqlalchemy.exc.IntegrityError: If the correlation id is already taken.
        """
        record = CommunicationSession(
            kind=kind.value,
            direction=direction.value,
            status=status.value,
            counterpart_number=counterpart_number,
            owner_number=owner_number,
            owner_user_id=owner_user_id,
            provider_correlation_id=provider_correlation_id,
            lead_id=lead_id,
            customer_name=customer_name,
            content=content,
            tags=_normalize_tags(tags),
            session_metadata=dict(metadata or {}),
            initiated_at=initiated_at or utcnow(),
            terminated_at=terminated_at,
        )
        self._session.add(record)
        await self._session.flush()
        await self._session.refresh(record)
        return record

    async def get(self, session_id: UUID) -> CommunicationSession | None:
        """Load a session, bypassing any stale copy in the identity map."""
        stmt = (
            select(CommunicationSession)
            .where(CommunicationSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_correlation_id(self, correlation_id: str) -> CommunicationSession | None:
        stmt = (
            select(CommunicationSession)
            .where(CommunicationSession.provider_correlation_id == correlation_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        session_id: UUID,
        kind: SessionKind,
        target: SessionStatus,
        *,
        terminated_at: datetime | None = None,
        duration_seconds: int | None = None,
        provider_correlation_id: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """Atomically move a session to ``target`` if its current status allows it.

        Terminal targets also write ``terminated_at`` (and ``duration_seconds``
        for calls) in the same statement. A correlation id is only written
        when none is stored yet.

        Returns:
            True when exactly one row changed, False when the transition was
            illegal for the row's current status (or the row does not exist).
        """
        predecessors = legal_predecessors(kind, target)
        if not predecessors:
            return False

        model = CommunicationSession
        conditions = [
            model.id == session_id,
            model.kind == kind.value,
            model.status.in_([s.value for s in predecessors]),
        ]
        values: dict[str, Any] = {"status": target.value, "updated_at": utcnow()}

        if is_terminal(kind, target):
            values["terminated_at"] = terminated_at or utcnow()
            if kind == SessionKind.CALL:
                values["duration_seconds"] = duration_seconds if duration_seconds is not None else 0
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if provider_correlation_id is not None:
            values["provider_correlation_id"] = provider_correlation_id
            conditions.append(model.provider_correlation_id.is_(None))

        stmt = (
            update(model)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def set_recording_url(self, session_id: UUID, recording_url: str) -> bool:
        """Store the recording URL unless one is already recorded."""
        stmt = (
            update(CommunicationSession)
            .where(
                CommunicationSession.id == session_id,
                CommunicationSession.recording_url.is_(None),
            )
            .values(recording_url=recording_url, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def assign_lead(
        self,
        session_id: UUID,
        lead_id: UUID,
        owner_user_id: UUID | None = None,
        customer_name: str | None = None,
    ) -> bool:
        """Attach a lead (and its agent as owner) to a session that has none.

        ``customer_name`` only fills an empty name; one given at initiation wins.
        """
        values: dict[str, Any] = {"lead_id": lead_id, "updated_at": utcnow()}
        conditions = [CommunicationSession.id == session_id, CommunicationSession.lead_id.is_(None)]
        if owner_user_id is not None:
            values["owner_user_id"] = owner_user_id
        if customer_name:
            values["customer_name"] = func.coalesce(CommunicationSession.customer_name, customer_name)
        stmt = (
            update(CommunicationSession)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def annotate(
        self,
        session_id: UUID,
        *,
        metadata: dict[str, str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> CommunicationSession | None:
        """Merge metadata entries and tags into a session without touching its status.

        The merge is a compare-and-set on ``revision``: a writer that read a
        stale copy matches no row, re-reads and merges again, so concurrent
        annotations never drop each other's keys or tags.

        Raises:
            PersistenceError: The row kept changing underneath every attempt.
        """
        model = CommunicationSession
        for _ in range(ANNOTATE_ATTEMPTS):
            record = await self.get(session_id)
            if record is None:
                return None
            if not metadata and not tags:
                return record

            merged_metadata = {**(record.session_metadata or {}), **(metadata or {})}
            merged_tags = _normalize_tags([*(record.tags or []), *(tags or ())])
            stmt = (
                update(model)
                .where(model.id == session_id, model.revision == record.revision)
                .values(
                    {
                        model.session_metadata: merged_metadata,
                        model.tags: merged_tags,
                        model.revision: record.revision + 1,
                        model.updated_at: utcnow(),
                    }
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount == 1:
                return await self.get(session_id)

        raise PersistenceError(
            "Session annotation kept conflicting with concurrent writers",
            {"session_id": str(session_id), "attempts": ANNOTATE_ATTEMPTS},
        )

    async def list_visible(
        self,
        scope: ColumnElement[bool],
        filters: SessionFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[Sequence[CommunicationSession], int]:
        """Return one page of visible sessions, newest first, plus the total count."""
        clauses = [scope, *(filters or SessionFilters()).clauses()]

        count_stmt = select(func.count()).select_from(CommunicationSession).where(*clauses)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(CommunicationSession)
            .where(*clauses)
            .order_by(CommunicationSession.initiated_at.desc(), CommunicationSession.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), int(total)

    async def stats(self, scope: ColumnElement[bool], since: datetime) -> dict[str, Any]:
        """Aggregate counters for the dashboard, restricted to ``scope``."""
        model = CommunicationSession
        is_call = model.kind == SessionKind.CALL.value
        is_message = model.kind == SessionKind.MESSAGE.value

        def _count(*conds: ColumnElement[bool]) -> Any:
            return func.coalesce(func.sum(case((and_(*conds), 1), else_=0)), 0)

        stmt = select(
            _count(is_call).label("calls_total"),
            _count(is_call, model.initiated_at >= since).label("calls_today"),
            _count(is_call, model.status == SessionStatus.COMPLETED.value).label("calls_completed"),
            _count(
                is_call,
                model.status.in_([SessionStatus.BUSY.value, SessionStatus.NO_ANSWER.value]),
            ).label("calls_missed"),
            func.coalesce(
                func.sum(case((is_call, model.duration_seconds), else_=0)), 0
            ).label("calls_total_duration"),
            _count(is_message).label("messages_total"),
            _count(is_message, model.initiated_at >= since).label("messages_today"),
            _count(is_message, model.status == SessionStatus.DELIVERED.value).label("messages_delivered"),
            _count(
                is_message,
                model.status.in_([SessionStatus.FAILED.value, SessionStatus.UNDELIVERED.value]),
            ).label("messages_failed"),
            _count(is_message, model.direction == SessionDirection.OUTBOUND.value).label("messages_outbound"),
        ).where(scope)

        row = (await self._session.execute(stmt)).one()
        counts = {key: int(value or 0) for key, value in row._mapping.items()}

        completed = counts["calls_completed"]
        outbound = counts["messages_outbound"]
        return {
            "calls": {
                "total": counts["calls_total"],
                "today": counts["calls_today"],
                "completed": completed,
                "missed": counts["calls_missed"],
                "total_duration": counts["calls_total_duration"],
                "average_duration": round(counts["calls_total_duration"] / completed) if completed else 0,
            },
            "messages": {
                "total": counts["messages_total"],
                "today": counts["messages_today"],
                "delivered": counts["messages_delivered"],
                "failed": counts["messages_failed"],
                "delivery_rate": round(counts["messages_delivered"] / outbound * 100, 1) if outbound else 0.0,
            },
        }
