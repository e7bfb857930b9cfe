"""
Role-based visibility of sessions.

Only read paths (listing, stats, single-session lookup) go through here;
webhook ingestion and initiation do not.
"""

from collections.abc import Collection
from uuid import UUID

from sqlalchemy import ColumnElement, false, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.auth.middleware import CurrentUser
from comms_engine.auth.models import User, UserRole
from comms_engine.sessions.models import CommunicationSession
from comms_engine.shared.logging import get_logger

logger = get_logger(__name__)


def build_predicate(user: CurrentUser, agent_ids: Collection[UUID] = ()) -> ColumnElement[bool]:
    """Visibility predicate for ``user`` given the agents they manage."""
    owner = CommunicationSession.owner_user_id
    if user.role == UserRole.ADMIN.value:
        return true()
    if user.role == UserRole.MANAGER.value:
        return owner.in_([user.id, *agent_ids])
    if user.role == UserRole.AGENT.value:
        return owner == user.id
    logger.warning("Unknown role, no sessions visible", extra={"user_id": str(user.id), "role": user.role})
    return false()


def permits(user: CurrentUser, record: CommunicationSession, agent_ids: Collection[UUID] = ()) -> bool:
    """In-memory form of ``build_predicate`` for a single loaded session."""
    if user.role == UserRole.ADMIN.value:
        return True
    if record.owner_user_id is None:
        return False
    if user.role == UserRole.MANAGER.value:
        return record.owner_user_id == user.id or record.owner_user_id in set(agent_ids)
    if user.role == UserRole.AGENT.value:
        return record.owner_user_id == user.id
    return False


class AccessScope:
    """Builds the query predicate restricting which sessions a caller may see."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def managed_agent_ids(self, user: CurrentUser) -> set[UUID]:
        if user.role != UserRole.MANAGER.value:
            return set()
        stmt = select(User.id).where(User.manager_id == user.id)
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def filter_for(self, user: CurrentUser) -> ColumnElement[bool]:
        return build_predicate(user, await self.managed_agent_ids(user))

    async def can_see(self, user: CurrentUser, record: CommunicationSession) -> bool:
        return permits(user, record, await self.managed_agent_ids(user))
