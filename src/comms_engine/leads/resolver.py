"""
Best-effort matching of a phone number to an existing lead.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.leads.models import Lead
from comms_engine.shared.audit import AuditFact
from comms_engine.shared.exceptions import LeadResolutionAmbiguity
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.addressing import DEFAULT_REGION, try_normalize

logger = get_logger(__name__)


@dataclass(frozen=True)
class LeadMatch:
    lead_id: UUID
    assigned_agent_id: UUID
    customer_name: str = ""
    ambiguity: LeadResolutionAmbiguity | None = None

    def ambiguity_fact(self, session_id: UUID | None = None) -> AuditFact | None:
        """Audit fact for an ambiguous match, to emit once the session it resolved is stored."""
        if self.ambiguity is None:
            return None
        return AuditFact(
            action="lead.resolution_ambiguous",
            session_id=str(session_id) if session_id else None,
            details=self.ambiguity.details,
        )


class LeadResolver:
    """Resolve a phone number to a lead.

    Matches on the lead's primary or alternate number. When several leads
    share the number, the most recently created one wins and the ambiguity is
    logged and carried on the match for the caller to audit; it is never
    surfaced as a failure.
    """

    def __init__(self, session: AsyncSession, default_region: str = DEFAULT_REGION) -> None:
        self._session = session
        self._default_region = default_region

    async def resolve(self, phone_number: str | None) -> LeadMatch | None:
        normalized = try_normalize(phone_number, self._default_region)
        if normalized is None:
            logger.debug("Lead resolution skipped: unparseable number", extra={"phone_number": phone_number})
            return None

        stmt = (
            select(Lead)
            .where(or_(Lead.phone_number == normalized, Lead.alternate_number == normalized))
            .order_by(Lead.created_at.desc(), Lead.id.desc())
        )
        result = await self._session.execute(stmt)
        leads = list(result.scalars().all())
        if not leads:
            return None

        chosen = leads[0]
        ambiguity = None
        if len(leads) > 1:
            ambiguity = LeadResolutionAmbiguity(
                phone_number=normalized,
                candidate_ids=[lead.id for lead in leads],
                chosen_id=chosen.id,
            )
            logger.warning("Ambiguous lead resolution", extra=ambiguity.details)

        return LeadMatch(
            lead_id=chosen.id,
            assigned_agent_id=chosen.assigned_agent_id,
            customer_name=chosen.customer_name or "",
            ambiguity=ambiguity,
        )
