"""Tests for phone-number-to-lead resolution."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from comms_engine.auth.models import UserRole
from comms_engine.leads.resolver import LeadResolver


class TestLeadResolver:
    @pytest.mark.asyncio
    async def test_matches_primary_number(self, db_session: AsyncSession, make_user, make_lead) -> None:
        agent = await make_user(UserRole.AGENT)
        lead = await make_lead("+14155551234", agent.id, customer_name="Dana")

        match = await LeadResolver(db_session).resolve("+14155551234")

        assert match is not None
        assert match.lead_id == lead.id
        assert match.assigned_agent_id == agent.id
        assert match.customer_name == "Dana"

    @pytest.mark.asyncio
    async def test_matches_alternate_number_in_any_format(
        self, db_session: AsyncSession, make_user, make_lead
    ) -> None:
        """Numbers are normalized before matching."""
        agent = await make_user(UserRole.AGENT)
        lead = await make_lead("+14155550100", agent.id, alternate_number="+14155551234")

        match = await LeadResolver(db_session).resolve("(415) 555-1234")

        assert match.lead_id == lead.id

    @pytest.mark.asyncio
    async def test_no_match(self, db_session: AsyncSession, make_user, make_lead) -> None:
        agent = await make_user(UserRole.AGENT)
        await make_lead("+14155550100", agent.id)

        assert await LeadResolver(db_session).resolve("+14155559876") is None

    @pytest.mark.asyncio
    async def test_unparseable_number(self, db_session: AsyncSession) -> None:
        assert await LeadResolver(db_session).resolve("anonymous") is None
        assert await LeadResolver(db_session).resolve(None) is None

    @pytest.mark.asyncio
    async def test_ambiguous_match_picks_newest(
        self, db_session: AsyncSession, make_user, make_lead
    ) -> None:
        """Several leads on one number: the most recent wins, nothing fails."""
        first_agent = await make_user(UserRole.AGENT)
        second_agent = await make_user(UserRole.AGENT)
        now = datetime.now(timezone.utc)
        older = await make_lead("+14155551234", first_agent.id, created_at=now - timedelta(days=3))
        newer = await make_lead("+14155551234", second_agent.id, created_at=now)
        session_id = uuid4()

        match = await LeadResolver(db_session).resolve("+14155551234")

        assert match.lead_id == newer.id
        assert match.assigned_agent_id == second_agent.id
        fact = match.ambiguity_fact(session_id)
        assert fact.action == "lead.resolution_ambiguous"
        assert fact.session_id == str(session_id)
        details = fact.details
        assert details["chosen_id"] == str(newer.id)
        assert set(details["candidate_ids"]) == {str(older.id), str(newer.id)}

    @pytest.mark.asyncio
    async def test_single_match_has_nothing_to_audit(self, db_session: AsyncSession, make_user, make_lead) -> None:
        agent = await make_user(UserRole.AGENT)
        await make_lead("+14155551234", agent.id)

        match = await LeadResolver(db_session).resolve("+14155551234")

        assert match.ambiguity is None
        assert match.ambiguity_fact(uuid4()) is None
