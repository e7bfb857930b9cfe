"""HTTP tests for the provider webhook endpoints."""

from unittest.mock import MagicMock
from uuid import uuid4

import httpx
import pytest
from httpx import AsyncClient

from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus
from comms_engine.sessions.repository import SessionRepository
from comms_engine.shared.audit import RecordingAuditSink
from comms_engine.shared.database import DatabaseManager
from comms_engine.telephony.config import TelephonyConfig
from comms_engine.telephony.factory import ProviderAdapters
from comms_engine.telephony.mock_adapter import MockProviderAdapter
from comms_engine.telephony.twilio_adapter import TwilioMessagingAdapter
from comms_engine.telephony.webhooks.router import EMPTY_TWIML


async def _ringing_call(session_factory, correlation_id: str = "MOCK_CALL_000001") -> None:
    async with session_factory() as db:
        await SessionRepository(db).create(
            kind=SessionKind.CALL,
            direction=SessionDirection.OUTBOUND,
            status=SessionStatus.RINGING,
            counterpart_number="+14155551234",
            owner_number="+14155550000",
            owner_user_id=uuid4(),
            provider_correlation_id=correlation_id,
        )
        await db.commit()


async def _status_of(session_factory, correlation_id: str) -> str | None:
    async with session_factory() as db:
        record = await SessionRepository(db).get_by_correlation_id(correlation_id)
        return record.status if record else None


class TestVoiceWebhooks:
    @pytest.mark.asyncio
    async def test_status_event_applied(self, client: AsyncClient, session_factory) -> None:
        await _ringing_call(session_factory)

        response = await client.post(
            "/webhooks/voice/event",
            json={"event": "call.answered", "correlation_id": "MOCK_CALL_000001"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "outcome": "applied"}
        assert await _status_of(session_factory, "MOCK_CALL_000001") == "answered"

    @pytest.mark.asyncio
    async def test_duplicate_event_still_acknowledged(self, client: AsyncClient, session_factory) -> None:
        await _ringing_call(session_factory)
        payload = {"event": "call.completed", "correlation_id": "MOCK_CALL_000001", "duration": 12}

        first = await client.post("/webhooks/voice/event", json=payload)
        second = await client.post("/webhooks/voice/event", json=payload)

        assert first.json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.json()["outcome"] == "rejected"

    @pytest.mark.asyncio
    async def test_malformed_payloads_return_200(self, client: AsyncClient) -> None:
        """Providers must never see an error for a bad payload."""
        not_json = await client.post(
            "/webhooks/voice/event", content=b"not json", headers={"Content-Type": "application/json"}
        )
        missing_id = await client.post("/webhooks/voice/event", json={"event": "call.answered"})
        unknown_session = await client.post(
            "/webhooks/voice/event", json={"event": "call.answered", "correlation_id": "NOPE"}
        )
        untracked = await client.post(
            "/webhooks/voice/event", json={"event": "call.transferred", "correlation_id": "NOPE"}
        )

        assert [r.status_code for r in (not_json, missing_id, unknown_session, untracked)] == [200] * 4
        assert not_json.json()["outcome"] == "invalid"
        assert missing_id.json()["outcome"] == "invalid"
        assert unknown_session.json()["outcome"] == "invalid"
        assert untracked.json()["outcome"] == "ignored"

    @pytest.mark.asyncio
    async def test_recording_uses_uuid_from_query(self, client: AsyncClient, session_factory) -> None:
        await _ringing_call(session_factory)

        response = await client.post(
            "/webhooks/voice/recording?correlation_id=MOCK_CALL_000001",
            json={"event": "call.recording", "recording_url": "https://rec/1"},
        )

        assert response.json()["outcome"] == "applied"
        async with session_factory() as db:
            record = await SessionRepository(db).get_by_correlation_id("MOCK_CALL_000001")
        assert record.recording_url == "https://rec/1"

    @pytest.mark.asyncio
    async def test_answer_returns_ncco(self, client: AsyncClient) -> None:
        response = await client.get("/webhooks/voice/answer", params={"record": "1", "uuid": "u-1"})

        assert response.status_code == 200
        ncco = response.json()
        assert [action["action"] for action in ncco] == ["talk", "record"]
        assert ncco[1]["eventUrl"] == ["https://hooks.example.com/webhooks/voice/recording?uuid=u-1"]

    @pytest.mark.asyncio
    async def test_answer_without_recording(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/voice/answer?record=0", json={"uuid": "u-1"})
        assert [action["action"] for action in response.json()] == ["talk"]


class TestMessagingWebhooks:
    @pytest.mark.asyncio
    async def test_incoming_message_creates_session(self, client: AsyncClient, session_factory) -> None:
        response = await client.post(
            "/webhooks/messaging/incoming",
            data={
                "event": "message.received",
                "correlation_id": "SM-IN-1",
                "direction": "inbound",
                "from": "+14155559876",
                "to": "+14155550001",
                "body": "hello",
            },
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert response.text == EMPTY_TWIML
        assert await _status_of(session_factory, "SM-IN-1") == "received"

    @pytest.mark.asyncio
    async def test_status_callback(self, client: AsyncClient, session_factory) -> None:
        async with session_factory() as db:
            await SessionRepository(db).create(
                kind=SessionKind.MESSAGE,
                direction=SessionDirection.OUTBOUND,
                status=SessionStatus.SENT,
                counterpart_number="+14155551234",
                owner_number="+14155550001",
                provider_correlation_id="MOCK_MSG_000001",
                content="hi",
            )
            await db.commit()

        response = await client.post(
            "/webhooks/messaging/status",
            data={"event": "message.delivered", "correlation_id": "MOCK_MSG_000001"},
        )

        assert response.json() == {"ok": True, "outcome": "applied"}
        assert await _status_of(session_factory, "MOCK_MSG_000001") == "delivered"


class TestSignatureValidation:
    @pytest.mark.asyncio
    async def test_unsigned_callback_is_dropped(
        self,
        engine,
        test_settings,
        telephony_config: TelephonyConfig,
        session_factory,
    ) -> None:
        from comms_engine.main import create_app

        config = telephony_config.model_copy(
            update={"validate_signatures": True, "twilio_account_sid": "ACtest", "twilio_auth_token": "secret"}
        )
        adapters = ProviderAdapters(
            voice=MockProviderAdapter(),
            messaging=TwilioMessagingAdapter(config, http_client=MagicMock(spec=httpx.Client)),
        )
        database = DatabaseManager(database_url=test_settings.database_url)
        app = create_app(test_settings, config, adapters, database, RecordingAuditSink())

        async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/webhooks/messaging/incoming",
                data={"MessageSid": "SM-FORGED", "From": "+14155559876", "Body": "hi"},
            )
        await database.close()

        assert response.status_code == 200
        assert await _status_of(session_factory, "SM-FORGED") is None
