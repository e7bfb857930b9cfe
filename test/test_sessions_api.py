"""HTTP tests for the sessions API."""

from uuid import uuid4

import pytest
from httpx import AsyncClient

from comms_engine.auth.models import UserRole
from comms_engine.shared.exceptions import FailureKind
from comms_engine.telephony.mock_adapter import MockProviderAdapter


async def _place_call(client: AsyncClient, headers: dict[str, str], number: str = "+14155551234") -> dict:
    response = await client.post(
        "/api/sessions",
        json={"kind": "call", "counterpart_number": number},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: AsyncClient) -> None:
        response = await client.post("/api/sessions", json={"kind": "call", "counterpart_number": "+14155551234"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "MISSING_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/sessions", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_place_call(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)

        body = await _place_call(client, headers)

        assert body["status"] == "ringing"
        assert body["provider_correlation_id"] == "MOCK_CALL_000001"

    @pytest.mark.asyncio
    async def test_send_message(self, client: AsyncClient, auth_headers, messaging_adapter: MockProviderAdapter) -> None:
        response = await client.post(
            "/api/sessions",
            json={"kind": "message", "counterpart_number": "415-555-1234", "content": "Running late"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 201
        assert response.json()["status"] == "sent"
        assert messaging_adapter.get_last_request().destination == "+14155551234"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_422(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        voice_adapter.configure_failure(FailureKind.PERMANENT, "21211", "Invalid destination")

        response = await client.post(
            "/api/sessions",
            json={"kind": "call", "counterpart_number": "+14155551234"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "21211"
        assert body["retryable"] is False
        assert body["status"] == "failed"
        assert body["session_id"]

    @pytest.mark.asyncio
    async def test_transient_failure_is_502(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        voice_adapter.configure_failure(FailureKind.TRANSIENT, "HTTP_ERROR", "Connection refused")

        response = await client.post(
            "/api/sessions",
            json={"kind": "call", "counterpart_number": "+14155551234"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 502
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_invalid_number_is_400(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post(
            "/api/sessions",
            json={"kind": "call", "counterpart_number": "call me maybe"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_ADDRESS"

    @pytest.mark.asyncio
    async def test_message_without_content_is_400(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post(
            "/api/sessions",
            json={"kind": "message", "counterpart_number": "+14155551234"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_kind_is_422(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post(
            "/api/sessions",
            json={"kind": "fax", "counterpart_number": "+14155551234"},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_lead_is_404(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        response = await client.post(
            "/api/sessions",
            json={"kind": "call", "counterpart_number": "+14155551234", "lead_id": str(uuid4())},
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "Lead not found"
        assert voice_adapter.requests == []

    @pytest.mark.asyncio
    async def test_customer_name_comes_from_lead(self, client: AsyncClient, auth_headers, make_user, make_lead) -> None:
        agent = await make_user(UserRole.AGENT)
        lead = await make_lead("+14155551234", agent.id, customer_name="Robin Buyer")
        headers = auth_headers(agent.id, agent.role)

        response = await client.post(
            "/api/sessions",
            json={"kind": "call", "counterpart_number": "+14155551234", "lead_id": str(lead.id)},
            headers=headers,
        )

        assert response.status_code == 201
        fetched = await client.get(f"/api/sessions/{response.json()['session_id']}", headers=headers)
        assert fetched.json()["customer_name"] == "Robin Buyer"
        assert fetched.json()["lead_id"] == str(lead.id)

    @pytest.mark.asyncio
    async def test_send_mms(self, client: AsyncClient, auth_headers, messaging_adapter: MockProviderAdapter) -> None:
        response = await client.post(
            "/api/sessions",
            json={
                "kind": "message",
                "counterpart_number": "+14155551234",
                "content": "Listing photos",
                "media_urls": ["https://media.example.com/front.jpg"],
            },
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 201
        assert messaging_adapter.get_last_request().media_urls == ("https://media.example.com/front.jpg",)

    @pytest.mark.asyncio
    async def test_media_urls_must_be_http(self, client: AsyncClient, auth_headers, messaging_adapter: MockProviderAdapter) -> None:
        response = await client.post(
            "/api/sessions",
            json={
                "kind": "message",
                "counterpart_number": "+14155551234",
                "content": "Listing photos",
                "media_urls": ["file:///etc/passwd"],
            },
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 422
        assert messaging_adapter.requests == []

    @pytest.mark.asyncio
    async def test_media_on_a_call_is_400(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post(
            "/api/sessions",
            json={
                "kind": "call",
                "counterpart_number": "+14155551234",
                "media_urls": ["https://media.example.com/front.jpg"],
            },
            headers=auth_headers(uuid4(), UserRole.AGENT.value),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "media_urls"


class TestReadSessions:
    @pytest.mark.asyncio
    async def test_agents_only_see_their_own(self, client: AsyncClient, auth_headers) -> None:
        mine = auth_headers(uuid4(), UserRole.AGENT.value)
        theirs = auth_headers(uuid4(), UserRole.AGENT.value)
        await _place_call(client, mine)
        await _place_call(client, mine, "+14155551235")
        other = await _place_call(client, theirs, "+14155551236")

        response = await client.get("/api/sessions", params={"limit": 1}, headers=mine)

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert len(body["items"]) == 1

        hidden = await client.get(f"/api/sessions/{other['session_id']}", headers=mine)
        assert hidden.status_code == 404
        assert hidden.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_manager_sees_team(self, client: AsyncClient, auth_headers, make_user) -> None:
        manager = await make_user(UserRole.MANAGER)
        agent = await make_user(UserRole.AGENT, manager_id=manager.id)
        outsider = await make_user(UserRole.AGENT)
        await _place_call(client, auth_headers(agent.id, agent.role))
        await _place_call(client, auth_headers(outsider.id, outsider.role), "+14155551235")

        response = await client.get("/api/sessions", headers=auth_headers(manager.id, manager.role))

        assert response.json()["pagination"]["total"] == 1
        assert response.json()["items"][0]["owner_user_id"] == str(agent.id)

    @pytest.mark.asyncio
    async def test_filters_by_status(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        await _place_call(client, headers)
        voice_adapter.configure_failure()
        await client.post("/api/sessions", json={"kind": "call", "counterpart_number": "+14155551235"}, headers=headers)

        response = await client.get("/api/sessions", params={"status": "failed"}, headers=headers)

        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["status"] == "failed"
        assert items[0]["counterpart_number"] == "+14155551235"

    @pytest.mark.asyncio
    async def test_filters_by_no_answer(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)
        await _place_call(client, headers, "+14155551235")
        await client.post(
            "/webhooks/voice/event",
            json={"event": "call.unanswered", "correlation_id": created["provider_correlation_id"]},
        )

        response = await client.get("/api/sessions", params={"status": "no-answer"}, headers=headers)

        assert response.status_code == 200
        items = response.json()["items"]
        assert [item["session_id"] for item in items] == [created["session_id"]]
        assert items[0]["status"] == "no-answer"

    @pytest.mark.asyncio
    async def test_get_session(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)

        response = await client.get(f"/api/sessions/{created['session_id']}", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "call"
        assert body["direction"] == "outbound"
        assert body["status"] == "ringing"
        assert body["metadata"] == {}

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        await _place_call(client, headers)

        response = await client.get("/api/sessions/stats", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["calls"]["total"] == 1
        assert body["calls"]["today"] == 1
        assert body["messages"]["total"] == 0
        assert body["messages"]["delivery_rate"] == 0.0


class TestEndSession:
    @pytest.mark.asyncio
    async def test_end_live_call(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)

        response = await client.post(
            f"/api/sessions/{created['session_id']}/end",
            json={"tags": ["wrap-up"], "notes": "done"},
            headers=headers,
        )

        assert response.status_code == 202
        assert response.json() == {
            "session_id": created["session_id"],
            "status": "ringing",
            "termination_acknowledged": True,
        }
        assert voice_adapter.terminations == ["MOCK_CALL_000001"]

    @pytest.mark.asyncio
    async def test_end_without_body(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)

        response = await client.post(f"/api/sessions/{created['session_id']}/end", headers=headers)

        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post(
            f"/api/sessions/{uuid4()}/end", headers=auth_headers(uuid4(), UserRole.ADMIN.value)
        )
        assert response.status_code == 404


class TestMuteSession:
    @pytest.mark.asyncio
    async def test_mute_and_unmute(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)

        muted = await client.post(f"/api/sessions/{created['session_id']}/mute", headers=headers)
        unmuted = await client.post(f"/api/sessions/{created['session_id']}/unmute", headers=headers)

        assert muted.status_code == 200
        assert muted.json() == {"session_id": created["session_id"], "status": "ringing", "muted": True}
        assert unmuted.json()["muted"] is False
        assert voice_adapter.mute_changes == [("MOCK_CALL_000001", True), ("MOCK_CALL_000001", False)]

        body = (await client.get(f"/api/sessions/{created['session_id']}", headers=headers)).json()
        assert body["metadata"]["muted"] == "false"

    @pytest.mark.asyncio
    async def test_other_agents_call_is_404(self, client: AsyncClient, auth_headers, voice_adapter: MockProviderAdapter) -> None:
        created = await _place_call(client, auth_headers(uuid4(), UserRole.AGENT.value))

        response = await client.post(
            f"/api/sessions/{created['session_id']}/mute", headers=auth_headers(uuid4(), UserRole.AGENT.value)
        )

        assert response.status_code == 404
        assert voice_adapter.mute_changes == []

    @pytest.mark.asyncio
    async def test_message_cannot_be_muted(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await client.post(
            "/api/sessions",
            json={"kind": "message", "counterpart_number": "+14155551234", "content": "hi"},
            headers=headers,
        )

        response = await client.post(f"/api/sessions/{created.json()['session_id']}/mute", headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_finished_call_cannot_be_muted(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)
        await client.post(
            "/webhooks/voice/event",
            json={"event": "call.completed", "correlation_id": created["provider_correlation_id"], "duration": 3},
        )

        response = await client.post(f"/api/sessions/{created['session_id']}/unmute", headers=headers)

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("kind", "expected"), [(FailureKind.PERMANENT, 422), (FailureKind.TRANSIENT, 502)])
    async def test_provider_failure(
        self,
        client: AsyncClient,
        auth_headers,
        voice_adapter: MockProviderAdapter,
        kind: FailureKind,
        expected: int,
    ) -> None:
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)
        voice_adapter.configure_control_failure(kind, "bad-request", "Call is not active")

        response = await client.post(f"/api/sessions/{created['session_id']}/mute", headers=headers)

        assert response.status_code == expected
        detail = response.json()["detail"]
        assert detail["code"] == "CALL_CONTROL_FAILED"
        assert detail["provider_code"] == "bad-request"


class TestLifecycleOverHttp:
    @pytest.mark.asyncio
    async def test_call_completed_through_webhooks(self, client: AsyncClient, auth_headers) -> None:
        """Place a call, then let provider events drive it to completion."""
        headers = auth_headers(uuid4(), UserRole.AGENT.value)
        created = await _place_call(client, headers)
        correlation_id = created["provider_correlation_id"]

        for payload in (
            {"event": "call.answered", "correlation_id": correlation_id},
            {"event": "call.completed", "correlation_id": correlation_id, "duration": 42},
            {"event": "call.completed", "correlation_id": correlation_id, "duration": 99},
        ):
            assert (await client.post("/webhooks/voice/event", json=payload)).status_code == 200

        body = (await client.get(f"/api/sessions/{created['session_id']}", headers=headers)).json()
        assert body["status"] == "completed"
        assert body["duration_seconds"] == 42
        assert body["terminated_at"] is not None
