"""
Vonage Voice API adapter.

Outbound calls are created with ``POST /v1/calls`` authenticated by an
application JWT (RS256). Vonage reports call progress as JSON to the event
URL and asks the answer URL for an NCCO once the callee picks up.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

import httpx
import jwt

from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus
from comms_engine.shared.exceptions import FailureKind, WebhookValidationError
from comms_engine.telephony.addressing import try_normalize
from comms_engine.telephony.config import TelephonyConfig, get_telephony_config
from comms_engine.telephony.interface import (
    ControlAck,
    PlacementRequest,
    PlacementResult,
    ProviderAdapter,
    ProviderEvent,
    ProviderEventKind,
    ProviderFailure,
    ProviderFamily,
    TerminationAck,
    WebhookSource,
    classify_http_status,
)

logger = logging.getLogger(__name__)

VONAGE_EVENT_MAP: dict[str, ProviderEventKind] = {
    "started": ProviderEventKind.CALL_STARTED,
    "ringing": ProviderEventKind.CALL_RINGING,
    "answered": ProviderEventKind.CALL_ANSWERED,
    "completed": ProviderEventKind.CALL_COMPLETED,
    "busy": ProviderEventKind.CALL_BUSY,
    "failed": ProviderEventKind.CALL_FAILED,
    "rejected": ProviderEventKind.CALL_REJECTED,
    "cancelled": ProviderEventKind.CALL_CANCELLED,
    "unanswered": ProviderEventKind.CALL_UNANSWERED,
    "timeout": ProviderEventKind.CALL_TIMEOUT,
}

JWT_TTL_SECONDS = 900
GREETING = "Hello, you are connected. Please hold while we connect you."


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _to_e164(raw: Any) -> str | None:
    """Vonage sends MSISDNs without the leading plus."""
    if not raw:
        return None
    value = str(raw).strip()
    if value.isdigit():
        value = f"+{value}"
    return try_normalize(value) or value


def _to_msisdn(e164: str) -> str:
    return e164.lstrip("+")


def recording_event_url(config: TelephonyConfig, correlation_id: str | None = None) -> str:
    url = config.get_webhook_url("/webhooks/voice/recording")
    if correlation_id:
        url = f"{url}?{urlencode({'uuid': correlation_id})}"
    return url


def build_answer_ncco(
    config: TelephonyConfig,
    record: bool,
    correlation_id: str | None = None,
) -> list[dict[str, Any]]:
    """NCCO returned from the answer webhook: a greeting, then optionally a recording.

    The recording callback carries the call uuid in its query string so the
    recording can be matched back to the session.
    """
    ncco: list[dict[str, Any]] = [
        {"action": "talk", "text": GREETING, "voiceName": "Amy"},
    ]
    if record:
        ncco.append(
            {
                "action": "record",
                "eventUrl": [recording_event_url(config, correlation_id)],
                "split": "conversation",
                "channels": 1,
                "format": "mp3",
                "endOnSilence": 3,
                "endOnKey": "#",
                "timeOut": config.length_timer_seconds,
                "beepStart": True,
            }
        )
    return ncco


class VonageVoiceAdapter(ProviderAdapter):
    """Voice adapter for the Vonage Voice API."""

    family = ProviderFamily.VOICE
    session_kind = SessionKind.CALL

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        super().__init__(self._config.default_region)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._private_key: str | None = None

    @property
    def origin_number(self) -> str:
        return self._config.vonage_from_number

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=httpx.Timeout(self._config.initiation_timeout_seconds)
            )
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_api_url(self, endpoint: str) -> str:
        return f"{self._config.vonage_api_base_url.rstrip('/')}/v1{endpoint}"

    def _build_jwt(self) -> str:
        if self._private_key is None:
            self._private_key = self._config.load_vonage_private_key()
        now = int(time.time())
        claims = {
            "application_id": self._config.vonage_application_id,
            "iat": now,
            "exp": now + JWT_TTL_SECONDS,
            "jti": str(uuid4()),
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._build_jwt()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _credentials_failure(self) -> ProviderFailure | None:
        if not self._config.vonage_application_id or not self._config.vonage_private_key:
            return ProviderFailure(
                FailureKind.PERMANENT,
                "MISSING_CREDENTIALS",
                "Vonage application id or private key not configured",
            )
        return None

    def answer_url(self, record: bool) -> str:
        query = urlencode({"record": "1" if record else "0"})
        return self._config.get_webhook_url(f"/webhooks/voice/answer?{query}")

    def event_url(self) -> str:
        return self._config.get_webhook_url("/webhooks/voice/event")

    def build_answer_ncco(self, record: bool, correlation_id: str | None = None) -> list[dict[str, Any]]:
        return build_answer_ncco(self._config, record, correlation_id)

    def place_sync(self, request: PlacementRequest) -> PlacementResult:
        """Create an outbound call (sync)."""
        failure = self._credentials_failure()
        if failure is not None:
            logger.error("Vonage credentials missing", extra={"session_id": request.session_id})
            return PlacementResult.rejected(failure)

        payload = {
            "to": [{"type": "phone", "number": _to_msisdn(request.destination)}],
            "from": {"type": "phone", "number": _to_msisdn(request.origin)},
            "answer_url": [self.answer_url(request.record)],
            "event_url": [self.event_url()],
            "machine_detection": "continue",
            "ringing_timer": self._config.ringing_timer_seconds,
            "length_timer": self._config.length_timer_seconds,
        }

        logger.info(
            "Placing Vonage call",
            extra={"to": request.destination, "session_id": request.session_id},
        )

        try:
            response = self._get_client().post(
                self._get_api_url("/calls"),
                json=payload,
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP error during Vonage call placement",
                extra={"session_id": request.session_id, "error": str(e)},
            )
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.TRANSIENT, "HTTP_ERROR", f"HTTP error: {e!s}")
            )
        except (jwt.PyJWTError, ValueError) as e:
            logger.error("Could not sign Vonage JWT", extra={"error": str(e)})
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.PERMANENT, "INVALID_CREDENTIALS", str(e))
            )

        if response.status_code >= 400:
            error_data = self._safe_json(response)
            logger.error(
                "Vonage call placement failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "session_id": request.session_id,
                },
            )
            return PlacementResult.rejected(
                ProviderFailure(
                    classify_http_status(response.status_code),
                    str(error_data.get("type") or response.status_code),
                    str(error_data.get("title") or error_data.get("detail") or "Call placement failed"),
                ),
                raw_response=error_data,
            )

        data = self._safe_json(response)
        call_uuid = data.get("uuid")
        if not call_uuid:
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.TRANSIENT, "MALFORMED_RESPONSE", "Vonage response missing uuid"),
                raw_response=data,
            )

        metadata = {}
        if data.get("conversation_uuid"):
            metadata["conversation_uuid"] = str(data["conversation_uuid"])
        return PlacementResult.accepted(
            correlation_id=str(call_uuid),
            initial_status=SessionStatus.RINGING,
            metadata=metadata,
            raw_response=data,
        )

    def terminate_sync(self, correlation_id: str) -> TerminationAck:
        """Ask Vonage to hang up a live call."""
        failure = self._modify_call(correlation_id, "hangup")
        return TerminationAck(failure is None, failure)

    def set_muted_sync(self, correlation_id: str, muted: bool) -> ControlAck:
        """Mute or unmute the callee's audio on a live call."""
        failure = self._modify_call(correlation_id, "mute" if muted else "unmute")
        return ControlAck(failure is None, failure)

    def _modify_call(self, correlation_id: str, action: str) -> ProviderFailure | None:
        """``PUT /v1/calls/{uuid}`` with ``action``; None when Vonage accepted it."""
        try:
            response = self._get_client().put(
                self._get_api_url(f"/calls/{correlation_id}"),
                json={"action": action},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Vonage call update failed",
                extra={"provider_call_id": correlation_id, "action": action, "error": str(e)},
            )
            return ProviderFailure(FailureKind.TRANSIENT, "HTTP_ERROR", str(e))
        except (jwt.PyJWTError, ValueError) as e:
            return ProviderFailure(FailureKind.PERMANENT, "INVALID_CREDENTIALS", str(e))

        if response.status_code >= 400:
            error_data = self._safe_json(response)
            logger.warning(
                "Vonage call update rejected",
                extra={"provider_call_id": correlation_id, "action": action, "status_code": response.status_code},
            )
            return ProviderFailure(
                classify_http_status(response.status_code),
                str(error_data.get("type") or response.status_code),
                str(error_data.get("title") or f"Call {action} failed"),
            )
        return None

    def parse_event(self, payload: dict[str, Any], source: WebhookSource) -> ProviderEvent | None:
        if source == WebhookSource.VOICE_RECORDING:
            return self._parse_recording(payload)
        if source != WebhookSource.VOICE_EVENT:
            raise WebhookValidationError(f"Unsupported webhook source for voice: {source.value}")

        call_uuid = payload.get("uuid")
        status = str(payload.get("status") or "").lower()
        if not call_uuid:
            raise WebhookValidationError("Missing uuid in Vonage event", {"payload_keys": sorted(payload.keys())})
        if not status:
            raise WebhookValidationError("Missing status in Vonage event", {"provider_call_id": call_uuid})

        kind = VONAGE_EVENT_MAP.get(status)
        if kind is None:
            logger.debug("Ignoring Vonage event", extra={"provider_call_id": call_uuid, "call_status": status})
            return None

        duration = None
        if payload.get("duration") not in (None, ""):
            try:
                duration = max(0, int(payload["duration"]))
            except (TypeError, ValueError):
                duration = None

        direction = None
        if payload.get("direction") in ("inbound", "outbound"):
            direction = SessionDirection(payload["direction"])

        metadata = {}
        if payload.get("conversation_uuid"):
            metadata["conversation_uuid"] = str(payload["conversation_uuid"])

        return ProviderEvent(
            kind=kind,
            correlation_id=str(call_uuid),
            timestamp=_parse_timestamp(payload.get("timestamp")),
            direction=direction,
            from_number=_to_e164(payload.get("from")),
            to_number=_to_e164(payload.get("to")),
            duration_seconds=duration,
            error_code=str(payload["reason"]) if payload.get("reason") else None,
            metadata=metadata,
            raw_payload=payload,
        )

    def _parse_recording(self, payload: dict[str, Any]) -> ProviderEvent:
        call_uuid = payload.get("uuid")
        recording_url = payload.get("recording_url")
        if not call_uuid:
            raise WebhookValidationError("Missing uuid in Vonage recording event")
        if not recording_url:
            raise WebhookValidationError("Missing recording_url in Vonage recording event", {"provider_call_id": call_uuid})

        metadata = {}
        if payload.get("conversation_uuid"):
            metadata["conversation_uuid"] = str(payload["conversation_uuid"])
        if payload.get("recording_uuid"):
            metadata["recording_uuid"] = str(payload["recording_uuid"])

        return ProviderEvent(
            kind=ProviderEventKind.CALL_RECORDING,
            correlation_id=str(call_uuid),
            timestamp=_parse_timestamp(payload.get("end_time") or payload.get("timestamp")),
            recording_url=str(recording_url),
            metadata=metadata,
            raw_payload=payload,
        )

    @staticmethod
    def _safe_json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
