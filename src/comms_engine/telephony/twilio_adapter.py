"""
Twilio Programmable Messaging adapter.

Messages are created with a form-encoded ``POST .../Messages.json`` using
account SID / auth token basic auth. Delivery progress arrives on the status
callback, inbound texts on the incoming webhook; both are form-encoded.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from base64 import b64encode
from datetime import datetime, timezone
from typing import Any

import httpx

from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus
from comms_engine.shared.exceptions import FailureKind, WebhookValidationError
from comms_engine.telephony.addressing import try_normalize
from comms_engine.telephony.config import TelephonyConfig, get_telephony_config
from comms_engine.telephony.interface import (
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
    join_media_urls,
)

logger = logging.getLogger(__name__)

TWILIO_STATUS_EVENT_MAP: dict[str, ProviderEventKind] = {
    "accepted": ProviderEventKind.MESSAGE_ACCEPTED,
    "queued": ProviderEventKind.MESSAGE_QUEUED,
    "scheduled": ProviderEventKind.MESSAGE_SCHEDULED,
    "sending": ProviderEventKind.MESSAGE_SENDING,
    "sent": ProviderEventKind.MESSAGE_SENT,
    "delivered": ProviderEventKind.MESSAGE_DELIVERED,
    "undelivered": ProviderEventKind.MESSAGE_UNDELIVERED,
    "failed": ProviderEventKind.MESSAGE_FAILED,
}

MAX_MEDIA_ITEMS = 10


def media_urls_from_payload(payload: dict[str, Any]) -> list[str]:
    """Collect ``MediaUrl0..N`` from an incoming MMS webhook."""
    try:
        count = min(int(payload.get("NumMedia") or 0), MAX_MEDIA_ITEMS)
    except (TypeError, ValueError):
        return []
    return [str(payload[f"MediaUrl{i}"]) for i in range(count) if payload.get(f"MediaUrl{i}")]


class TwilioMessagingAdapter(ProviderAdapter):
    """Messaging adapter for the Twilio REST API."""

    family = ProviderFamily.MESSAGING
    session_kind = SessionKind.MESSAGE

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        super().__init__(self._config.default_region)
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def origin_number(self) -> str:
        return self._config.twilio_from_number

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

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        base = self._config.twilio_api_base_url.rstrip("/")
        return f"{base}/Accounts/{self._config.twilio_account_sid}{endpoint}"

    def status_callback_url(self) -> str:
        return self._config.get_webhook_url("/webhooks/messaging/status")

    def place_sync(self, request: PlacementRequest) -> PlacementResult:
        """Send an outbound message (sync)."""
        if not self._config.twilio_account_sid or not self._config.twilio_auth_token:
            logger.error("Twilio credentials missing", extra={"session_id": request.session_id})
            return PlacementResult.rejected(
                ProviderFailure(
                    FailureKind.PERMANENT,
                    "MISSING_CREDENTIALS",
                    "Twilio account SID or auth token not configured",
                )
            )

        payload: dict[str, Any] = {
            "To": request.destination,
            "From": request.origin,
            "Body": request.content or "",
            "StatusCallback": self.status_callback_url(),
        }
        if request.media_urls:
            # repeated MediaUrl fields make the message an MMS
            payload["MediaUrl"] = list(request.media_urls)

        logger.info(
            "Sending Twilio message",
            extra={"to": request.destination, "session_id": request.session_id},
        )

        try:
            response = self._get_client().post(
                self._get_api_url("/Messages.json"),
                data=payload,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP error during Twilio message send",
                extra={"session_id": request.session_id, "error": str(e)},
            )
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.TRANSIENT, "HTTP_ERROR", f"HTTP error: {e!s}")
            )

        if response.status_code >= 400:
            error_data = self._safe_json(response)
            logger.error(
                "Twilio message send failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "session_id": request.session_id,
                },
            )
            return PlacementResult.rejected(
                ProviderFailure(
                    classify_http_status(response.status_code),
                    str(error_data.get("code", response.status_code)),
                    str(error_data.get("message", "Message send failed")),
                ),
                raw_response=error_data,
            )

        data = self._safe_json(response)
        sid = data.get("sid")
        if not sid:
            return PlacementResult.rejected(
                ProviderFailure(FailureKind.TRANSIENT, "MALFORMED_RESPONSE", "Twilio response missing sid"),
                raw_response=data,
            )

        metadata = {}
        if data.get("num_segments"):
            metadata["num_segments"] = str(data["num_segments"])
        return PlacementResult.accepted(
            correlation_id=str(sid),
            initial_status=SessionStatus.SENT,
            metadata=metadata,
            raw_response=data,
        )

    def terminate_sync(self, correlation_id: str) -> TerminationAck:
        """Cancel a message. Twilio only honours this for queued/scheduled messages."""
        try:
            response = self._get_client().post(
                self._get_api_url(f"/Messages/{correlation_id}.json"),
                data={"Status": "canceled"},
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.warning("Twilio cancel request failed", extra={"message_sid": correlation_id, "error": str(e)})
            return TerminationAck(False, ProviderFailure(FailureKind.TRANSIENT, "HTTP_ERROR", str(e)))

        if response.status_code >= 400:
            error_data = self._safe_json(response)
            logger.info(
                "Twilio cancel rejected",
                extra={"message_sid": correlation_id, "status_code": response.status_code},
            )
            return TerminationAck(
                False,
                ProviderFailure(
                    classify_http_status(response.status_code),
                    str(error_data.get("code", response.status_code)),
                    str(error_data.get("message", "Cancel failed")),
                ),
            )
        return TerminationAck(True)

    def parse_event(self, payload: dict[str, Any], source: WebhookSource) -> ProviderEvent | None:
        if source == WebhookSource.MESSAGE_INCOMING:
            return self._parse_incoming(payload)
        if source != WebhookSource.MESSAGE_STATUS:
            raise WebhookValidationError(f"Unsupported webhook source for messaging: {source.value}")

        sid = payload.get("MessageSid") or payload.get("SmsSid")
        status = str(payload.get("MessageStatus") or payload.get("SmsStatus") or "").lower()
        if not sid:
            raise WebhookValidationError("Missing MessageSid in Twilio status callback", {"payload_keys": sorted(payload.keys())})
        if not status:
            raise WebhookValidationError("Missing MessageStatus in Twilio status callback", {"message_sid": sid})

        kind = TWILIO_STATUS_EVENT_MAP.get(status)
        if kind is None:
            logger.debug("Ignoring Twilio message status", extra={"message_sid": sid, "message_status": status})
            return None

        return ProviderEvent(
            kind=kind,
            correlation_id=str(sid),
            timestamp=datetime.now(timezone.utc),
            direction=SessionDirection.OUTBOUND,
            from_number=self._e164(payload.get("From")),
            to_number=self._e164(payload.get("To")),
            error_code=str(payload["ErrorCode"]) if payload.get("ErrorCode") else None,
            error_message=payload.get("ErrorMessage") or None,
            raw_payload=dict(payload),
        )

    def _parse_incoming(self, payload: dict[str, Any]) -> ProviderEvent:
        sid = payload.get("MessageSid") or payload.get("SmsSid")
        if not sid:
            raise WebhookValidationError("Missing MessageSid in Twilio incoming message")
        sender = self._e164(payload.get("From"))
        if not sender:
            raise WebhookValidationError("Missing From in Twilio incoming message", {"message_sid": sid})

        metadata = {}
        if payload.get("NumSegments"):
            metadata["num_segments"] = str(payload["NumSegments"])
        media_urls = media_urls_from_payload(payload)
        if media_urls:
            metadata["media_urls"] = join_media_urls(media_urls)

        return ProviderEvent(
            kind=ProviderEventKind.MESSAGE_RECEIVED,
            correlation_id=str(sid),
            timestamp=datetime.now(timezone.utc),
            direction=SessionDirection.INBOUND,
            from_number=sender,
            to_number=self._e164(payload.get("To")) or self.origin_number,
            content=payload.get("Body") or "",
            metadata=metadata,
            raw_payload=dict(payload),
        )

    def validate_signature(self, url: str, params: dict[str, str], signature: str | None) -> bool:
        """Validate the ``X-Twilio-Signature`` header for a form-encoded webhook."""
        if not self._config.twilio_auth_token:
            logger.warning("No auth token configured, skipping signature validation")
            return True
        if not signature:
            return False

        data_str = url
        for key in sorted(params.keys()):
            data_str += key + str(params[key])

        computed = hmac.new(
            self._config.twilio_auth_token.encode("utf-8"),
            data_str.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        return hmac.compare_digest(b64encode(computed).decode("utf-8"), signature)

    def _e164(self, raw: Any) -> str | None:
        if not raw:
            return None
        return try_normalize(str(raw), self._default_region) or str(raw)

    @staticmethod
    def _safe_json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
