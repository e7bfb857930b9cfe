"""
Mock provider adapter for local development and testing.

Serves either family. Placement results, failures and latency are
configurable, and every request is recorded for assertions.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from comms_engine.sessions.models import SessionDirection, SessionKind
from comms_engine.sessions.state_machine import ACCEPTED_OUTBOUND
from comms_engine.shared.exceptions import FailureKind, WebhookValidationError
from comms_engine.telephony.addressing import DEFAULT_REGION
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
)

logger = logging.getLogger(__name__)


class MockProviderAdapter(ProviderAdapter):
    """In-memory adapter.

    Webhook payloads use the engine's own vocabulary::

        {"event": "call.completed", "correlation_id": "MOCK_CALL_000001",
         "direction": "outbound", "from": "+1...", "to": "+1...",
         "duration": 42, "timestamp": "2024-01-01T00:00:00Z"}
    """

    def __init__(
        self,
        family: ProviderFamily = ProviderFamily.VOICE,
        origin_number: str = "+15005550006",
        default_region: str = DEFAULT_REGION,
    ) -> None:
        super().__init__(default_region)
        self.family = family
        self.session_kind = SessionKind.CALL if family == ProviderFamily.VOICE else SessionKind.MESSAGE
        self._origin_number = origin_number
        self._requests: list[PlacementRequest] = []
        self._terminations: list[str] = []
        self._mute_changes: list[tuple[str, bool]] = []
        self._next_id = 1
        self._failure: ProviderFailure | None = None
        self._termination_failure: ProviderFailure | None = None
        self._control_failure: ProviderFailure | None = None
        self._delay_seconds = 0.0
        self._release = threading.Event()

    @property
    def origin_number(self) -> str:
        return self._origin_number

    def reset(self) -> None:
        self._requests.clear()
        self._terminations.clear()
        self._mute_changes.clear()
        self._next_id = 1
        self._failure = None
        self._termination_failure = None
        self._control_failure = None
        self._delay_seconds = 0.0
        self._release = threading.Event()

    def configure_failure(
        self,
        kind: FailureKind = FailureKind.PERMANENT,
        code: str = "MOCK_ERROR",
        message: str = "Mock failure",
    ) -> None:
        self._failure = ProviderFailure(kind, code, message)

    def configure_termination_failure(
        self,
        kind: FailureKind = FailureKind.PERMANENT,
        code: str = "MOCK_ERROR",
        message: str = "Mock failure",
    ) -> None:
        self._termination_failure = ProviderFailure(kind, code, message)

    def configure_control_failure(
        self,
        kind: FailureKind = FailureKind.PERMANENT,
        code: str = "MOCK_ERROR",
        message: str = "Mock failure",
    ) -> None:
        self._control_failure = ProviderFailure(kind, code, message)

    def configure_delay(self, seconds: float) -> None:
        """Make ``place_sync`` block for up to ``seconds`` (or until ``release``)."""
        self._delay_seconds = seconds

    def release(self) -> None:
        self._release.set()

    @property
    def requests(self) -> list[PlacementRequest]:
        return self._requests.copy()

    @property
    def terminations(self) -> list[str]:
        return self._terminations.copy()

    @property
    def mute_changes(self) -> list[tuple[str, bool]]:
        return self._mute_changes.copy()

    def get_last_request(self) -> PlacementRequest | None:
        return self._requests[-1] if self._requests else None

    def place_sync(self, request: PlacementRequest) -> PlacementResult:
        logger.info(
            "Mock: placing",
            extra={"to": request.destination, "session_id": request.session_id},
        )
        self._requests.append(request)

        if self._delay_seconds:
            self._release.wait(self._delay_seconds)

        if self._failure is not None:
            return PlacementResult.rejected(self._failure)

        prefix = "MOCK_CALL" if self.session_kind == SessionKind.CALL else "MOCK_MSG"
        correlation_id = f"{prefix}_{self._next_id:06d}"
        self._next_id += 1

        return PlacementResult.accepted(
            correlation_id=correlation_id,
            initial_status=ACCEPTED_OUTBOUND[self.session_kind],
            raw_response={"mock": True, "session_id": request.session_id},
        )

    def terminate_sync(self, correlation_id: str) -> TerminationAck:
        self._terminations.append(correlation_id)
        if self._termination_failure is not None:
            return TerminationAck(False, self._termination_failure)
        return TerminationAck(True)

    def set_muted_sync(self, correlation_id: str, muted: bool) -> ControlAck:
        if self.family != ProviderFamily.VOICE:
            return super().set_muted_sync(correlation_id, muted)
        self._mute_changes.append((correlation_id, muted))
        if self._control_failure is not None:
            return ControlAck(False, self._control_failure)
        return ControlAck(True)

    def parse_event(self, payload: dict[str, Any], source: WebhookSource) -> ProviderEvent | None:
        correlation_id = payload.get("correlation_id")
        event = payload.get("event")
        if not correlation_id:
            raise WebhookValidationError("Missing correlation_id in payload")
        if not event:
            raise WebhookValidationError("Missing event in payload", {"correlation_id": correlation_id})

        try:
            kind = ProviderEventKind(event)
        except ValueError:
            return None

        timestamp = datetime.now(timezone.utc)
        if payload.get("timestamp"):
            timestamp = datetime.fromisoformat(str(payload["timestamp"]).replace("Z", "+00:00"))

        direction = payload.get("direction")
        duration = payload.get("duration")

        return ProviderEvent(
            kind=kind,
            correlation_id=str(correlation_id),
            timestamp=timestamp,
            direction=SessionDirection(direction) if direction else None,
            from_number=payload.get("from"),
            to_number=payload.get("to"),
            duration_seconds=int(duration) if duration is not None else None,
            recording_url=payload.get("recording_url"),
            content=payload.get("body"),
            error_code=payload.get("error_code"),
            error_message=payload.get("error_message"),
            raw_payload=payload,
        )
