"""
Provider adapter interface definition.

Each provider family (voice, messaging) has one adapter implementing
``ProviderAdapter``. Adapters never raise for provider or network failures
when placing or terminating; they return explicit ``PlacementResult`` /
``TerminationAck`` values carrying a ``ProviderFailure``. Webhook payloads are
parsed into the closed ``ProviderEvent`` type so the ingestor never sees
provider-native dictionaries.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import anyio

from comms_engine.sessions.models import SessionDirection, SessionKind, SessionStatus
from comms_engine.shared.exceptions import FailureKind
from comms_engine.telephony.addressing import DEFAULT_REGION, normalize_phone_number


class ProviderFamily(str, Enum):
    VOICE = "voice"
    MESSAGING = "messaging"


class WebhookSource(str, Enum):
    """Which webhook endpoint a payload arrived on."""

    VOICE_EVENT = "voice.event"
    VOICE_RECORDING = "voice.recording"
    MESSAGE_STATUS = "message.status"
    MESSAGE_INCOMING = "message.incoming"


class ProviderEventKind(str, Enum):
    """Closed set of provider events the engine understands."""

    CALL_STARTED = "call.started"
    CALL_RINGING = "call.ringing"
    CALL_ANSWERED = "call.answered"
    CALL_COMPLETED = "call.completed"
    CALL_BUSY = "call.busy"
    CALL_FAILED = "call.failed"
    CALL_REJECTED = "call.rejected"
    CALL_CANCELLED = "call.cancelled"
    CALL_UNANSWERED = "call.unanswered"
    CALL_TIMEOUT = "call.timeout"
    CALL_RECORDING = "call.recording"

    MESSAGE_ACCEPTED = "message.accepted"
    MESSAGE_QUEUED = "message.queued"
    MESSAGE_SCHEDULED = "message.scheduled"
    MESSAGE_SENDING = "message.sending"
    MESSAGE_SENT = "message.sent"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_UNDELIVERED = "message.undelivered"
    MESSAGE_FAILED = "message.failed"
    MESSAGE_RECEIVED = "message.received"


K = ProviderEventKind

# None means the event carries data but no status change.
EVENT_TARGET_STATUS: dict[ProviderEventKind, SessionStatus | None] = {
    K.CALL_STARTED: SessionStatus.RINGING,
    K.CALL_RINGING: SessionStatus.RINGING,
    K.CALL_ANSWERED: SessionStatus.ANSWERED,
    K.CALL_COMPLETED: SessionStatus.COMPLETED,
    K.CALL_BUSY: SessionStatus.BUSY,
    K.CALL_FAILED: SessionStatus.FAILED,
    K.CALL_REJECTED: SessionStatus.FAILED,
    K.CALL_CANCELLED: SessionStatus.FAILED,
    K.CALL_UNANSWERED: SessionStatus.NO_ANSWER,
    K.CALL_TIMEOUT: SessionStatus.NO_ANSWER,
    K.CALL_RECORDING: None,
    K.MESSAGE_ACCEPTED: SessionStatus.QUEUED,
    K.MESSAGE_QUEUED: SessionStatus.QUEUED,
    K.MESSAGE_SCHEDULED: SessionStatus.QUEUED,
    K.MESSAGE_SENDING: SessionStatus.SENT,
    K.MESSAGE_SENT: SessionStatus.SENT,
    K.MESSAGE_DELIVERED: SessionStatus.DELIVERED,
    K.MESSAGE_UNDELIVERED: SessionStatus.UNDELIVERED,
    K.MESSAGE_FAILED: SessionStatus.FAILED,
    K.MESSAGE_RECEIVED: SessionStatus.RECEIVED,
}


@dataclass(frozen=True)
class ProviderEvent:
    """Parsed webhook event, independent of the provider's wire format."""

    kind: ProviderEventKind
    correlation_id: str
    timestamp: datetime
    direction: SessionDirection | None = None
    from_number: str | None = None
    to_number: str | None = None
    duration_seconds: int | None = None
    recording_url: str | None = None
    content: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def session_kind(self) -> SessionKind:
        return SessionKind.CALL if self.kind.value.startswith("call.") else SessionKind.MESSAGE

    @property
    def target_status(self) -> SessionStatus | None:
        return EVENT_TARGET_STATUS[self.kind]

    @property
    def is_new_inbound(self) -> bool:
        """True when an unknown correlation id should create a session."""
        if self.kind == K.MESSAGE_RECEIVED:
            return True
        return (
            self.kind in (K.CALL_STARTED, K.CALL_RINGING)
            and self.direction == SessionDirection.INBOUND
        )

    @property
    def counterpart_number(self) -> str | None:
        """The remote party: the sender of inbound traffic."""
        return self.from_number

    @property
    def owner_number(self) -> str | None:
        return self.to_number


@dataclass(frozen=True)
class PlacementRequest:
    """Request to place an outbound call or send an outbound message."""

    kind: SessionKind
    destination: str
    origin: str
    session_id: str
    record: bool = True
    content: str | None = None
    media_urls: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderFailure:
    kind: FailureKind
    code: str
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind == FailureKind.TRANSIENT


@dataclass(frozen=True)
class PlacementResult:
    """Outcome of a placement attempt. Exactly one of correlation_id/failure is set."""

    correlation_id: str | None = None
    initial_status: SessionStatus | None = None
    failure: ProviderFailure | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accepted(
        cls,
        correlation_id: str,
        initial_status: SessionStatus,
        metadata: dict[str, str] | None = None,
        raw_response: dict[str, Any] | None = None,
    ) -> "PlacementResult":
        return cls(
            correlation_id=correlation_id,
            initial_status=initial_status,
            metadata=metadata or {},
            raw_response=raw_response or {},
        )

    @classmethod
    def rejected(cls, failure: ProviderFailure, raw_response: dict[str, Any] | None = None) -> "PlacementResult":
        return cls(failure=failure, raw_response=raw_response or {})

    @property
    def ok(self) -> bool:
        return self.failure is None and self.correlation_id is not None


@dataclass(frozen=True)
class TerminationAck:
    acknowledged: bool
    failure: ProviderFailure | None = None


@dataclass(frozen=True)
class ControlAck:
    """Provider answer to an in-call control such as mute."""

    acknowledged: bool
    failure: ProviderFailure | None = None


def join_media_urls(urls: tuple[str, ...] | list[str]) -> str:
    """Media URLs as one metadata value. URLs never contain unescaped spaces."""
    return " ".join(urls)


TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


def classify_http_status(status_code: int) -> FailureKind:
    """Map an HTTP error status from a provider to a failure kind."""
    if status_code >= 500 or status_code in TRANSIENT_HTTP_STATUSES:
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


class ProviderAdapter(ABC):
    """Abstract interface for provider adapters.

    ``place_sync`` / ``terminate_sync`` are the implementations; the async
    entrypoints run them in a worker thread so the event loop is never
    blocked on provider HTTP. The worker is abandoned on cancellation, which
    lets callers bound the wait with ``anyio.fail_after``.
    """

    family: ProviderFamily
    session_kind: SessionKind

    def __init__(self, default_region: str = DEFAULT_REGION) -> None:
        self._default_region = default_region

    @property
    @abstractmethod
    def origin_number(self) -> str:
        """The provider number outbound traffic is sent from."""
        ...

    async def place(self, request: PlacementRequest) -> PlacementResult:
        return await anyio.to_thread.run_sync(self.place_sync, request, abandon_on_cancel=True)

    @abstractmethod
    def place_sync(self, request: PlacementRequest) -> PlacementResult:
        ...

    async def terminate(self, correlation_id: str) -> TerminationAck:
        return await anyio.to_thread.run_sync(self.terminate_sync, correlation_id, abandon_on_cancel=True)

    @abstractmethod
    def terminate_sync(self, correlation_id: str) -> TerminationAck:
        ...

    async def set_muted(self, correlation_id: str, muted: bool) -> ControlAck:
        return await anyio.to_thread.run_sync(self.set_muted_sync, correlation_id, muted, abandon_on_cancel=True)

    def set_muted_sync(self, correlation_id: str, muted: bool) -> ControlAck:
        """Mute or unmute the provider leg. Only live calls support it."""
        return ControlAck(
            False,
            ProviderFailure(FailureKind.PERMANENT, "UNSUPPORTED", f"{self.family.value} sessions cannot be muted"),
        )

    def normalize_address(self, raw: str) -> str:
        """Return ``raw`` in E.164 or raise ``InvalidAddressError``."""
        return normalize_phone_number(raw, self._default_region)

    @abstractmethod
    def parse_event(self, payload: dict[str, Any], source: WebhookSource) -> ProviderEvent | None:
        """Parse a provider payload.

        Returns None for event kinds the engine does not track. Raises
        ``WebhookValidationError`` when required identifiers are missing.
        """
        ...

    def validate_signature(self, url: str, params: dict[str, str], signature: str | None) -> bool:
        """Check a webhook signature. Providers without one accept everything."""
        return True

    def close(self) -> None:
        return None
