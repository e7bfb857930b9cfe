"""
Custom exception classes for the application.
"""

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Classification of a provider-side failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class AppException(Exception):
    """Base exception for application errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize application exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ValidationError(AppException):
    """Raised when business validation fails (distinct from pydantic ValidationError)."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(AppException):
    """Raised when a requested record does not exist or is not visible."""

    status_code = 404

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "NOT_FOUND", details)


class AccessDeniedError(AppException):
    """Raised when the caller may not act on a record."""

    status_code = 403

    def __init__(self, message: str = "Access denied", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "ACCESS_DENIED", details)


class InvalidAddressError(AppException):
    """Raised when a destination phone number cannot be normalized to E.164."""

    status_code = 400

    def __init__(self, raw: str, reason: str | None = None) -> None:
        self.raw = raw
        super().__init__(
            f"Invalid phone number '{raw}'" + (f": {reason}" if reason else ""),
            "INVALID_ADDRESS",
            {"address": raw},
        )


class InitiationError(AppException):
    """Provider rejected or timed out an outbound attempt.

    The session has already been recorded as ``failed`` when this is built.
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        provider_code: str | None = None,
        session_id: Any = None,
    ) -> None:
        self.kind = kind
        self.provider_code = provider_code
        self.session_id = session_id
        super().__init__(
            message,
            "INITIATION_FAILED",
            {
                "kind": kind.value,
                "retryable": self.retryable,
                "provider_code": provider_code,
                "session_id": str(session_id) if session_id is not None else None,
            },
        )

    @property
    def retryable(self) -> bool:
        return self.kind == FailureKind.TRANSIENT

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 502 if self.retryable else 422


class CallControlError(AppException):
    """Provider refused or did not answer an in-call control such as mute."""

    def __init__(
        self,
        message: str,
        kind: FailureKind | None = None,
        provider_code: str | None = None,
        session_id: Any = None,
    ) -> None:
        self.kind = kind or FailureKind.TRANSIENT
        super().__init__(
            message,
            "CALL_CONTROL_FAILED",
            {
                "retryable": self.kind == FailureKind.TRANSIENT,
                "provider_code": provider_code,
                "session_id": str(session_id) if session_id is not None else None,
            },
        )

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 502 if self.kind == FailureKind.TRANSIENT else 422


class WebhookValidationError(AppException):
    """Malformed webhook payload, or an event for an unknown session that cannot create one."""

    status_code = 200

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "WEBHOOK_INVALID", details)


class IllegalTransitionError(AppException):
    """Duplicate, out-of-order or post-terminal status event."""

    status_code = 200

    def __init__(self, current_status: Any, target_status: Any) -> None:
        self.current_status = current_status
        self.target_status = target_status

        def _val(x: Any) -> str:
            return getattr(x, "value", str(x))

        super().__init__(
            f"Cannot transition from '{_val(current_status)}' to '{_val(target_status)}'",
            "ILLEGAL_TRANSITION",
            {
                "current_status": _val(current_status),
                "target_status": _val(target_status),
            },
        )


class LeadResolutionAmbiguity(AppException):
    """Several leads share a phone number. Informational only."""

    def __init__(self, phone_number: str, candidate_ids: list[Any], chosen_id: Any) -> None:
        self.phone_number = phone_number
        self.candidate_ids = candidate_ids
        self.chosen_id = chosen_id
        super().__init__(
            f"{len(candidate_ids)} leads match {phone_number}",
            "LEAD_AMBIGUOUS",
            {
                "phone_number": phone_number,
                "candidate_ids": [str(c) for c in candidate_ids],
                "chosen_id": str(chosen_id),
            },
        )


class PersistenceError(AppException):
    """Store write failed after all retries."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "PERSISTENCE_ERROR", details)
