"""
SQLAlchemy model for communication sessions.

One row per voice call or text message, whichever direction. Rows are never
deleted; they change only through legal status transitions.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from comms_engine.shared.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SessionKind(str, Enum):
    CALL = "call"
    MESSAGE = "message"


class SessionDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SessionStatus(str, Enum):
    """Union of the per-kind status enumerations."""

    # call
    PENDING = "pending"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    # message
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    RECEIVED = "received"
    # both
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommunicationSession(Base):
    """A tracked call or message, from initiation/first sight to terminal status."""

    __tablename__ = "communication_sessions"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    kind: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        index=True,
    )
    direction: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    owner_user_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )
    counterpart_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
    )
    owner_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
    )
    provider_correlation_id: Mapped[str | None] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
    )
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    terminated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_seconds: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    lead_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )
    customer_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    content: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    recording_url: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )
    tags: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    # "metadata" is reserved on declarative classes
    session_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    # bumped on every metadata/tags merge; guards concurrent annotations
    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def session_kind(self) -> SessionKind:
        return SessionKind(self.kind)

    @property
    def session_status(self) -> SessionStatus:
        return SessionStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<CommunicationSession(id={self.id}, kind={self.kind}, "
            f"direction={self.direction}, status={self.status})>"
        )


# chronological listing
Index(
    "ix_communication_sessions_initiated_at_desc",
    CommunicationSession.initiated_at.desc(),
)
