"""
SQLAlchemy model for leads.

Leads are owned by the CRUD side of the backend; the engine only reads the
fields needed to match an inbound phone number to a lead and its agent.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from comms_engine.shared.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    customer_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    phone_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
    )
    alternate_number: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        index=True,
    )
    assigned_agent_id: Mapped[UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Lead(id={self.id}, phone_number={self.phone_number})>"
