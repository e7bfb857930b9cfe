"""
Audit fact emission.

The general audit trail lives outside this service; the engine only hands it
facts. The default sink writes them as structured log records on the
``audit.sessions`` logger, which the log shipper forwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol


@dataclass(frozen=True)
class AuditFact:
    action: str
    session_id: str | None
    actor_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def emit(self, fact: AuditFact) -> None: ...


class StructuredAuditSink:
    """Default sink emitting one structured record per fact."""

    def __init__(self, logger_name: str = "audit.sessions") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, fact: AuditFact) -> None:
        self._logger.info(
            fact.action,
            extra={
                "event_type": "audit",
                "action": fact.action,
                "session_id": fact.session_id,
                "actor_id": fact.actor_id,
                "details": fact.details,
                "occurred_at": fact.occurred_at.isoformat(),
            },
        )


class RecordingAuditSink:
    """Keeps facts in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.facts: list[AuditFact] = []

    def emit(self, fact: AuditFact) -> None:
        self.facts.append(fact)

    def actions(self) -> list[str]:
        return [f.action for f in self.facts]
