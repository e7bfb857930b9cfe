"""
Dead-letter log for webhook events whose persistence kept failing.

One JSON object per line, appended from a worker thread so the event loop
is not blocked on disk I/O.
"""

import json
import logging
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import anyio

from comms_engine.shared.exceptions import AppException
from comms_engine.telephony.interface import ProviderEvent

logger = logging.getLogger(__name__)


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


class DeadLetterLog:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, event: ProviderEvent, error: AppException, attempts: int) -> None:
        entry = {
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
            "attempts": attempts,
            "error": error.message,
            "error_code": error.code,
            "event": asdict(event),
        }
        line = json.dumps(entry, default=_default, sort_keys=True)
        await anyio.to_thread.run_sync(self._append_sync, line)
        logger.error(
            "Webhook event dead-lettered",
            extra={
                "correlation_id": event.correlation_id,
                "event_kind": event.kind.value,
                "attempts": attempts,
                "error": error.message,
                "error_code": error.code,
                "dead_letter_path": str(self._path),
            },
        )

    def _append_sync(self, line: str) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def read_all(self) -> list[dict[str, Any]]:
        """Load every entry; used for replay tooling and tests."""
        if not self._path.exists():
            return []
        with self._path.open(encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
