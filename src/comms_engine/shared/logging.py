"""
Structured JSON logging configuration.

Every record is rendered as one JSON object. Context travels through the
standard ``extra={...}`` mechanism; the request correlation id is attached
automatically from a context variable set by ``CorrelationIdMiddleware``.
Audit facts (``audit.*`` loggers) go through the same formatter, so the log
shipper can route them by the ``event_type`` field.
"""

import json
import logging
import os
import sys
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from comms_engine.config import get_settings

CORRELATION_ID_HEADER = "X-Correlation-ID"

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Loggers that are chatty at INFO and only interesting when something breaks.
_QUIET_LOGGERS = ("httpx", "httpcore", "python_multipart", "aiosqlite", "asyncio")


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, ``extra`` fields flattened in."""

    _RESERVED = frozenset(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    ) | {"message", "asctime"}

    def __init__(self, service: str = "comms-engine") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key.startswith("_"):
                continue
            log_data[f"extra_{key}" if key in log_data else key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger.

    Handlers live on the root logger (see ``setup_logging``); a logger used
    before the application configured logging still gets JSON output.
    """
    logger = logging.getLogger(name)
    if not logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
    return logger


def setup_logging() -> None:
    """Configure structured JSON logging on the root logger."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(settings.app_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    root_logger.handlers = [handler]

    # SQL echo is opt-in: SQLALCHEMY_LOG_LEVEL=INFO or DEBUG
    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.dialects"):
        logging.getLogger(name).setLevel(sqlalchemy_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Extract or generate a correlation ID for each request.

    The id is stored in ``correlation_id_var`` for the duration of the
    request and echoed back in the response headers.
    """

    def __init__(
        self,
        app: Any,
        header_name: str = CORRELATION_ID_HEADER,
        generator: Callable[[], str] = generate_correlation_id,
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.generator = generator

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        correlation_id = request.headers.get(self.header_name) or self.generator()
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[self.header_name] = correlation_id
        return response
