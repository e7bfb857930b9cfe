"""
FastAPI application entry point.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from comms_engine import __version__
from comms_engine.config import Settings, get_settings
from comms_engine.sessions.router import router as sessions_router
from comms_engine.shared.audit import AuditSink, StructuredAuditSink
from comms_engine.shared.database import DatabaseManager, get_database_manager
from comms_engine.shared.exceptions import AppException
from comms_engine.shared.logging import CorrelationIdMiddleware, get_logger, setup_logging
from comms_engine.telephony.config import TelephonyConfig, get_telephony_config
from comms_engine.telephony.factory import ProviderAdapters, build_adapters
from comms_engine.telephony.webhooks.dead_letter import DeadLetterLog
from comms_engine.telephony.webhooks.handler import WebhookIngestor
from comms_engine.telephony.webhooks.router import router as webhooks_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings: Settings = app.state.settings

    logger.info("Application starting", extra={"env": settings.app_env})

    if settings.auto_create_tables:
        await app.state.database.create_all()
        logger.info("Database tables ensured")

    yield

    logger.info("Shutting down application")
    app.state.adapters.close()
    await app.state.database.close()
    logger.info("Application shutdown complete")


def create_app(
    settings: Settings | None = None,
    telephony_config: TelephonyConfig | None = None,
    adapters: ProviderAdapters | None = None,
    database: DatabaseManager | None = None,
    audit: AuditSink | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators are built here, once, and exposed on ``app.state``; tests
    pass their own.
    """
    settings = settings or get_settings()
    telephony_config = telephony_config or get_telephony_config()
    database = database or get_database_manager()
    audit = audit or StructuredAuditSink()
    adapters = adapters or build_adapters(telephony_config)

    app = FastAPI(
        title="Communication Session Engine",
        description="Outbound calls and messages, provider webhook reconciliation",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.state.settings = settings
    app.state.telephony_config = telephony_config
    app.state.database = database
    app.state.audit = audit
    app.state.adapters = adapters
    app.state.ingestor = WebhookIngestor(
        database.session_factory,
        DeadLetterLog(telephony_config.dead_letter_path),
        audit=audit,
        max_retries=telephony_config.webhook_max_retries,
        retry_base_seconds=telephony_config.webhook_retry_base_seconds,
        default_region=telephony_config.default_region,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppException)
    async def _app_exception(_: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": {"code": exc.code, "message": exc.message, **exc.details}},
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    # Include routers
    app.include_router(sessions_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
