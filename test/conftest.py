"""
Pytest configuration and fixtures.

Every test gets its own SQLite file so that concurrent sessions hit real
row locking instead of sharing one in-memory connection.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID, uuid4

import jwt
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import comms_engine.auth.models  # noqa: F401
import comms_engine.leads.models  # noqa: F401
import comms_engine.sessions.models  # noqa: F401
from comms_engine.auth.models import User, UserRole
from comms_engine.config import Settings, get_settings
from comms_engine.leads.models import Lead
from comms_engine.shared.audit import RecordingAuditSink
from comms_engine.shared.database import Base, DatabaseManager
from comms_engine.telephony.config import ProviderType, TelephonyConfig
from comms_engine.telephony.factory import ProviderAdapters
from comms_engine.telephony.interface import ProviderFamily
from comms_engine.telephony.mock_adapter import MockProviderAdapter
from comms_engine.telephony.webhooks.dead_letter import DeadLetterLog
from comms_engine.telephony.webhooks.handler import WebhookIngestor

TEST_JWT_SECRET = "test-secret-key-for-comms-engine"
VOICE_ORIGIN = "+14155550000"
MESSAGING_ORIGIN = "+14155550001"


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'comms.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    return Settings(
        app_env="dev",
        database_url=database_url,
        jwt_secret_key=TEST_JWT_SECRET,
        jwt_algorithm="HS256",
    )


@pytest.fixture
def telephony_config(tmp_path: Path) -> TelephonyConfig:
    return TelephonyConfig(
        voice_provider=ProviderType.MOCK,
        messaging_provider=ProviderType.MOCK,
        vonage_from_number=VOICE_ORIGIN,
        twilio_from_number=MESSAGING_ORIGIN,
        webhook_base_url="https://hooks.example.com",
        initiation_timeout_seconds=2.0,
        webhook_max_retries=2,
        webhook_retry_base_seconds=0.0,
        dead_letter_path=str(tmp_path / "dead_letter.jsonl"),
    )


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def voice_adapter() -> MockProviderAdapter:
    return MockProviderAdapter(ProviderFamily.VOICE, origin_number=VOICE_ORIGIN)


@pytest.fixture
def messaging_adapter() -> MockProviderAdapter:
    return MockProviderAdapter(ProviderFamily.MESSAGING, origin_number=MESSAGING_ORIGIN)


@pytest.fixture
def adapters(voice_adapter: MockProviderAdapter, messaging_adapter: MockProviderAdapter) -> ProviderAdapters:
    return ProviderAdapters(voice=voice_adapter, messaging=messaging_adapter)


@pytest.fixture
def dead_letter(tmp_path: Path) -> DeadLetterLog:
    return DeadLetterLog(tmp_path / "dead_letter.jsonl")


@pytest.fixture
def ingestor(
    session_factory: async_sessionmaker[AsyncSession],
    dead_letter: DeadLetterLog,
    audit: RecordingAuditSink,
) -> WebhookIngestor:
    return WebhookIngestor(
        session_factory,
        dead_letter,
        audit=audit,
        max_retries=2,
        retry_base_seconds=0.0,
    )


UserFactory = Callable[..., Awaitable[User]]
LeadFactory = Callable[..., Awaitable[Lead]]


@pytest.fixture
def make_user(session_factory: async_sessionmaker[AsyncSession]) -> UserFactory:
    async def _make(role: UserRole = UserRole.AGENT, manager_id: UUID | None = None) -> User:
        async with session_factory() as session:
            user = User(
                email=f"{uuid4().hex[:10]}@example.com",
                name=f"{role.value} user",
                role=role.value,
                manager_id=manager_id,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def make_lead(session_factory: async_sessionmaker[AsyncSession]) -> LeadFactory:
    async def _make(
        phone_number: str,
        assigned_agent_id: UUID,
        alternate_number: str | None = None,
        customer_name: str = "Pat Customer",
        created_at: datetime | None = None,
    ) -> Lead:
        async with session_factory() as session:
            lead = Lead(
                phone_number=phone_number,
                alternate_number=alternate_number,
                assigned_agent_id=assigned_agent_id,
                customer_name=customer_name,
                created_at=created_at or datetime.now(timezone.utc),
            )
            session.add(lead)
            await session.commit()
            return lead

    return _make


def make_token(user_id: UUID, role: str, secret: str = TEST_JWT_SECRET) -> str:
    payload = {
        "user_id": str(user_id),
        "role": role,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers() -> Callable[[UUID, str], dict[str, str]]:
    """Build bearer headers for an arbitrary user id and role."""

    def _headers(user_id: UUID, role: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _headers


@pytest_asyncio.fixture
async def app(
    engine: AsyncEngine,
    test_settings: Settings,
    telephony_config: TelephonyConfig,
    adapters: ProviderAdapters,
    audit: RecordingAuditSink,
) -> AsyncGenerator[FastAPI, None]:
    from comms_engine.main import create_app

    database = DatabaseManager(database_url=test_settings.database_url)
    application = create_app(
        settings=test_settings,
        telephony_config=telephony_config,
        adapters=adapters,
        database=database,
        audit=audit,
    )
    application.dependency_overrides[get_settings] = lambda: test_settings
    yield application
    application.dependency_overrides.clear()
    await database.close()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
