"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import itertools
import pytest
import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from src.database import Base
from src.models import Account, Lead
from src.schemas.communication import CallPlacement, MessageReceipt
from src.services.content import ContentGenerator, TemplateContentGenerator
from src.services.gateway import CommunicationGateway


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


def session_factory_for(session: AsyncSession):
    """Stand-in for src.database.async_session_factory that hands out the test session."""
    @asynccontextmanager
    async def factory():
        yield session
    return factory


@pytest.fixture
def worker_db(db):
    """Point the background workers at the test session."""
    factory = session_factory_for(db)
    with (
        patch("src.workers.contact_dispatcher.async_session_factory", factory),
        patch("src.workers.grace_period_sweeper.async_session_factory", factory),
    ):
        yield db


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests (locks, dedup, heartbeats)."""
    with patch("src.utils.dedup.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.eval = AsyncMock(return_value=1)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_gateway():
    """Gateway double - every placement/send gets a fresh provider id."""
    gateway = AsyncMock(spec=CommunicationGateway)
    call_ids = (f"CA{n:032d}" for n in itertools.count(1))
    message_ids = (f"SM{n:032d}" for n in itertools.count(1))
    gateway.place_call.side_effect = lambda *a, **kw: CallPlacement(provider_call_id=next(call_ids))
    gateway.send_message.side_effect = lambda *a, **kw: MessageReceipt(provider_message_id=next(message_ids))
    return gateway


@pytest.fixture
def content() -> ContentGenerator:
    return TemplateContentGenerator()


@pytest.fixture
def make_account(db):
    async def _make(**kwargs) -> Account:
        values = {
            "name": "Test Realty",
            "timezone": "America/New_York",
            "subscription_plan": "pro",
            "policy": {},
        }
        values.update(kwargs)
        account = Account(id=uuid.uuid4(), **values)
        db.add(account)
        await db.flush()
        return account
    return _make


@pytest.fixture
def make_lead(db):
    async def _make(account: Account, **kwargs) -> Lead:
        values = {
            "name": "Jamie Doe",
            "phone_number": f"+1512555{uuid.uuid4().int % 10000:04d}",
            "status": "new",
            "ai_enabled": True,
            "voice_calling_enabled": True,
            "engagement_score": 0,
            "archived": False,
        }
        values.update(kwargs)
        lead = Lead(id=uuid.uuid4(), account_id=account.id, **values)
        db.add(lead)
        await db.flush()
        return lead
    return _make


@pytest.fixture
async def account(make_account):
    return await make_account()


@pytest.fixture
async def lead(make_lead, account):
    return await make_lead(account)
