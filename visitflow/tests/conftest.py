"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import itertools
import pytest
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from src.database import Base
import src.models  # noqa: F401 - registers every table on Base.metadata
from src.models.conversation import Conversation
from src.models.profile import Profile
from src.models.property import Property


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# 2026-01-20 09:00 in São Paulo
NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)
PHONE = "5511987654321"


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


@pytest.fixture
def mock_whatsapp():
    """Mock for async send_text - prevents real Z-API calls in tests.
    Provider ids are unique per call (whatsapp_messages.message_id is unique)."""
    counter = itertools.count(1)

    async def _send(phone, text, **kwargs):
        return {
            "status": "sent",
            "message_id": f"ZAPI_test_{next(counter)}",
            "provider": "zapi",
            "error": None,
        }

    mock = AsyncMock(side_effect=_send)
    with (
        patch("src.agents.conductor.send_text", new=mock),
        patch("src.api.webhooks.send_text", new=mock),
        patch("src.api.conversations.send_text", new=mock),
    ):
        yield mock


@pytest.fixture
def mock_ai():
    """Mock for async generate_with_tools - prevents real AI API calls in tests."""
    with patch("src.agents.visit_agent.generate_with_tools", new_callable=AsyncMock) as mock:
        mock.return_value = {
            "content": "Oi! Sou a Sofia 😊 Me conta qual imóvel você quer visitar?",
            "tool_calls": [],
            "provider": "anthropic",
            "model": "claude-haiku-4-5-20251001",
            "latency_ms": 500,
            "cost_usd": 0.001,
            "input_tokens": 100,
            "output_tokens": 50,
        }
        yield mock


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("src.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.publish = AsyncMock(return_value=1)
        redis_mock.eval = AsyncMock(return_value=1)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        redis_mock.pipeline = MagicMock(return_value=pipe)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def broker(db):
    profile = Profile(id=uuid.uuid4(), full_name="Marina Souza", role="broker", is_active=True)
    db.add(profile)
    await db.commit()
    return profile


@pytest.fixture
async def catalog(db):
    """Three available properties; two share the Centro neighborhood."""
    rows = [
        Property(
            id=uuid.uuid4(), code="IMV-001", title="Apartamento 2 quartos",
            address_street="Rua das Flores", address_number="120",
            address_neighborhood="Centro", address_city="São Paulo", address_state="SP",
            bedrooms=2, bathrooms=1, rent_price=2800,
        ),
        Property(
            id=uuid.uuid4(), code="IMV-002", title="Cobertura duplex",
            address_street="Rua das Flores", address_number="88",
            address_neighborhood="Centro", address_city="São Paulo", address_state="SP",
            bedrooms=3, bathrooms=3, sale_price=1450000,
        ),
        Property(
            id=uuid.uuid4(), code="IMV-003", title="Casa com quintal",
            address_street="Rua Domingos de Morais", address_number="1450",
            address_neighborhood="Vila Mariana", address_city="São Paulo", address_state="SP",
            bedrooms=3, bathrooms=2, sale_price=980000, property_type="house",
        ),
    ]
    db.add_all(rows)
    await db.commit()
    return {p.code: p for p in rows}


@pytest.fixture
async def conversation(db):
    conv = Conversation(id=uuid.uuid4(), whatsapp_id=PHONE, phone=PHONE, display_name="Ana")
    db.add(conv)
    await db.commit()
    return conv
