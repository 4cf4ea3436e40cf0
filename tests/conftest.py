"""
Test configuration and fixtures.
Uses SQLite via aiosqlite: in-memory for single-session service tests, a temp
file for engine tests that open several concurrent sessions. Channel adapters
are fakes; time is driven by a manual clock.
"""
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from nurture.database import Base
from nurture.models.lead import Lead
from nurture.schemas.dispatch import SendResult
from nurture.services.catalog import seed_catalog
from nurture.services.dispatch import ChannelAdapters, DispatchPolicy
from nurture.services.sequence_engine import SequenceEngine
from nurture.workers.queue_processor import QueueProcessor

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class FakeEmailAdapter:
    def __init__(self, fail: bool = False, error: str = "provider down", delay: float = 0.0):
        self.fail = fail
        self.error = error
        self.delay = delay
        self.calls = 0
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return SendResult(success=False, error=self.error)
        self.sent.append({"to": to, "subject": subject, "body": body})
        return SendResult(success=True, provider_id=f"email-{self.calls}")


class FakeWhatsAppAdapter:
    def __init__(self, fail: bool = False, error: str = "instance offline", delay: float = 0.0):
        self.fail = fail
        self.error = error
        self.delay = delay
        self.calls = 0
        self.sent: list[dict] = []

    async def send(self, recipient: str, text: str, identity: str = "followup") -> SendResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return SendResult(success=False, error=self.error)
        self.sent.append({"to": recipient, "text": text, "identity": identity})
        return SendResult(success=True, provider_id=f"wa-{self.calls}")


def make_lead(**overrides) -> Lead:
    values = {
        "id": uuid.uuid4(),
        "first_name": "Dana",
        "last_name": "Reyes",
        "email": "dana@example.com",
        "phone": "(512) 555-0142",
        "company": "Reyes Freight",
        "source": "meta_ads",
        "status": "new",
    }
    values.update(overrides)
    return Lead(**values)


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
async def seeded_db(db):
    """In-memory database with the default sequence catalog."""
    await seed_catalog(db)
    await db.commit()
    return db


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'nurture.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await seed_catalog(session)
        await session.commit()
    yield factory
    await engine.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def email_adapter():
    return FakeEmailAdapter()


@pytest.fixture
def whatsapp_adapter():
    return FakeWhatsAppAdapter()


@pytest.fixture
def policy():
    return DispatchPolicy(
        calendar_link="https://cal.example.com/consult",
        timeout_seconds=1.0,
        max_attempts=3,
    )


@pytest.fixture
def processor(session_factory, email_adapter, whatsapp_adapter, policy, clock):
    return QueueProcessor(
        session_factory=session_factory,
        adapters=ChannelAdapters(email=email_adapter, whatsapp=whatsapp_adapter),
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def engine(session_factory, processor, clock):
    return SequenceEngine(session_factory, processor, clock)


@pytest.fixture
def lead_factory(session_factory):
    """Insert a lead and return it."""

    async def _create(**overrides) -> Lead:
        lead = make_lead(**overrides)
        async with session_factory() as session:
            session.add(lead)
            await session.commit()
        return lead

    return _create


@pytest.fixture(autouse=True)
def mock_alerts():
    """Keep alerting off Redis and webhooks in tests."""
    with patch("nurture.services.dispatch.send_alert", new_callable=AsyncMock) as dispatch_alert, \
         patch("nurture.workers.queue_processor.send_alert", new_callable=AsyncMock) as worker_alert:
        yield {"dispatch": dispatch_alert, "worker": worker_alert}


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("nurture.utils.redis_client.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock
