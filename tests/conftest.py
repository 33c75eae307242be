"""Pytest configuration and shared fixtures.

Each test gets its own SQLite file (aiosqlite), a fake clock, a manual step
timer that fires only when told to, and fake dispatchers that record what
they were asked to send.
"""

import asyncio
import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set testing mode BEFORE importing the app (NullPool, memory rate limits)
os.environ["TESTING"] = "true"
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'tidewatch-test.db')}",
)

from tidewatch.config import settings

# Override settings for testing
settings.testing = True
settings.operator_api_token = ""
settings.twilio_auth_token = ""
settings.sendgrid_webhook_public_key = ""

from tidewatch.core.dependencies import get_escalation_engine, get_webhook_normalizers
from tidewatch.database import get_db
from tidewatch.main import app
from tidewatch.models import Base, Contact, EscalationPolicy
from tidewatch.models.contact import Channel
from tidewatch.services.channels.base import (
    ChannelDispatcher,
    DispatcherRegistry,
    DispatchReceipt,
    NotificationContent,
)
from tidewatch.services.escalation_engine import EscalationEngine
from tidewatch.services.webhooks import build_normalizers

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when advanced."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualStepTimer:
    """Step timer that records deadlines; ``fire_due`` runs the expired ones."""

    def __init__(self):
        self.jobs: dict[tuple[uuid.UUID, int], tuple[datetime, object]] = {}

    def schedule(self, alert_id, step_index, run_at, callback) -> None:
        self.jobs[(alert_id, step_index)] = (run_at, callback)

    def cancel(self, alert_id, step_index) -> None:
        self.jobs.pop((alert_id, step_index), None)

    def cancel_all(self, alert_id) -> None:
        for key in [k for k in self.jobs if k[0] == alert_id]:
            del self.jobs[key]

    def deadline(self, alert_id, step_index) -> datetime:
        return self.jobs[(alert_id, step_index)][0]

    async def fire_due(self, now: datetime) -> int:
        due = sorted(
            (item for item in self.jobs.items() if item[1][0] <= now),
            key=lambda item: item[1][0],
        )
        fired = 0
        for key, (_, callback) in due:
            if key not in self.jobs:
                continue
            del self.jobs[key]
            await callback(*key)
            fired += 1
        return fired


class FakeDispatcher(ChannelDispatcher):
    """Records sends; optionally raises or stalls."""

    provider = "fake"

    def __init__(self, channel: Channel, *, error: Exception | None = None, delay=0.0):
        super().__init__()
        self.channel = channel
        self.error = error
        self.delay = delay
        self.sent: list[tuple[str, NotificationContent]] = []

    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append((address, content))
        return DispatchReceipt(
            provider=self.provider,
            provider_message_id=f"{self.channel.value}-{uuid.uuid4().hex[:16]}",
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def step_timer() -> ManualStepTimer:
    return ManualStepTimer()


@pytest.fixture
def dispatchers() -> DispatcherRegistry:
    return DispatcherRegistry(FakeDispatcher(channel) for channel in Channel)


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh schema in a per-test SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tidewatch.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def engine(session_maker, dispatchers, step_timer, clock) -> EscalationEngine:
    return EscalationEngine(
        session_maker,
        dispatchers,
        step_timer,
        clock=clock,
        public_base_url="https://tidewatch.test",
        dispatch_timeout=1.0,
    )


@pytest.fixture
def make_contact(db_session):
    async def _make(**overrides) -> Contact:
        fields = {
            "name": "Ishmael",
            "role": "captain",
            "priority": 1,
            "phone": "+14155550100",
            "active": True,
        }
        fields.update(overrides)
        contact = Contact(**fields)
        db_session.add(contact)
        await db_session.commit()
        return contact

    return _make


@pytest.fixture
def make_policy(db_session, clock):
    async def _make(steps: list[dict], **overrides) -> EscalationPolicy:
        fields = {
            "name": "Coastal default",
            "event_types": [],
            "severity_levels": [],
            "steps": steps,
            "active": True,
            "created_at": clock(),
        }
        fields.update(overrides)
        policy = EscalationPolicy(**fields)
        db_session.add(policy)
        await db_session.commit()
        return policy

    return _make


@pytest.fixture
def ledger_entries(engine):
    """Read an alert's ledger entries through a fresh session."""

    async def _entries(alert_id):
        async with engine.session_maker() as db:
            return await engine.ledger.list_for_alert(db, alert_id)

    return _entries


@pytest_asyncio.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    """API client wired to the per-test database and engine."""

    async def override_get_db():
        async with engine.session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_escalation_engine] = lambda: engine
    app.dependency_overrides[get_webhook_normalizers] = lambda: build_normalizers(
        settings, engine.ledger
    )
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
