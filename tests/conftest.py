"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; keep tests off the on-disk database.
os.environ.setdefault("SLOTBOOK_DATABASE_URL", "sqlite://")
os.environ.setdefault("SLOTBOOK_REDIS_URL", "redis://localhost:6379/15")

from datetime import date, datetime, timedelta

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from slotbook.database import init_db
from slotbook.models import Providers, SessionType, Slots, SlotState, utcnow
from slotbook.schemas.bookings import BookingContact
from slotbook.services.slots.config import BookingConfig
from slotbook.services.staleness import StalenessNotifier

# Sunday noon UTC; the Monday after is 2030-01-07.
NOW = datetime(2030, 1, 6, 12, 0)
MONDAY = date(2030, 1, 7)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def notifier(redis):
    return StalenessNotifier(redis)


@pytest.fixture
def config():
    return BookingConfig()


@pytest.fixture
def provider(db):
    obj = Providers(slug="dr-rao", display_name="Dr Rao", timezone="UTC")
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def contact():
    return BookingContact(
        name="Asha Mehta",
        email="asha@example.com",
        phone="+91 98765 43210",
        notes="First session",
    )


def make_slot(
    db,
    provider,
    starts_at: datetime,
    session_type: SessionType = SessionType.PERSONAL,
    minutes: int = 60,
    state: SlotState = SlotState.OPEN,
) -> Slots:
    slot = Slots(
        provider_id=provider.id,
        session_type=session_type.value,
        date=starts_at.date(),
        start_time=starts_at.strftime("%H:%M"),
        end_time=(starts_at + timedelta(minutes=minutes)).strftime("%H:%M"),
        timezone="UTC",
        starts_at=starts_at,
        ends_at=starts_at + timedelta(minutes=minutes),
        state=state.value,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    return slot


@pytest.fixture
def slot_factory(db, provider):
    def _make(starts_at: datetime, **kwargs) -> Slots:
        return make_slot(db, provider, starts_at, **kwargs)
    return _make


@pytest.fixture
def app(session_factory, redis, notifier, config):
    """FastAPI app wired to the test database, fakeredis and a fresh notifier."""
    from slotbook.database import get_db
    from slotbook.dependencies import get_config, get_notifier
    from slotbook.main import app
    from slotbook.redis_client import get_redis
    from slotbook.services.slots.invalidator import register_cache_invalidation

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_config] = lambda: config
    subscription = register_cache_invalidation(notifier, redis)
    yield app
    subscription.unsubscribe()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
