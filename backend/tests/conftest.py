"""Shared test fixtures for all test groups.

Every test gets a fresh database: a SQLite file under tmp_path, or the
database named by TEST_DATABASE_URL (PostgreSQL in CI).
"""

import os

from tests.factories import WEBHOOK_SECRET, WORKER_SECRET

# Settings are cached on first use; set the environment before any app import reads them
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["WORKER_SECRET"] = WORKER_SECRET
os.environ["DEBUG"] = "true"
os.environ["METRICS_ENABLED"] = "false"
os.environ["ALERT_WEBHOOK_URL"] = ""

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.db.base import Base, create_engine_for
from app.payments.processor_fake import PaymentProcessorFake
from app.services.alerting import AlertSink
from app.services.backbone import build_backbone

get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Create tables on a fresh database and drop them afterwards."""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'escrow_test.db'}"
    engine = create_engine_for(url)

    # Import all models so metadata is populated
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def processor_fake():
    """Fresh PaymentProcessorFake with happy_path scenario (default)."""
    return PaymentProcessorFake(scenario="happy_path")


@pytest.fixture
def alerts(session_factory):
    """Alert sink that stores alerts but posts nowhere."""
    return AlertSink(session_factory, webhook_url="", environment="test")


@pytest.fixture
def backbone(session_factory, processor_fake, alerts, settings):
    """Fully wired backbone over the test database and the fake processor."""
    return build_backbone(session_factory, processor_fake, settings, alerts=alerts)


@pytest.fixture
def make_backbone(session_factory, alerts, settings):
    """Build a backbone around a different processor (e.g. a failing scenario)."""

    def _make(processor):
        return build_backbone(session_factory, processor, settings, alerts=alerts)

    return _make


@pytest.fixture
def app(engine, session_factory, processor_fake, monkeypatch):
    """FastAPI app bound to the test database, with the fake processor injected.

    The lifespan is not run: the global session factory is pointed at the
    test engine directly.
    """
    import app.db.base as db_mod
    from app.main import create_app
    from app.payments.stripe_processor import get_payment_processor

    monkeypatch.setattr(db_mod, "_engine", engine)
    monkeypatch.setattr(db_mod, "_session_factory", session_factory)

    application = create_app()
    application.dependency_overrides[get_payment_processor] = lambda: processor_fake
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def api_client(app):
    """In-process HTTP client. Unhandled errors come back as 500 responses instead of raising."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def worker_headers():
    return {"X-Worker-Secret": WORKER_SECRET}
