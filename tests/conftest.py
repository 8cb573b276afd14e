"""Shared test fixtures — file-backed async SQLite DB + test client."""

import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import app.models  # noqa: F401, E402
from app.api.deps import get_orchestrator  # noqa: E402
from app.core.config import get_settings  # noqa: E402
from app.core.database import get_session, get_session_factory  # noqa: E402
from app.main import app  # noqa: E402
from app.models.request import ProvisioningRequest  # noqa: E402
from app.services.orchestrator import ProvisioningOrchestrator, RetryPolicy  # noqa: E402

# No backoff between attempts in tests
FAST_RETRY = RetryPolicy(max_attempts=3, multiplier=0, max_wait=0)


@pytest.fixture
async def engine(tmp_path):
    """One SQLite file per test.

    Every transaction starts with BEGIN IMMEDIATE so concurrent sessions
    queue on the write lock instead of failing with "database is locked".
    """
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'provisioner.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    @event.listens_for(eng.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def make_request():
    def _make(**overrides) -> ProvisioningRequest:
        values = {
            "idempotency_key": "k1",
            "company_name": "Acme Trading",
            "admin_first_name": "Ada",
            "admin_last_name": "Lovelace",
            "admin_email": "ada@acme.io",
            "subdomain": "acme",
            "plan_id": "pro",
            "billing_cycle": "monthly",
        }
        values.update(overrides)
        return ProvisioningRequest(**values)

    return _make


@pytest.fixture
def make_orchestrator(session_factory, settings):
    """Build an orchestrator on the test database; runs execute inline."""

    def _make(**kwargs) -> ProvisioningOrchestrator:
        kwargs.setdefault("policy", FAST_RETRY)
        return ProvisioningOrchestrator.from_session_factory(session_factory, settings, **kwargs)

    return _make


@pytest.fixture
async def client(session_factory, make_orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client wired to the test database."""

    async def _override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_orchestrator] = lambda: make_orchestrator()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
