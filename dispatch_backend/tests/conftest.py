"""
Centralized Test Configuration.

Every test gets its own SQLite file so that concurrent conditional writes
run on separate connections, the way they do against PostgreSQL.
"""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from dispatch_backend.app.main import app
from dispatch_backend.app.db.session import get_db, Base, build_session_factory
from dispatch_backend.app.services.engine import DispatchEngine
from dispatch_backend.tests.helpers import MockRedis, RecordingGateway, make_settings


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable foreign key constraints for SQLite."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
async def make_engine(session_factory, mock_redis, gateway):
    """Factory for DispatchEngine instances sharing the test database."""
    built = []

    def factory(**overrides) -> DispatchEngine:
        engine = DispatchEngine(
            session_factory,
            mock_redis,
            settings=make_settings(**overrides),
            gateway=gateway,
        )
        built.append(engine)
        return engine

    yield factory

    for engine in built:
        await engine.stop()


@pytest.fixture
def dispatch_engine(make_engine):
    return make_engine()


@pytest.fixture
async def client(dispatch_engine, session_factory):
    """Async client for testing, wired to the test engine and database."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.dispatch_engine = dispatch_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
