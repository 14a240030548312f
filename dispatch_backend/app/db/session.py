"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support (asyncpg in production, aiosqlite in tests).
"""

from contextlib import asynccontextmanager

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dispatch_backend.app.core.config import settings
from dispatch_backend.app.core.exceptions import TransientStoreError


def build_engine(database_url: str, **kwargs):
    """
    Create an async engine for the given URL.

    Pool sizing only applies to server databases; SQLite rejects those arguments.
    """
    options = {"echo": settings.db_echo, "future": True}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    options.update(kwargs)
    return create_async_engine(database_url, **options)


def build_session_factory(bind) -> async_sessionmaker:
    """Session factory used by request handlers and background rounds alike."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# Create async engine
engine = build_engine(settings.database_url)

# Create async session factory
AsyncSessionLocal = build_session_factory(engine)

# Create declarative base for models
Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# Connection-level failures worth retrying; constraint and programming errors are not
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, SATimeoutError, OSError)


@asynccontextmanager
async def store_errors(operation: str):
    """Translate transient database failures into TransientStoreError."""
    try:
        yield
    except TRANSIENT_DB_ERRORS as e:
        raise TransientStoreError(details={"operation": operation, "error": str(e)}) from e
