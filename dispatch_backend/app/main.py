"""
FastAPI Application Entry Point.

This is the main application file for the ASAP Dispatch Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from dispatch_backend.app.core.config import settings
from dispatch_backend.app.api.v1.router import router as api_v1_router
from dispatch_backend.app.db.session import engine, AsyncSessionLocal, Base
from dispatch_backend.app.core.observability import ObservabilityMiddleware, configure_logging, logger
from dispatch_backend.app.core.redis_client import redis_client, ping_redis, close_redis
from dispatch_backend.app.services.engine import DispatchEngine
from dispatch_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from dispatch_backend.app.models.trip_request import TripRequest
from dispatch_backend.app.models.driver_location import DriverLocation
from dispatch_backend.app.models.assignment_attempt import AssignmentAttempt
from dispatch_backend.app.models.audit_log import AuditLog
from dispatch_backend.app.models.notification import Notification


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging and creates database tables.
    2. Builds the dispatch engine and starts the expiry reaper.
    3. On shutdown stops the reaper, cancels in-flight rounds and closes Redis.
    """
    configure_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if not await ping_redis():
        logger.warning("Redis unreachable at startup, round records will be skipped")

    dispatch_engine = DispatchEngine(AsyncSessionLocal, redis_client, settings)
    app.state.dispatch_engine = dispatch_engine
    dispatch_engine.start()
    logger.info("Dispatch engine started", extra={"reaper_enabled": settings.reaper_enabled})

    yield

    await dispatch_engine.stop()
    await close_redis()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Real-time matching of delivery requests to nearby drivers",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the ASAP Dispatch Backend API",
        "docs": "/docs",
        "health": "/health",
    }
