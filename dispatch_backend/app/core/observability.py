"""
Observability: logging setup and request correlation.

Adds correlation IDs and structured logging context to requests.
"""

import time
import uuid
import logging
from contextvars import ContextVar
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Root of every engine logger ("dispatch.coordinator", "dispatch.reaper", ...)
logger = logging.getLogger("dispatch")

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    """Stamp the current request's correlation ID on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure the `dispatch` logger once at startup."""
    logger.setLevel(level.upper())
    if any(getattr(h, "_dispatch_handler", False) for h in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
    ))
    handler.addFilter(CorrelationIdFilter())
    handler._dispatch_handler = True
    logger.addHandler(handler)
    logger.propagate = False


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # 1. Generate or extract Correlation ID
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        token = correlation_id_var.set(correlation_id)

        # 2. Start Timer
        start_time = time.time()

        try:
            # 3. Process Request
            response = await call_next(request)

            # 4. Calculate Duration
            process_time = (time.time() - start_time) * 1000  # ms

            # 5. Add Header to Response
            response.headers["X-Correlation-ID"] = correlation_id
            response.headers["X-Process-Time"] = str(process_time)

            # 6. Structured Log
            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(process_time, 2),
                "ip": request.client.host if request.client else "unknown"
            }

            # Log level based on status
            if response.status_code >= 500:
                logger.error("Request Failed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request Error", extra=log_data)
            else:
                logger.info("Request API", extra=log_data)

            return response
        finally:
            correlation_id_var.reset(token)
