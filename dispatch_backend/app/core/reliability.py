"""
Reliability utilities.

Bounded exponential backoff for transient ledger failures, and a circuit
breaker in front of the notification transport.
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Any, Tuple, Type

logger = logging.getLogger("dispatch.reliability")


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: int = 3,
    base_delay: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
    **kwargs
) -> Any:
    """
    Await `func(*args, **kwargs)`, retrying on `retry_on` errors.

    Sleeps base_delay, 2*base_delay, 4*base_delay... between attempts and
    re-raises the last error once `attempts` calls have failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient failure, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "delay_s": delay,
                    "error": str(e),
                }
            )
            await asyncio.sleep(delay)


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    After 'failure_threshold' consecutive failures the circuit opens and
    rejects calls for 'reset_timeout' seconds, then lets one trial call through.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 60):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.monotonic()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"
