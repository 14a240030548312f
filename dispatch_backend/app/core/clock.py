"""
Clock helpers.

All dispatch timestamps are naive UTC so that SQLite (tests) and PostgreSQL
compare them the same way.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_until(deadline: datetime, now: datetime | None = None) -> float:
    """Seconds left until `deadline`, never negative."""
    now = now or utcnow()
    return max(0.0, (deadline - now).total_seconds())
