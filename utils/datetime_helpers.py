"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: All models store timezone-naive UTC datetimes (DateTime(timezone=False))
so that expiry comparisons behave the same on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the default clock injected into every service.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_until(target: datetime, now: datetime) -> int:
    """Whole seconds from now until target, rounded up; never negative"""
    delta = (ensure_naive_datetime(target) - ensure_naive_datetime(now)).total_seconds()
    if delta <= 0:
        return 0
    whole = int(delta)
    return whole if whole == delta else whole + 1


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime as ISO-8601 with an explicit Z suffix"""
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"
