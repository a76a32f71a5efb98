"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

All ledger timestamps are stored as naive UTC (DateTime(timezone=False)), so
values coming from price quotes, request payloads or the scheduler must be
normalised before they are compared with or written to model columns.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp_ms(timestamp_ms: float) -> datetime:
    """Naive UTC datetime for a unix timestamp in milliseconds"""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp_ms(dt: datetime) -> int:
    """Unix timestamp in milliseconds; naive values are treated as UTC"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def expires_at(opened_at: datetime, seconds: int) -> datetime:
    return ensure_naive_datetime(opened_at) + timedelta(seconds=seconds)
