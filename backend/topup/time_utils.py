from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC 'now'; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_after(start: Optional[datetime], days: int) -> Optional[datetime]:
    if start is None:
        return None
    return start + timedelta(days=days)


def parse_as_of(value: Optional[str]) -> datetime:
    """
    Reference instant for overdue checks.

    None / "" means now. Dates ("2025-01-31") and ISO datetimes, with or
    without "Z" / offset, are normalized to naive UTC.
    """
    if value is None or not value.strip():
        return utcnow()
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a trailing 'Z'; naive values are read as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
