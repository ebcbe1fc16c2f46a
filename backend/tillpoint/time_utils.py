"""
Stored datetimes are naive UTC; the API speaks ISO-8601 with a trailing 'Z'.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

BARE_DATE_LENGTH = len("YYYY-MM-DD")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Blank input gives None; offsets (including 'Z') are converted to UTC."""
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _naive_utc(datetime.fromisoformat(text))


def parse_range_end(value: Optional[str]) -> Optional[datetime]:
    """
    Exclusive upper bound for a date-range filter.

    A bare date covers that whole day and becomes midnight of the next one;
    a full timestamp is itself included.
    """
    moment = parse_iso_datetime(value)
    if moment is None:
        return None
    if len(value.strip()) == BARE_DATE_LENGTH:
        return moment + timedelta(days=1)
    return moment + timedelta(microseconds=1)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
