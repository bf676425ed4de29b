"""Shared utility functions for services and blueprints.

utcnow / as_utc:   timezone handling that works on SQLite and PostgreSQL
parse_datetime:    query-string timestamps (returns None on bad input)
paginate_query:    offset/limit pagination with a total count
"""
from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO date or datetime string into a UTC-aware datetime.

    Returns None for empty/invalid input. A bare date means midnight UTC.
    A trailing ``Z`` is accepted.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def paginate_query(query: Any, page: int = 1, per_page: int = 20) -> tuple[list, int]:
    """Apply offset/limit pagination to a SQLAlchemy query.

    Args:
        query: SQLAlchemy query object.
        page: 1-based page number.
        per_page: Items per page (capped at 100).

    Returns:
        Tuple of (items list, total count).
    """
    page = max(page, 1)
    per_page = max(min(per_page, 100), 1)
    total = query.count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total
