"""Shared date/time helpers."""

from datetime import date, datetime, timezone


def ensure_aware(dt: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; comparisons against ``utcnow()`` need both sides aware.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_date(value) -> date | None:
    """Accept ``date``, ``datetime`` or ISO string; return a ``date`` or None.

    Raises ValueError for strings that are not ISO dates.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
