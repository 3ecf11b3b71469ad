"""Shared utility functions for timestamps and input parsing."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on round-trip even for ``DateTime(timezone=True)``
    columns; naive values read back from the database are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    """ISO-8601 string in UTC, or None."""
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value):
    """Parse an ISO-8601 string to an aware UTC datetime.

    Returns None for empty input; raises ValueError on bad input so the
    blueprint can answer 400.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValueError("Invalid datetime format. Use ISO-8601.") from exc
