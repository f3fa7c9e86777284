"""UTC timestamp helpers shared by the store, the queue and the engines.

All timestamps are stored as fixed-width ISO-8601 strings in UTC so that
SQLite string comparison orders them chronologically.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage (microsecond precision, UTC)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
