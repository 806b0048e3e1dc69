"""UTC timestamp helpers (stdlib-only)."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
