"""Small shared helpers."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(timestamp: int | float) -> datetime:
    """Convert a unix timestamp (seconds) to naive UTC."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)
