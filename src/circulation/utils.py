"""Time helpers shared by the circulation engine."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Serialize a datetime to the fixed-width ISO format used for storage.

    Naive datetimes are assumed to be UTC. The microsecond precision is
    always written so that lexical order of stored values equals time order.

    Args:
        value: Datetime to serialize

    Returns:
        ISO-8601 string in UTC

    Example:
        >>> to_iso(datetime(2025, 1, 1, tzinfo=timezone.utc))
        '2025-01-01T00:00:00.000000+00:00'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a stored ISO timestamp back into an aware datetime.

    Args:
        value: ISO-8601 string or None

    Returns:
        Aware datetime, or None for empty input
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
