"""Instant parsing and formatting shared by the capture, query and store layers."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current instant, timezone-aware, in UTC."""
    return datetime.now(UTC)


def parse_instant(value: str | datetime) -> datetime:
    """
    Parse an ISO 8601 instant and normalise it to UTC.

    Naive values are rejected: an instant without an offset is ambiguous.

    Raises:
        ValueError: If the value is not a string/datetime or carries no offset
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00").replace("z", "+00:00"))
    else:
        raise ValueError(f"expected an ISO 8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"instant has no timezone offset: {value}")
    return parsed.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Render an instant as ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_clickhouse(value: datetime) -> str:
    """Render an instant in the ``DateTime64(3, 'UTC')`` text format."""
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
