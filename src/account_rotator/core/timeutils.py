"""Millisecond timestamp helpers."""

from datetime import UTC, datetime


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def ms_to_iso(timestamp_ms: int | None) -> str | None:
    """Render a millisecond timestamp as ISO8601, passing None through."""
    if timestamp_ms is None:
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat()
