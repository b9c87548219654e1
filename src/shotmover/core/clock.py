"""Time helpers.

Instants travel as ISO-8601 strings with millisecond precision and a
trailing "Z" (e.g., "2025-01-01T00:00:00.000Z").
"""

from __future__ import annotations

import time
from datetime import UTC, datetime


class Clock:
    """Source of the current time; tests substitute a fake."""

    def now(self) -> datetime:
        """Current instant (timezone aware, UTC)."""
        return datetime.now(UTC)

    def monotonic(self) -> float:
        """Monotonic seconds for measuring intervals."""
        return time.monotonic()


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 instant.
    """
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_instant(value: datetime) -> str:
    """Format an instant as "YYYY-MM-DDTHH:MM:SS.mmmZ"."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
