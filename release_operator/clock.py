"""Time source used by the rollout time gate."""

from datetime import datetime, timedelta, timezone
from typing import Optional


class SystemClock:
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock:
    """Manually driven clock for tests and dry runs"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2020, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta):
        self._now = self._now + delta

    def set(self, when: datetime):
        self._now = when


def format_timestamp(when: datetime) -> str:
    """Format as RFC3339 in UTC, second precision"""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp; raises ValueError on bad input"""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp {value!r} has no timezone")
    return parsed
