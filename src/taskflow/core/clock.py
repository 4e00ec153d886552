# src/taskflow/core/clock.py

from __future__ import annotations

from datetime import UTC, datetime


class SystemClock:
    """Wall clock in UTC. The only place the engine reads the current time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def to_ts(dt: datetime | None) -> float | None:
    """Aware datetime -> epoch seconds (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


def from_ts(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), UTC)
