# src/taskflow/recurrence/rules.py

from __future__ import annotations

"""
Recurrence rules: the single place that decides when a template runs next.

compute_next_generation() is pure. It never reads the clock and works in
whatever time zone the `start` instant carries, so "09:00" means 09:00 in that
zone. The scheduler converts stored UTC instants to the configured local zone
before calling it.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from ..errors import InvalidArgument

DEFAULT_TIME = (9, 0)
DEFAULT_DAY_OF_WEEK = 1  # Monday (0=Sunday..6=Saturday)
DEFAULT_DAY_OF_MONTH = 1

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


class RecurrencePattern(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, raw: str | RecurrencePattern) -> RecurrencePattern:
        """Strict parse for user input."""
        try:
            return cls(str(raw).strip().lower())
        except ValueError as e:
            allowed = ", ".join(p.value for p in cls)
            raise InvalidArgument(f"unknown recurrence pattern {raw!r} (expected one of: {allowed})") from e

    @classmethod
    def from_db(cls, raw: str | None) -> RecurrencePattern:
        if not raw:
            return cls.CUSTOM
        try:
            return cls(raw)
        except ValueError:
            return cls.CUSTOM


def _as_int(name: str, value: Any, lo: int, hi: int) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be an integer, got {value!r}")
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"{name} must be an integer, got {value!r}") from e
    if isinstance(value, float) and value != n:
        raise InvalidArgument(f"{name} must be an integer, got {value!r}")
    if not lo <= n <= hi:
        raise InvalidArgument(f"{name} must be between {lo} and {hi}, got {n}")
    return n


def parse_time_of_day(raw: str) -> tuple[int, int]:
    m = _TIME_RE.match(str(raw))
    if not m:
        raise InvalidArgument(f"time must look like HH:MM, got {raw!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise InvalidArgument(f"time out of range: {raw!r}")
    return hour, minute


@dataclass(frozen=True, slots=True)
class RecurrenceConfig:
    """
    day_of_week:  0=Sunday..6=Saturday (weekly; default Monday)
    day_of_month: 1..31 (monthly; default 1)
    time:         "HH:MM" (all patterns; default 09:00)
    """

    day_of_week: int | None = None
    day_of_month: int | None = None
    time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RecurrenceConfig:
        """Validating constructor. Raises InvalidArgument on malformed input."""
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidArgument("recurrence config must be an object")

        unknown = set(raw) - {"day_of_week", "day_of_month", "time"}
        if unknown:
            raise InvalidArgument(f"unknown recurrence config keys: {', '.join(sorted(unknown))}")

        dow = raw.get("day_of_week")
        dom = raw.get("day_of_month")
        time_raw = raw.get("time")

        time_str: str | None = None
        if time_raw is not None and str(time_raw).strip() != "":
            hour, minute = parse_time_of_day(str(time_raw))
            time_str = f"{hour:02d}:{minute:02d}"

        return cls(
            day_of_week=_as_int("day_of_week", dow, 0, 6) if dow is not None else None,
            day_of_month=_as_int("day_of_month", dom, 1, 31) if dom is not None else None,
            time=time_str,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.day_of_week is not None:
            out["day_of_week"] = self.day_of_week
        if self.day_of_month is not None:
            out["day_of_month"] = self.day_of_month
        if self.time is not None:
            out["time"] = self.time
        return out

    @property
    def time_of_day(self) -> tuple[int, int]:
        if not self.time:
            return DEFAULT_TIME
        return parse_time_of_day(self.time)


def _add_one_month(start: datetime, day_of_month: int) -> datetime:
    year = start.year + start.month // 12
    month = start.month % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return start.replace(year=year, month=month, day=min(day_of_month, last_day))


def compute_next_generation(
        start: datetime,
        pattern: RecurrencePattern | str,
        config: RecurrenceConfig | None = None,
) -> datetime:
    """
    Next generation instant strictly after `start`'s date.

    - daily:   start + 1 day
    - weekly:  next config.day_of_week after start's date; same weekday -> +7 days, never 0
    - monthly: config.day_of_month (default 1) in the following month, clamped to that month's last day
    - other:   start + 1 day

    Then the time of day is set to config.time (default 09:00), seconds zeroed.
    """
    config = config or RecurrenceConfig()
    kind = str(pattern).strip().lower()

    if kind == RecurrencePattern.WEEKLY:
        target = DEFAULT_DAY_OF_WEEK if config.day_of_week is None else config.day_of_week
        # datetime.weekday() is Monday=0; shift to the Sunday=0 scheme.
        current = (start.weekday() + 1) % 7
        days_ahead = (target - current) % 7 or 7
        nxt = start + timedelta(days=days_ahead)
    elif kind == RecurrencePattern.MONTHLY:
        day = DEFAULT_DAY_OF_MONTH if config.day_of_month is None else config.day_of_month
        nxt = _add_one_month(start, day)
    else:
        nxt = start + timedelta(days=1)

    hour, minute = config.time_of_day
    return nxt.replace(hour=hour, minute=minute, second=0, microsecond=0)
