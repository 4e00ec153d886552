# tests/fakes.py

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any


class FakeClock:
    """
    Controllable Clock for unit tests.

    - now() returns a fixed aware UTC instant
    - set()/advance() move it explicitly
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 3, 1, 8, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when if when.tzinfo is not None else when.replace(tzinfo=UTC)

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


class StaleTemplateRepo:
    """
    TemplateRepo wrapper whose due query replays a snapshot taken earlier.

    Simulates a second generation run that read the due list before a first
    run claimed the same templates.
    """

    def __init__(self, inner: Any, snapshot: list[Any]) -> None:
        self._inner = inner
        self._snapshot = list(snapshot)

    def list_due_templates(
        self, *, now: datetime, limit: int = 64, exclude_ids: Iterable[int] = ()
    ) -> list[Any]:
        skip = set(exclude_ids)
        return [t for t in self._snapshot if t.id not in skip][:limit]

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


class ExplodingTaskRepo:
    """TaskRepo wrapper whose add_task fails, to exercise claim release."""

    def __init__(self, inner: Any, exc: Exception | None = None) -> None:
        self._inner = inner
        self._exc = exc or RuntimeError("disk full")
        self.calls = 0

    def add_task(self, **fields: Any) -> int:
        self.calls += 1
        raise self._exc

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)
