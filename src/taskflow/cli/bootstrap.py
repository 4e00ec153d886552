# src/taskflow/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the SQLite stores, services and clock into AppState.
"""

from __future__ import annotations

import logging
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import get_settings
from ..core.clock import SystemClock
from ..core.ports import Clock
from ..core.state import AppState
from ..recurrence.recurrence_scheduler import RecurrenceScheduler
from ..recurrence.template_store import TemplateStore
from ..tasks.dependency_graph import DependencyGraphService
from ..tasks.lifecycle import TaskLifecycleCoordinator
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def resolve_timezone(name: str | None) -> tzinfo:
    """IANA zone name -> tzinfo. Unknown names fall back to UTC with a warning."""
    if not name or name.strip().upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r; falling back to UTC.", name)
        return UTC


def create_initial_state(*, settings=None, clock: Clock | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings and clock injectable makes the app easier to test and
    avoids hidden global config reads. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()
    if clock is None:
        clock = SystemClock()

    _ensure_local_dirs(settings)

    task_store = TaskStore(settings.db_path)
    template_store = TemplateStore(settings.db_path)

    graph = DependencyGraphService(task_store, clock)
    lifecycle = TaskLifecycleCoordinator(task_store, graph, clock)
    scheduler = RecurrenceScheduler(
        template_store,
        lifecycle,
        clock,
        tz=resolve_timezone(getattr(settings, "timezone", "UTC")),
        batch_limit=int(getattr(settings, "scheduler_batch_limit", 64)),
    )

    return AppState(
        settings=settings,
        clock=clock,
        task_store=task_store,
        template_store=template_store,
        graph=graph,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )
