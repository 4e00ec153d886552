# src/taskflow/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..recurrence.recurrence_scheduler import RecurrenceScheduler
from ..recurrence.template_store import TemplateStore
from ..tasks.dependency_graph import DependencyGraphService
from ..tasks.lifecycle import TaskLifecycleCoordinator
from ..tasks.task_store import TaskStore
from .ports import Clock


@dataclass
class AppState:
    # Settings object (config.Settings or a test stand-in).
    settings: Any

    clock: Clock
    task_store: TaskStore
    template_store: TemplateStore

    graph: DependencyGraphService
    lifecycle: TaskLifecycleCoordinator
    scheduler: RecurrenceScheduler
