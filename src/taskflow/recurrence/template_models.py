# src/taskflow/recurrence/template_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..tasks.task_models import Task, TaskPriority
from .rules import RecurrenceConfig, RecurrencePattern


@dataclass(frozen=True, slots=True)
class RecurringTemplate:
    id: int
    title: str
    description: str | None
    project_id: int
    priority: TaskPriority
    estimated_hours: float | None
    recurrence_pattern: RecurrencePattern
    recurrence_config: RecurrenceConfig
    active: bool
    last_generated_at: datetime | None
    next_generation_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class TemplateSummary:
    template: RecurringTemplate
    instance_count: int


@dataclass(frozen=True, slots=True)
class GenerationFailure:
    template_id: int
    kind: str
    reason: str


@dataclass(slots=True)
class GenerationReport:
    """Outcome of one generation run: instances created and per-template failures."""

    generated: list[Task] = field(default_factory=list)
    failures: list[GenerationFailure] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.generated)
