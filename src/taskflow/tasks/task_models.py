# src/taskflow/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    No linear order is enforced: any state may move to any other, except that
    entering IN_PROGRESS or DONE requires every prerequisite to be DONE.
    """

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw)
        except ValueError:
            return cls.TODO

    @property
    def requires_unblocked(self) -> bool:
        return self in (TaskStatus.IN_PROGRESS, TaskStatus.DONE)


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM


@dataclass(frozen=True, slots=True)
class Project:
    id: int
    name: str
    archived: bool
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Task:
    id: int
    title: str
    description: str | None
    project_id: int
    status: TaskStatus
    priority: TaskPriority
    created_at: datetime
    updated_at: datetime

    estimated_hours: float | None = None
    start_date: datetime | None = None
    due_date: datetime | None = None
    archived: bool = False
    parent_task_id: int | None = None

    # Recurrence
    is_recurring: bool = False
    recurring_template_id: int | None = None
    recurrence_instance_date: datetime | None = None
    needs_acknowledgment: bool = False


@dataclass(frozen=True, slots=True)
class TaskDependency:
    """Directed edge: `task_id` depends on `depends_on_task_id`."""

    task_id: int
    depends_on_task_id: int
    created_at: datetime


@dataclass(frozen=True, slots=True)
class BlockedTask:
    """A task together with the prerequisites that are not done yet."""

    task: Task
    blocked_by: list[Task] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DependencyNode:
    """One prerequisite in a dependency chain, with its own prerequisites."""

    task: Task
    depends_on: list[DependencyNode] = field(default_factory=list)
    # True when this task was already expanded elsewhere in the chain.
    repeated: bool = False


@dataclass(frozen=True, slots=True)
class DependencyChain:
    task: Task
    depends_on: list[DependencyNode]
    blocks: list[Task]
