# src/taskflow/tasks/lifecycle.py

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..core.ports import Clock, TaskRepo
from ..errors import Blocked, InvalidArgument, NotFound
from .dependency_graph import DependencyGraphService
from .task_models import Project, Task, TaskPriority, TaskStatus

if TYPE_CHECKING:
    from ..recurrence.template_models import RecurringTemplate

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 8

_MUTABLE_FIELDS = {
    "title",
    "description",
    "project_id",
    "priority",
    "estimated_hours",
    "start_date",
    "due_date",
    "archived",
    "parent_task_id",
}


def derive_start_date(due_date: datetime, estimated_hours: float) -> datetime:
    """Work back from the due date: one day per 8 estimated hours, at least one day."""
    days_needed = max(1, math.ceil(float(estimated_hours) / HOURS_PER_DAY))
    return due_date - timedelta(days=days_needed)


def parse_status(raw: str | TaskStatus) -> TaskStatus:
    try:
        return TaskStatus(str(raw).strip().lower())
    except ValueError as e:
        allowed = ", ".join(s.value for s in TaskStatus)
        raise InvalidArgument(f"unknown status {raw!r} (expected one of: {allowed})") from e


def parse_priority(raw: str | TaskPriority) -> TaskPriority:
    try:
        return TaskPriority(str(raw).strip().lower())
    except ValueError as e:
        allowed = ", ".join(p.value for p in TaskPriority)
        raise InvalidArgument(f"unknown priority {raw!r} (expected one of: {allowed})") from e


class TaskLifecycleCoordinator:
    """
    Thin orchestration over the task store.

    - status transitions go through request_status_change() (the only gate)
    - every other field is freely mutable via update_task()
    - instances produced by the recurrence scheduler are persisted here and
      flagged for acknowledgment
    """

    def __init__(self, task_store: TaskRepo, graph: DependencyGraphService, clock: Clock) -> None:
        self._store = task_store
        self._graph = graph
        self._clock = clock

    # ---- projects (collaborator, minimal) ----

    def add_project(self, name: str) -> Project:
        project_id = self._store.add_project(name, now=self._clock.now())
        project = self._store.get_project(project_id)
        if project is None:
            raise NotFound(f"Project not found after insert: {project_id}")
        logger.info("Project created id=%s name=%s", project_id, project.name)
        return project

    def require_project(self, project_id: int) -> None:
        if not self._store.project_exists(int(project_id)):
            raise NotFound(f"Project not found: {project_id}")

    # ---- tasks ----

    def get_task(self, task_id: int) -> Task:
        task = self._store.get_task(int(task_id))
        if task is None:
            raise NotFound(f"Task not found: {task_id}")
        return task

    def create_task(
            self,
            *,
            title: str,
            project_id: int,
            description: str | None = None,
            status: TaskStatus | str = TaskStatus.TODO,
            priority: TaskPriority | str = TaskPriority.MEDIUM,
            estimated_hours: float | None = None,
            start_date: datetime | None = None,
            due_date: datetime | None = None,
            parent_task_id: int | None = None,
    ) -> Task:
        if not title or not title.strip():
            raise InvalidArgument("title is required")
        self.require_project(project_id)
        if parent_task_id is not None:
            self.get_task(parent_task_id)
        if estimated_hours is not None and estimated_hours < 0:
            raise InvalidArgument("estimated_hours cannot be negative")

        if start_date is None and due_date is not None and estimated_hours:
            start_date = derive_start_date(due_date, estimated_hours)

        # A brand-new task has no prerequisites yet, so any initial status is allowed.
        task_id = self._store.add_task(
            title=title,
            project_id=int(project_id),
            description=description,
            status=parse_status(status),
            priority=parse_priority(priority),
            estimated_hours=estimated_hours,
            start_date=start_date,
            due_date=due_date,
            parent_task_id=parent_task_id,
            now=self._clock.now(),
        )
        logger.info("Task created id=%s project=%s", task_id, project_id)
        return self.get_task(task_id)

    def update_task(self, task_id: int, **changes: Any) -> Task:
        """
        Apply free-form field changes (everything except status).

        Passing None for description/estimated_hours/start_date/due_date/parent_task_id clears it.
        """
        if "status" in changes:
            raise InvalidArgument("status changes go through request_status_change()")
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise InvalidArgument(f"unknown task fields: {', '.join(sorted(unknown))}")

        current = self.get_task(task_id)

        if "priority" in changes and changes["priority"] is not None:
            changes["priority"] = parse_priority(changes["priority"])
        if changes.get("project_id") is not None:
            self.require_project(changes["project_id"])

        parent = changes.get("parent_task_id")
        if parent is not None:
            if int(parent) == current.id:
                raise InvalidArgument("A task cannot be its own parent")
            self.get_task(parent)

        if changes.get("due_date") is not None and "start_date" not in changes:
            hours = changes.get("estimated_hours", current.estimated_hours)
            if hours:
                changes["start_date"] = derive_start_date(changes["due_date"], hours)

        self._store.update_task_fields(current.id, now=self._clock.now(), **changes)
        logger.debug("Task %s updated fields=%s", current.id, sorted(changes))
        return self.get_task(current.id)

    def request_status_change(self, task_id: int, new_status: TaskStatus | str) -> Task:
        """
        Move a task to new_status.

        Entering in-progress or done requires every direct prerequisite to be done;
        otherwise Blocked is raised with the unresolved prerequisites attached.
        Any other transition (including reopening a done task) is always applied.
        """
        status = parse_status(new_status)
        task = self.get_task(task_id)

        if status.requires_unblocked:
            blockers = self._graph.unresolved_prerequisites(task.id)
            if blockers:
                logger.info(
                    "Status change %s -> %s rejected; blocked by %s",
                    task.id,
                    status.value,
                    [b.id for b in blockers],
                )
                raise Blocked(task.id, status.value, blockers)

        if task.status != status:
            self._store.update_task_status(task.id, status, now=self._clock.now())
            logger.info("Task %s: %s -> %s", task.id, task.status.value, status.value)
        return self.get_task(task.id)

    # ---- recurrence instances ----

    def persist_generated_instance(self, template: RecurringTemplate, now: datetime) -> Task:
        """Stamp a task out of a template and flag it for acknowledgment."""
        self.require_project(template.project_id)
        task_id = self._store.add_task(
            title=template.title,
            project_id=template.project_id,
            description=template.description,
            status=TaskStatus.TODO,
            priority=template.priority,
            estimated_hours=template.estimated_hours,
            is_recurring=True,
            recurring_template_id=template.id,
            recurrence_instance_date=now,
            needs_acknowledgment=True,
            now=now,
        )
        return self.get_task(task_id)

    def acknowledge(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        if task.needs_acknowledgment:
            self._store.update_task_fields(task.id, needs_acknowledgment=False, now=self._clock.now())
            logger.info("Acknowledged task %s (%s)", task.id, task.title)
        return self.get_task(task.id)

    def list_pending_acknowledgments(self) -> list[Task]:
        return self._store.list_pending_acknowledgments()

    def template_instance_count(self, template_id: int) -> int:
        return self._store.count_template_instances(template_id)

    def detach_template_instances(self, template_id: int) -> int:
        return self._store.clear_template_reference(template_id)

    # ---- housekeeping ----

    def archive_completed(self, *, older_than_days: int = 7) -> int:
        """Soft-delete done tasks that have not changed for older_than_days."""
        if older_than_days < 0:
            raise InvalidArgument("older_than_days cannot be negative")
        now = self._clock.now()
        count = self._store.archive_done_before(now - timedelta(days=older_than_days), now=now)
        logger.info("Archived %d task(s) completed %d+ days ago", count, older_than_days)
        return count
