# src/taskflow/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the engine.

Services depend on Protocols instead of concrete stores. The SQLite stores in
tasks/ and recurrence/ implement them; tests may swap in in-memory fakes.
"""

from datetime import datetime
from typing import Any, Callable, Iterable, Protocol


class Clock(Protocol):
    """Single source of "now" so tests can control time."""

    def now(self) -> datetime: ...


class ProjectRepo(Protocol):
    def add_project(self, name: str, *, now: datetime | None = None) -> int: ...
    def get_project(self, project_id: int) -> Any | None: ...
    def project_exists(self, project_id: int) -> bool: ...


class TaskRepo(ProjectRepo, Protocol):
    # Task CRUD
    def add_task(
            self,
            *,
            title: str,
            project_id: int,
            description: str | None = None,
            status: Any = None,  # TaskStatus
            priority: Any = None,  # TaskPriority
            estimated_hours: float | None = None,
            start_date: datetime | None = None,
            due_date: datetime | None = None,
            parent_task_id: int | None = None,
            is_recurring: bool = False,
            recurring_template_id: int | None = None,
            recurrence_instance_date: datetime | None = None,
            needs_acknowledgment: bool = False,
            now: datetime | None = None,
    ) -> int: ...

    def get_task(self, task_id: int) -> Any | None: ...
    def get_tasks(self, task_ids: Iterable[int]) -> dict[int, Any]: ...
    def update_task_status(self, task_id: int, new_status: Any, *, now: datetime | None = None) -> bool: ...
    def update_task_fields(self, task_id: int, **fields: Any) -> bool: ...
    def list_pending_acknowledgments(self) -> list[Any]: ...
    def archive_done_before(self, cutoff: datetime, *, now: datetime | None = None) -> int: ...
    def clear_template_reference(self, template_id: int) -> int: ...
    def count_template_instances(self, template_id: int) -> int: ...

    # Dependency edges (UNIQUE on the ordered pair is part of the contract)
    def prerequisite_ids(self, task_id: int) -> list[int]: ...
    def dependent_ids(self, task_id: int) -> list[int]: ...
    def has_dependency(self, task_id: int, depends_on_task_id: int) -> bool: ...
    def add_dependency(
            self,
            task_id: int,
            depends_on_task_id: int,
            *,
            validate: Callable[[Callable[[int], list[int]]], None] | None = None,
            now: datetime | None = None,
    ) -> Any: ...
    def remove_dependency(self, task_id: int, depends_on_task_id: int) -> bool: ...
    def list_unresolved_edges(
            self, *, task_id: int | None = None, include_archived: bool = False
    ) -> list[tuple[int, int]]: ...


class TemplateRepo(Protocol):
    def add_template(self, **fields: Any) -> int: ...
    def get_template(self, template_id: int) -> Any | None: ...
    def list_templates(self, *, active_only: bool = False) -> list[Any]: ...
    def update_template(self, template_id: int, **fields: Any) -> bool: ...
    def delete_template(self, template_id: int) -> bool: ...

    # Scheduler API
    def list_due_templates(
            self, *, now: datetime, limit: int = 64, exclude_ids: Iterable[int] = ()
    ) -> list[Any]: ...
    def try_claim_generation(
            self,
            template_id: int,
            *,
            expected_next: datetime,
            new_next: datetime,
            generated_at: datetime,
    ) -> bool: ...
    def release_generation(
            self,
            template_id: int,
            *,
            claimed_next: datetime,
            previous_next: datetime,
            previous_last: datetime | None,
    ) -> bool: ...
