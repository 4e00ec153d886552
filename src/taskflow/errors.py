# src/taskflow/errors.py

"""
Error taxonomy shared by the engine.

Every error is recoverable by the caller. Front ends map them to
not-found / conflict / validation responses.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class TaskflowError(Exception):
    """Base class for all engine errors."""

    kind = "error"


class NotFound(TaskflowError, LookupError):
    """Unknown task, template, project or dependency edge."""

    kind = "not_found"


class InvalidArgument(TaskflowError, ValueError):
    """Self-dependency, malformed recurrence config, missing required field..."""

    kind = "invalid_argument"


class AlreadyExists(TaskflowError):
    kind = "already_exists"


class WouldCreateCycle(TaskflowError):
    kind = "would_create_cycle"

    def __init__(self, dependent_id: int, prerequisite_id: int) -> None:
        super().__init__(
            f"task {dependent_id} cannot depend on task {prerequisite_id}: "
            f"task {prerequisite_id} already depends on task {dependent_id}"
        )
        self.dependent_id = dependent_id
        self.prerequisite_id = prerequisite_id


class Blocked(TaskflowError):
    """
    Status transition rejected by the dependency gate.

    `blocked_by` holds the unresolved prerequisite tasks so callers can explain why.
    """

    kind = "blocked"

    def __init__(self, task_id: int, new_status: str, blocked_by: Sequence[Any]) -> None:
        titles = ", ".join(str(getattr(t, "title", t)) for t in blocked_by)
        super().__init__(f"Cannot move task {task_id} to {new_status}. Task is blocked by: {titles}")
        self.task_id = task_id
        self.new_status = new_status
        self.blocked_by = list(blocked_by)


class Conflict(TaskflowError):
    """Lost a compare-and-swap claim (another run already generated this cycle)."""

    kind = "conflict"
