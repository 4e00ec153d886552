# tests/test_lifecycle.py

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from taskflow.errors import Blocked, InvalidArgument, NotFound
from taskflow.tasks.lifecycle import derive_start_date
from taskflow.tasks.task_models import TaskPriority, TaskStatus


def test_create_task_defaults(state, project) -> None:
    task = state.lifecycle.create_task(title="Buy milk", project_id=project.id)

    assert task.status == TaskStatus.TODO
    assert task.priority == TaskPriority.MEDIUM
    assert task.archived is False
    assert task.needs_acknowledgment is False
    assert task.created_at == state.clock.now()


def test_create_task_validation(state, project) -> None:
    with pytest.raises(InvalidArgument):
        state.lifecycle.create_task(title="   ", project_id=project.id)
    with pytest.raises(NotFound):
        state.lifecycle.create_task(title="x", project_id=999)
    with pytest.raises(NotFound):
        state.lifecycle.create_task(title="x", project_id=project.id, parent_task_id=999)
    with pytest.raises(InvalidArgument):
        state.lifecycle.create_task(title="x", project_id=project.id, priority="urgent")


def test_status_change_blocked_then_allowed(state, make_task) -> None:
    report = make_task("Write report")
    data = make_task("Collect data")
    state.graph.add_dependency(report.id, data.id)

    with pytest.raises(Blocked) as exc:
        state.lifecycle.request_status_change(report.id, TaskStatus.DONE)

    assert [t.id for t in exc.value.blocked_by] == [data.id]
    assert "Collect data" in str(exc.value)
    assert state.lifecycle.get_task(report.id).status == TaskStatus.TODO

    with pytest.raises(Blocked):
        state.lifecycle.request_status_change(report.id, "in-progress")

    state.lifecycle.request_status_change(data.id, TaskStatus.DONE)
    done = state.lifecycle.request_status_change(report.id, TaskStatus.DONE)

    assert done.status == TaskStatus.DONE


def test_non_gated_statuses_always_allowed(state, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    state.graph.add_dependency(a.id, b.id)

    for status in ("backlog", "review", "todo"):
        assert state.lifecycle.request_status_change(a.id, status).status == TaskStatus(status)


def test_reopening_done_task_is_allowed(state, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    state.lifecycle.request_status_change(b.id, "done")
    state.graph.add_dependency(a.id, b.id)
    state.lifecycle.request_status_change(a.id, "done")

    # Reopening the prerequisite does not touch the dependent.
    state.lifecycle.request_status_change(b.id, "todo")

    assert state.lifecycle.get_task(a.id).status == TaskStatus.DONE
    assert state.graph.is_blocked(a.id) is True


def test_unknown_status_rejected(state, make_task) -> None:
    a = make_task("A")
    with pytest.raises(InvalidArgument):
        state.lifecycle.request_status_change(a.id, "finished")


def test_update_task_rejects_status_and_unknown_fields(state, make_task) -> None:
    a = make_task("A")
    with pytest.raises(InvalidArgument):
        state.lifecycle.update_task(a.id, status="done")
    with pytest.raises(InvalidArgument):
        state.lifecycle.update_task(a.id, colour="red")
    with pytest.raises(InvalidArgument):
        state.lifecycle.update_task(a.id, parent_task_id=a.id)


def test_update_task_fields(state, make_task, clock) -> None:
    a = make_task("A", description="first")
    clock.advance(minutes=5)

    updated = state.lifecycle.update_task(a.id, title="A2", priority="high", description=None)

    assert updated.title == "A2"
    assert updated.priority == TaskPriority.HIGH
    assert updated.description is None
    assert updated.updated_at == clock.now()
    assert updated.created_at == a.created_at


def test_start_date_derived_from_due_and_estimate(state, make_task) -> None:
    due = datetime(2024, 3, 10, 17, 0, tzinfo=UTC)

    task = make_task("Big job", due_date=due, estimated_hours=20)

    assert task.start_date == datetime(2024, 3, 7, 17, 0, tzinfo=UTC)
    assert derive_start_date(due, 0.5) == datetime(2024, 3, 9, 17, 0, tzinfo=UTC)

    explicit = make_task("Given start", due_date=due, estimated_hours=20, start_date=due)
    assert explicit.start_date == due

    moved = state.lifecycle.update_task(task.id, due_date=datetime(2024, 4, 1, 17, 0, tzinfo=UTC))
    assert moved.start_date == datetime(2024, 3, 29, 17, 0, tzinfo=UTC)


def test_subtasks(state, make_task) -> None:
    parent = make_task("Parent")
    child = make_task("Child", parent_task_id=parent.id)

    assert child.parent_task_id == parent.id
    assert [t.id for t in state.task_store.list_subtasks(parent.id)] == [child.id]


def test_acknowledge_and_pending_order(state, project, clock) -> None:
    template = state.scheduler.create_template(
        title="Water plants", project_id=project.id, recurrence_pattern="daily"
    )
    first = state.scheduler.generate_template(template.id).generated[0]
    clock.advance(hours=1)
    second = state.scheduler.generate_template(template.id).generated[0]

    pending = state.lifecycle.list_pending_acknowledgments()
    assert [t.id for t in pending] == [first.id, second.id]

    acked = state.lifecycle.acknowledge(first.id)
    assert acked.needs_acknowledgment is False
    assert [t.id for t in state.lifecycle.list_pending_acknowledgments()] == [second.id]

    # Acknowledging twice is a no-op.
    assert state.lifecycle.acknowledge(first.id).needs_acknowledgment is False

    with pytest.raises(NotFound):
        state.lifecycle.acknowledge(999)


def test_archive_completed(state, make_task, clock) -> None:
    old = make_task("Old")
    fresh = make_task("Fresh")
    open_task = make_task("Open")
    state.lifecycle.request_status_change(old.id, "done")

    clock.advance(days=6)
    state.lifecycle.request_status_change(fresh.id, "done")
    clock.advance(days=2)

    assert state.lifecycle.archive_completed(older_than_days=7) == 1

    assert state.lifecycle.get_task(old.id).archived is True
    assert state.lifecycle.get_task(fresh.id).archived is False
    assert state.lifecycle.get_task(open_task.id).archived is False
    assert [t.id for t in state.task_store.list_tasks()] == [fresh.id, open_task.id]

    with pytest.raises(InvalidArgument):
        state.lifecycle.archive_completed(older_than_days=-1)


def test_pending_acknowledgments_are_not_truncated(state, project) -> None:
    for i in range(520):
        state.task_store.add_task(
            title=f"Generated {i}",
            project_id=project.id,
            is_recurring=True,
            needs_acknowledgment=True,
            now=state.clock.now(),
        )

    pending = state.lifecycle.list_pending_acknowledgments()

    assert len(pending) == 520
    assert [t.title for t in pending[-2:]] == ["Generated 518", "Generated 519"]
