# tests/test_recurrence_scheduler.py

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone

import pytest

from taskflow.errors import InvalidArgument, NotFound
from taskflow.recurrence.recurrence_scheduler import RecurrenceScheduler, run_recurrence_scheduler
from taskflow.recurrence.rules import RecurrenceConfig, RecurrencePattern
from taskflow.recurrence.template_models import GenerationReport
from taskflow.tasks.lifecycle import TaskLifecycleCoordinator
from taskflow.tasks.task_models import TaskStatus

from .fakes import ExplodingTaskRepo, StaleTemplateRepo


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture()
def daily(state, project):
    # Clock starts at 2024-03-01 08:00 UTC, so the first run is 2024-03-02 09:00.
    return state.scheduler.create_template(
        title="Stand-up notes",
        project_id=project.id,
        recurrence_pattern="daily",
        priority="high",
        estimated_hours=0.5,
    )


def test_create_template_schedules_first_run(daily) -> None:
    assert daily.active is True
    assert daily.recurrence_pattern == RecurrencePattern.DAILY
    assert daily.next_generation_at == _utc(2024, 3, 2, 9, 0)
    assert daily.last_generated_at is None


def test_create_template_validation(state, project) -> None:
    with pytest.raises(NotFound):
        state.scheduler.create_template(title="x", project_id=999, recurrence_pattern="daily")
    with pytest.raises(InvalidArgument):
        state.scheduler.create_template(title="x", project_id=project.id, recurrence_pattern="hourly")
    with pytest.raises(InvalidArgument):
        state.scheduler.create_template(
            title="x",
            project_id=project.id,
            recurrence_pattern="weekly",
            recurrence_config={"day_of_week": 9},
        )
    with pytest.raises(InvalidArgument):
        state.scheduler.create_template(title="", project_id=project.id, recurrence_pattern="daily")


def test_nothing_generated_before_due(state, daily) -> None:
    report = state.scheduler.generate_due_templates()
    assert report.count == 0
    assert report.failures == []


def test_generate_twice_creates_exactly_one_instance(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 2, 9, 0))

    first = state.scheduler.generate_due_templates()
    second = state.scheduler.generate_due_templates()

    assert first.count == 1
    assert second.count == 0
    assert state.task_store.count_template_instances(daily.id) == 1

    task = first.generated[0]
    assert task.title == "Stand-up notes"
    assert task.status == TaskStatus.TODO
    assert task.is_recurring is True
    assert task.recurring_template_id == daily.id
    assert task.needs_acknowledgment is True
    assert task.recurrence_instance_date == _utc(2024, 3, 2, 9, 0)
    assert task.estimated_hours == 0.5

    template = state.scheduler.get_template(daily.id)
    assert template.next_generation_at == _utc(2024, 3, 3, 9, 0)
    assert template.last_generated_at == _utc(2024, 3, 2, 9, 0)


def test_late_driver_catches_up_one_cycle_per_run(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 4, 12, 0))

    counts = [state.scheduler.generate_due_templates().count for _ in range(4)]

    # Due cycles: 03-02, 03-03, 03-04 09:00. The fourth run finds 03-05 not yet due.
    assert counts == [1, 1, 1, 0]
    assert state.scheduler.get_template(daily.id).next_generation_at == _utc(2024, 3, 5, 9, 0)


def test_inactive_templates_are_never_selected(state, daily, clock) -> None:
    state.scheduler.set_active(daily.id, False)
    clock.set(_utc(2025, 1, 1, 0, 0))

    assert state.scheduler.generate_due_templates().count == 0
    assert state.task_store.count_template_instances(daily.id) == 0

    state.scheduler.set_active(daily.id, True)
    assert state.scheduler.generate_due_templates().count == 1


def test_failed_template_is_isolated(state, daily, clock) -> None:
    doomed_project = state.lifecycle.add_project("Temporary")
    doomed = state.scheduler.create_template(
        title="Orphan", project_id=doomed_project.id, recurrence_pattern="daily"
    )
    assert state.task_store.delete_project(doomed_project.id) is True

    clock.set(_utc(2024, 3, 2, 9, 30))
    report = state.scheduler.generate_due_templates()

    assert [t.recurring_template_id for t in report.generated] == [daily.id]
    assert len(report.failures) == 1
    assert report.failures[0].template_id == doomed.id
    assert report.failures[0].kind == "not_found"

    # The claim was released, so the template stays due for a later retry.
    after = state.scheduler.get_template(doomed.id)
    assert after.next_generation_at == doomed.next_generation_at
    assert after.last_generated_at is None


def test_storage_failure_releases_claim(state, daily, clock) -> None:
    broken_store = ExplodingTaskRepo(state.task_store)
    coordinator = TaskLifecycleCoordinator(broken_store, state.graph, clock)
    scheduler = RecurrenceScheduler(state.template_store, coordinator, clock)
    clock.set(_utc(2024, 3, 2, 9, 0))

    report = scheduler.generate_due_templates()

    assert report.count == 0
    assert [f.kind for f in report.failures] == ["error"]
    assert broken_store.calls == 1
    assert state.scheduler.get_template(daily.id).next_generation_at == _utc(2024, 3, 2, 9, 0)

    # The real scheduler can still generate that cycle.
    assert state.scheduler.generate_due_templates().count == 1


def test_overlapping_runs_lose_the_claim(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 2, 9, 0))
    snapshot = state.template_store.list_due_templates(now=clock.now())
    assert [t.id for t in snapshot] == [daily.id]

    winner = state.scheduler.generate_due_templates()
    stale = RecurrenceScheduler(StaleTemplateRepo(state.template_store, snapshot), state.lifecycle, clock)
    loser = stale.generate_due_templates()

    assert winner.count == 1
    assert loser.count == 0
    assert [f.kind for f in loser.failures] == ["conflict"]
    assert state.task_store.count_template_instances(daily.id) == 1


def test_manual_trigger_ignores_due_time_and_active_flag(state, daily) -> None:
    state.scheduler.set_active(daily.id, False)

    report = state.scheduler.generate_template(daily.id)

    assert report.count == 1
    assert report.generated[0].recurrence_instance_date == _utc(2024, 3, 1, 8, 0)
    template = state.scheduler.get_template(daily.id)
    assert template.next_generation_at == _utc(2024, 3, 3, 9, 0)
    assert template.active is False

    with pytest.raises(NotFound):
        state.scheduler.generate_template(999)


def test_update_template_recomputes_next_on_rule_change(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 1, 12, 0))  # Friday

    same_rule = state.scheduler.update_template(daily.id, title="Notes")
    assert same_rule.title == "Notes"
    assert same_rule.next_generation_at == daily.next_generation_at

    weekly = state.scheduler.update_template(
        daily.id,
        recurrence_pattern="weekly",
        recurrence_config={"day_of_week": 1, "time": "10:15"},
    )
    assert weekly.recurrence_pattern == RecurrencePattern.WEEKLY
    assert weekly.recurrence_config == RecurrenceConfig(day_of_week=1, time="10:15")
    assert weekly.next_generation_at == _utc(2024, 3, 4, 10, 15)

    with pytest.raises(InvalidArgument):
        state.scheduler.update_template(daily.id, next_generation_at=clock.now())


def test_delete_template_detaches_instances(state, daily) -> None:
    task = state.scheduler.generate_template(daily.id).generated[0]

    state.scheduler.delete_template(daily.id)

    with pytest.raises(NotFound):
        state.scheduler.get_template(daily.id)
    kept = state.lifecycle.get_task(task.id)
    assert kept.recurring_template_id is None
    assert kept.is_recurring is True

    with pytest.raises(NotFound):
        state.scheduler.delete_template(daily.id)


def test_list_templates_with_instance_counts(state, daily, project) -> None:
    paused = state.scheduler.create_template(
        title="Monthly review",
        project_id=project.id,
        recurrence_pattern="monthly",
        recurrence_config={"day_of_month": 31},
        active=False,
    )
    state.scheduler.generate_template(daily.id)
    state.scheduler.generate_template(daily.id)

    summaries = {s.template.id: s.instance_count for s in state.scheduler.list_templates()}
    assert summaries == {daily.id: 2, paused.id: 0}

    active = state.scheduler.list_templates(active_only=True)
    assert [s.template.id for s in active] == [daily.id]


def test_local_timezone_drives_time_of_day(state, project, clock) -> None:
    eastern = timezone(timedelta(hours=-5))
    scheduler = RecurrenceScheduler(state.template_store, state.lifecycle, clock, tz=eastern)

    template = scheduler.create_template(title="Local", project_id=project.id, recurrence_pattern="daily")

    # 08:00 UTC is 03:00 local; the next local 09:00 after that date is 2024-03-02 09:00 -05:00.
    assert template.next_generation_at == _utc(2024, 3, 2, 14, 0)


class _FlakyScheduler:
    def __init__(self) -> None:
        self.calls = 0

    def generate_due_templates(self) -> GenerationReport:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database is locked")
        return GenerationReport()


@pytest.mark.asyncio
async def test_polling_loop_generates_and_stops(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 2, 9, 0))
    stop = asyncio.Event()

    runner = asyncio.create_task(
        run_recurrence_scheduler(state.scheduler, interval_seconds=0.01, stop_event=stop)
    )
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, timeout=1.0)

    assert state.task_store.count_template_instances(daily.id) == 1


@pytest.mark.asyncio
async def test_polling_loop_survives_failed_tick() -> None:
    flaky = _FlakyScheduler()

    runner = asyncio.create_task(run_recurrence_scheduler(flaky, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert flaky.calls >= 2


def test_failing_templates_do_not_starve_later_ones(state, project, clock) -> None:
    scheduler = RecurrenceScheduler(state.template_store, state.lifecycle, clock, batch_limit=2)
    gone = state.lifecycle.add_project("Gone")
    broken = [
        scheduler.create_template(title=f"Broken {i}", project_id=gone.id, recurrence_pattern="daily")
        for i in range(3)
    ]
    healthy = scheduler.create_template(title="Healthy", project_id=project.id, recurrence_pattern="daily")
    state.task_store.delete_project(gone.id)
    clock.set(_utc(2024, 3, 2, 9, 0))

    counts = [scheduler.generate_due_templates().count for _ in range(3)]

    # The healthy template sits behind three failing ones with a page size of 2.
    assert counts == [1, 0, 0]
    assert state.task_store.count_template_instances(healthy.id) == 1

    report = scheduler.generate_due_templates()
    assert sorted(f.template_id for f in report.failures) == sorted(t.id for t in broken)


def test_monthly_template_without_day_keeps_creation_day(state, project, clock) -> None:
    clock.set(_utc(2024, 1, 31, 12, 0))
    template = state.scheduler.create_template(
        title="Invoices", project_id=project.id, recurrence_pattern="monthly"
    )

    assert template.recurrence_config.day_of_month == 31
    assert template.next_generation_at == _utc(2024, 2, 29, 9, 0)

    seen = []
    for _ in range(3):
        clock.set(state.scheduler.get_template(template.id).next_generation_at)
        assert state.scheduler.generate_due_templates().count == 1
        seen.append(state.scheduler.get_template(template.id).next_generation_at)

    assert seen == [_utc(2024, 3, 31, 9, 0), _utc(2024, 4, 30, 9, 0), _utc(2024, 5, 31, 9, 0)]


def test_switching_to_monthly_pins_the_current_day(state, daily, clock) -> None:
    clock.set(_utc(2024, 3, 30, 12, 0))

    updated = state.scheduler.update_template(daily.id, recurrence_pattern="monthly")

    assert updated.recurrence_config.day_of_month == 30
    assert updated.next_generation_at == _utc(2024, 4, 30, 9, 0)


class _StubbornTemplateRepo:
    """Template store whose claim release always loses the race."""

    def __init__(self, inner) -> None:
        self._inner = inner

    def release_generation(self, template_id: int, **kwargs) -> bool:
        return False

    def __getattr__(self, name: str):
        return getattr(self._inner, name)


def test_lost_release_is_logged(state, daily, clock, caplog: pytest.LogCaptureFixture) -> None:
    coordinator = TaskLifecycleCoordinator(ExplodingTaskRepo(state.task_store), state.graph, clock)
    scheduler = RecurrenceScheduler(_StubbornTemplateRepo(state.template_store), coordinator, clock)
    clock.set(_utc(2024, 3, 2, 9, 0))

    with caplog.at_level("WARNING", logger="taskflow.recurrence.recurrence_scheduler"):
        report = scheduler.generate_due_templates()

    assert [f.kind for f in report.failures] == ["error"]
    assert any(
        r.levelname == "WARNING" and "was not released" in r.getMessage() for r in caplog.records
    )
