# src/taskflow/recurrence/recurrence_scheduler.py

from __future__ import annotations

"""
Recurrence scheduler.

Owns recurring templates and turns due templates into task instances:
- selects active templates whose next_generation_at <= now,
- claims each one (compare-and-swap on next_generation_at),
- asks the lifecycle coordinator to persist the instance,
- releases the claim if the instance could not be created.

The next run is always computed from the previous *scheduled* time, not from
now, so a late driver catches up one cycle per run instead of compressing or
skipping the cadence.

run_recurrence_scheduler() is the periodic driver; start_scheduler_in_background()
runs it in its own thread next to the console.
"""

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime, tzinfo
from typing import Any

from ..core.ports import Clock, TemplateRepo
from ..errors import Conflict, InvalidArgument, NotFound, TaskflowError
from ..tasks.lifecycle import TaskLifecycleCoordinator, parse_priority
from ..tasks.task_models import TaskPriority
from .rules import RecurrenceConfig, RecurrencePattern, compute_next_generation
from .template_models import GenerationFailure, GenerationReport, RecurringTemplate, TemplateSummary

logger = logging.getLogger(__name__)

_TEMPLATE_FIELDS = {
    "title",
    "description",
    "project_id",
    "priority",
    "estimated_hours",
    "recurrence_pattern",
    "recurrence_config",
    "active",
}


def _as_config(raw: RecurrenceConfig | dict[str, Any] | None) -> RecurrenceConfig:
    if isinstance(raw, RecurrenceConfig):
        return raw
    return RecurrenceConfig.from_dict(raw)


class RecurrenceScheduler:
    def __init__(
            self,
            template_store: TemplateRepo,
            coordinator: TaskLifecycleCoordinator,
            clock: Clock,
            *,
            tz: tzinfo = UTC,
            batch_limit: int = 64,
    ) -> None:
        self._templates = template_store
        self._coordinator = coordinator
        self._clock = clock
        self._tz = tz
        self._batch_limit = max(1, int(batch_limit))

    # ---- next-run calculation ----

    def next_generation_after(
            self,
            start: datetime,
            pattern: RecurrencePattern | str,
            config: RecurrenceConfig | None,
    ) -> datetime:
        """compute_next_generation() evaluated in the configured local time zone."""
        return compute_next_generation(start.astimezone(self._tz), pattern, config)

    def _pin_month_day(
            self,
            pattern: RecurrencePattern,
            config: RecurrenceConfig,
            reference: datetime,
    ) -> RecurrenceConfig:
        """
        A monthly rule set up without a day keeps the local day it was set up on.

        The day is stored in the config, so month-end clamping (31st -> 29th)
        never feeds back into later cycles.
        """
        if pattern != RecurrencePattern.MONTHLY or config.day_of_month is not None:
            return config
        return replace(config, day_of_month=reference.astimezone(self._tz).day)

    # ---- template operations ----

    def get_template(self, template_id: int) -> RecurringTemplate:
        template = self._templates.get_template(int(template_id))
        if template is None:
            raise NotFound(f"Template not found: {template_id}")
        return template

    def create_template(
            self,
            *,
            title: str,
            project_id: int,
            recurrence_pattern: RecurrencePattern | str,
            recurrence_config: RecurrenceConfig | dict[str, Any] | None = None,
            description: str | None = None,
            priority: TaskPriority | str = TaskPriority.MEDIUM,
            estimated_hours: float | None = None,
            active: bool = True,
    ) -> RecurringTemplate:
        if not title or not title.strip():
            raise InvalidArgument("title is required")
        pattern = RecurrencePattern.parse(recurrence_pattern)
        self._coordinator.require_project(project_id)

        now = self._clock.now()
        config = self._pin_month_day(pattern, _as_config(recurrence_config), now)
        next_at = self.next_generation_after(now, pattern, config)
        template_id = self._templates.add_template(
            title=title,
            project_id=int(project_id),
            recurrence_pattern=pattern,
            recurrence_config=config,
            next_generation_at=next_at,
            description=description,
            priority=parse_priority(priority),
            estimated_hours=estimated_hours,
            active=active,
            now=now,
        )
        logger.info(
            "Template created id=%s pattern=%s next=%s",
            template_id,
            pattern.value,
            next_at.isoformat(),
        )
        return self.get_template(template_id)

    def list_templates(self, *, active_only: bool = False) -> list[TemplateSummary]:
        return [
            TemplateSummary(template=t, instance_count=self._coordinator.template_instance_count(t.id))
            for t in self._templates.list_templates(active_only=active_only)
        ]

    def update_template(self, template_id: int, **changes: Any) -> RecurringTemplate:
        """
        Apply field changes. A changed pattern or config recomputes
        next_generation_at from now with the new rule.
        """
        unknown = set(changes) - _TEMPLATE_FIELDS
        if unknown:
            raise InvalidArgument(f"unknown template fields: {', '.join(sorted(unknown))}")

        current = self.get_template(template_id)

        if changes.get("recurrence_pattern") is not None:
            changes["recurrence_pattern"] = RecurrencePattern.parse(changes["recurrence_pattern"])
        if changes.get("recurrence_config") is not None:
            changes["recurrence_config"] = _as_config(changes["recurrence_config"])
        if changes.get("priority") is not None:
            changes["priority"] = parse_priority(changes["priority"])
        if changes.get("project_id") is not None:
            self._coordinator.require_project(changes["project_id"])

        now = self._clock.now()
        pattern = changes.get("recurrence_pattern") or current.recurrence_pattern
        config = changes.get("recurrence_config") or current.recurrence_config
        if pattern != current.recurrence_pattern or config != current.recurrence_config:
            config = self._pin_month_day(pattern, config, now)
            if config != current.recurrence_config:
                changes["recurrence_config"] = config
            changes["next_generation_at"] = self.next_generation_after(now, pattern, config)
            logger.info(
                "Template %s rule changed; next generation -> %s",
                current.id,
                changes["next_generation_at"].isoformat(),
            )

        self._templates.update_template(current.id, now=now, **changes)
        return self.get_template(current.id)

    def set_active(self, template_id: int, active: bool) -> RecurringTemplate:
        template = self.update_template(template_id, active=active)
        logger.info("Template %s %s", template.id, "activated" if active else "deactivated")
        return template

    def delete_template(self, template_id: int) -> None:
        template = self.get_template(template_id)
        detached = self._coordinator.detach_template_instances(template.id)
        self._templates.delete_template(template.id)
        logger.info("Template %s deleted (%d instance(s) detached)", template.id, detached)

    # ---- generation ----

    def generate_due_templates(self, now: datetime | None = None) -> GenerationReport:
        """
        Generate one instance for every active template that is due at `now`.

        Templates are independent: a failure for one is recorded in the report
        and its next_generation_at is left unchanged for a later retry. Due
        templates are fetched in pages of batch_limit; every template is tried
        at most once per run, so failing ones never hide the ones behind them.
        """
        now = now or self._clock.now()
        report = GenerationReport()
        attempted: set[int] = set()

        while True:
            batch = self._templates.list_due_templates(
                now=now, limit=self._batch_limit, exclude_ids=attempted
            )
            batch = [t for t in batch if t.id not in attempted]
            if not batch:
                break
            for template in batch:
                attempted.add(template.id)
                self._generate_one(template, now, report)

        if attempted:
            logger.info(
                "Generation run: due=%d generated=%d failed=%d",
                len(attempted),
                report.count,
                len(report.failures),
            )
        return report

    def generate_template(self, template_id: int, now: datetime | None = None) -> GenerationReport:
        """Manual trigger: generate for one template regardless of due time or active flag."""
        now = now or self._clock.now()
        template = self.get_template(template_id)
        report = GenerationReport()
        self._generate_one(template, now, report)
        return report

    def _generate_one(self, template: RecurringTemplate, now: datetime, report: GenerationReport) -> None:
        previous_next = template.next_generation_at
        new_next = self.next_generation_after(
            previous_next, template.recurrence_pattern, template.recurrence_config
        )

        try:
            claimed = self._templates.try_claim_generation(
                template.id,
                expected_next=previous_next,
                new_next=new_next,
                generated_at=now,
            )
        except Exception as e:
            logger.exception("try_claim_generation failed template_id=%s", template.id)
            report.failures.append(GenerationFailure(template_id=template.id, kind="error", reason=str(e)))
            return

        if not claimed:
            err = Conflict(f"template {template.id} was already generated for this cycle")
            logger.info("%s", err)
            report.failures.append(GenerationFailure(template_id=template.id, kind=err.kind, reason=str(err)))
            return

        try:
            task = self._coordinator.persist_generated_instance(template, now)
        except Exception as e:
            logger.exception("Instance creation failed template_id=%s; releasing claim", template.id)
            try:
                released = self._templates.release_generation(
                    template.id,
                    claimed_next=new_next,
                    previous_next=previous_next,
                    previous_last=template.last_generated_at,
                )
            except Exception:
                logger.exception("release_generation failed template_id=%s", template.id)
            else:
                if not released:
                    logger.warning(
                        "Claim for template %s was not released (next_generation_at moved or template gone); "
                        "cycle %s is skipped",
                        template.id,
                        previous_next.isoformat(),
                    )
            kind = e.kind if isinstance(e, TaskflowError) else "error"
            report.failures.append(GenerationFailure(template_id=template.id, kind=kind, reason=str(e)))
            return

        report.generated.append(task)
        logger.info(
            "Template %s -> task %s; next generation %s",
            template.id,
            task.id,
            new_next.isoformat(),
        )


async def run_recurrence_scheduler(
        scheduler: RecurrenceScheduler,
        *,
        interval_seconds: float = 60.0,
        stop_event: asyncio.Event | None = None,
) -> None:
    """
    Simple polling driver.

    Every interval_seconds: generate_due_templates(). A failing tick is logged
    and the loop keeps going.

    Stop it by setting stop_event or by cancelling the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))

    while stop_event is None or not stop_event.is_set():
        try:
            scheduler.generate_due_templates()
        except Exception:
            logger.exception("generate_due_templates tick failed")

        if stop_event is None:
            await asyncio.sleep(sleep_s)
            continue
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=sleep_s)


@dataclass(slots=True)
class SchedulerBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal scheduler stop (loop already closed).", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_scheduler_in_background(
        scheduler: RecurrenceScheduler,
        *,
        interval_seconds: float = 60.0,
) -> SchedulerBackgroundRunner | None:
    """
    Start the polling driver in a background thread (so the console REPL can run in parallel).

    The console is blocking (input()); the driver wants its own event loop.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(
                run_recurrence_scheduler(scheduler, interval_seconds=interval_seconds, stop_event=stop_event)
            )
        finally:
            loop.close()

    t = threading.Thread(target=runner, name="recurrence-scheduler", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Scheduler thread did not initialize properly.")
        return None

    logger.info("Recurrence scheduler started (interval=%.1fs).", interval_seconds)
    return SchedulerBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
