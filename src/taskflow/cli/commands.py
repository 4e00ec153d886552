# src/taskflow/cli/commands.py

from __future__ import annotations

import contextlib
import inspect
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, cast

from ..core.state import AppState
from ..errors import Blocked, InvalidArgument, TaskflowError
from ..recurrence.template_models import GenerationReport, RecurringTemplate
from ..tasks.task_models import DependencyNode, Task

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console front end (/help, /dep, /tpl, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.

        Engine errors are rendered as replies; anything else propagates.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        try:
            if nparams >= 3:
                h3 = cast(CommandHandler3, handler)
                return h3(state, args, emit)
            h2 = cast(CommandHandler2, handler)
            return h2(state, args)
        except TaskflowError as e:
            logger.debug("/%s failed: %s", name, e)
            return format_error(e)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- formatting ----


def format_error(err: TaskflowError) -> str:
    if isinstance(err, Blocked):
        lines = [f"Blocked: {err}"]
        for t in err.blocked_by:
            lines.append(f"  - #{t.id} {t.title} [{t.status.value}]")
        return "\n".join(lines)
    return f"Error ({err.kind}): {err}"


def _fmt_dt(dt: datetime | None) -> str:
    if dt is None:
        return "-"
    return dt.astimezone(UTC).strftime("%Y-%m-%d %H:%M UTC")


def _fmt_task(t: Task) -> str:
    flags = []
    if t.needs_acknowledgment:
        flags.append("needs-ack")
    if t.archived:
        flags.append("archived")
    if t.is_recurring:
        flags.append(f"recurring:{t.recurring_template_id or '-'}")
    flag_str = f" ({', '.join(flags)})" if flags else ""
    return f"#{t.id} [{t.status.value}] {t.title} <{t.priority.value}>{flag_str}"


def _fmt_template(t: RecurringTemplate) -> str:
    state = "on" if t.active else "off"
    cfg = t.recurrence_config.to_dict()
    cfg_str = " ".join(f"{k}={v}" for k, v in cfg.items())
    return (
        f"T{t.id} [{state}] {t.title} {t.recurrence_pattern.value}"
        f"{(' ' + cfg_str) if cfg_str else ''} next={_fmt_dt(t.next_generation_at)}"
    )


def _fmt_chain_nodes(nodes: list[DependencyNode], depth: int, out: list[str]) -> None:
    for n in nodes:
        suffix = " (see above)" if n.repeated else ""
        out.append(f"{'  ' * depth}- {_fmt_task(n.task)}{suffix}")
        _fmt_chain_nodes(n.depends_on, depth + 1, out)


def _fmt_report(report: GenerationReport) -> str:
    lines = [f"Generated {report.count} task(s)."]
    for t in report.generated:
        lines.append(f"  + {_fmt_task(t)}")
    for f in report.failures:
        lines.append(f"  ! T{f.template_id}: {f.kind}: {f.reason}")
    return "\n".join(lines)


# ---- argument parsing ----


def _int_arg(raw: str, name: str) -> int:
    try:
        return int(raw.lstrip("#T"))
    except ValueError as e:
        raise InvalidArgument(f"{name} must be a number, got {raw!r}") from e


def _split_kv(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Separate key=value tokens from positional words."""
    positional: list[str] = []
    options: dict[str, str] = {}
    for a in args:
        if "=" in a and not a.startswith("="):
            k, v = a.split("=", 1)
            options[k.strip().lower()] = v.strip()
        else:
            positional.append(a)
    return positional, options


def _parse_datetime(raw: str) -> datetime | None:
    if raw.lower() in ("", "none", "-"):
        return None
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError as e:
        raise InvalidArgument(f"expected an ISO date like 2024-03-01 or 2024-03-01T09:00, got {raw!r}") from e
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _parse_float(raw: str, name: str) -> float | None:
    if raw.lower() in ("", "none", "-"):
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise InvalidArgument(f"{name} must be a number, got {raw!r}") from e


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


_TASK_OPTION_PARSERS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "title": ("title", str),
    "description": ("description", lambda v: v or None),
    "priority": ("priority", str),
    "hours": ("estimated_hours", lambda v: _parse_float(v, "hours")),
    "start": ("start_date", _parse_datetime),
    "due": ("due_date", _parse_datetime),
    "parent": ("parent_task_id", lambda v: None if v.lower() in ("none", "-") else _int_arg(v, "parent")),
    "project": ("project_id", lambda v: _int_arg(v, "project")),
    "archived": ("archived", _parse_bool),
}

_CONFIG_KEYS = {"dow": "day_of_week", "dom": "day_of_month", "time": "time"}


def _task_changes(options: dict[str, str]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key, raw in options.items():
        if key not in _TASK_OPTION_PARSERS:
            raise InvalidArgument(f"unknown task option {key!r}")
        field_name, parse = _TASK_OPTION_PARSERS[key]
        changes[field_name] = parse(raw)
    return changes


def _template_changes(options: dict[str, str], base_config: dict[str, Any] | None = None) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    config = dict(base_config or {})
    config_touched = False
    for key, raw in options.items():
        if key in _CONFIG_KEYS:
            config[_CONFIG_KEYS[key]] = raw if key == "time" else _int_arg(raw, key)
            config_touched = True
        elif key == "pattern":
            changes["recurrence_pattern"] = raw
        elif key == "priority":
            changes["priority"] = raw
        elif key == "hours":
            changes["estimated_hours"] = _parse_float(raw, "hours")
        elif key == "description":
            changes["description"] = raw or None
        elif key == "title":
            changes["title"] = raw
        elif key == "project":
            changes["project_id"] = _int_arg(raw, "project")
        else:
            raise InvalidArgument(f"unknown template option {key!r}")
    if config_touched:
        changes["recurrence_config"] = config
    return changes


# ---- handlers ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_project(state: AppState, args: list[str]) -> str:
    """
    /project add <name...>
    /project list
    """
    if not args or args[0].lower() == "list":
        projects = state.task_store.list_projects()
        if not projects:
            return "No projects yet. Use /project add <name>."
        return "\n".join(f"P{p.id} {p.name}" for p in projects)

    if args[0].lower() == "add":
        project = state.lifecycle.add_project(" ".join(args[1:]))
        return f"Created project P{project.id} {project.name}"

    return "Usage: /project add <name> | /project list"


def cmd_task(state: AppState, args: list[str]) -> str:
    """
    /task add <project_id> <title...> [priority=high] [hours=4] [due=2024-03-01] [parent=3]
    /task show <id>
    /task list [project_id]
    /task set <id> key=value...
    """
    if not args:
        return "Usage: /task add|show|list|set ..."

    sub = args[0].lower()
    positional, options = _split_kv(args[1:])

    if sub == "add":
        if len(positional) < 2:
            return "Usage: /task add <project_id> <title...> [key=value...]"
        fields = _task_changes(options)
        for key in ("archived", "project_id", "title"):
            fields.pop(key, None)
        task = state.lifecycle.create_task(
            project_id=_int_arg(positional[0], "project_id"),
            title=" ".join(positional[1:]),
            **fields,
        )
        return f"Created {_fmt_task(task)}"

    if sub == "show":
        if not positional:
            return "Usage: /task show <id>"
        task = state.lifecycle.get_task(_int_arg(positional[0], "task_id"))
        lines = [
            _fmt_task(task),
            f"  project: P{task.project_id}",
            f"  start: {_fmt_dt(task.start_date)}  due: {_fmt_dt(task.due_date)}",
            f"  estimated hours: {task.estimated_hours if task.estimated_hours is not None else '-'}",
        ]
        if task.parent_task_id is not None:
            lines.append(f"  parent: #{task.parent_task_id}")
        subtasks = state.task_store.list_subtasks(task.id)
        if subtasks:
            lines.append("  subtasks:")
            lines.extend(f"    - {_fmt_task(s)}" for s in subtasks)
        blockers = state.graph.unresolved_prerequisites(task.id)
        if blockers:
            lines.append("  blocked by: " + ", ".join(f"#{b.id} {b.title}" for b in blockers))
        return "\n".join(lines)

    if sub == "list":
        project_id = _int_arg(positional[0], "project_id") if positional else None
        tasks = state.task_store.list_tasks(project_id=project_id)
        if not tasks:
            return "No tasks."
        return "\n".join(_fmt_task(t) for t in tasks)

    if sub == "set":
        if not positional or not options:
            return "Usage: /task set <id> key=value..."
        task = state.lifecycle.update_task(_int_arg(positional[0], "task_id"), **_task_changes(options))
        return f"Updated {_fmt_task(task)}"

    return "Usage: /task add|show|list|set ..."


def cmd_status(state: AppState, args: list[str]) -> str:
    """/status <task_id> <backlog|todo|in-progress|review|done>"""
    if len(args) != 2:
        return "Usage: /status <task_id> <backlog|todo|in-progress|review|done>"
    task = state.lifecycle.request_status_change(_int_arg(args[0], "task_id"), args[1])
    return f"OK {_fmt_task(task)}"


def cmd_dep(state: AppState, args: list[str]) -> str:
    """
    /dep add <task_id> <depends_on_id>
    /dep rm <task_id> <depends_on_id>
    /dep blocked
    /dep chain <task_id>
    """
    if not args:
        return "Usage: /dep add|rm <task_id> <depends_on_id> | /dep blocked | /dep chain <task_id>"

    sub = args[0].lower()

    if sub in ("add", "rm", "remove"):
        if len(args) != 3:
            return f"Usage: /dep {sub} <task_id> <depends_on_id>"
        dependent = _int_arg(args[1], "task_id")
        prerequisite = _int_arg(args[2], "depends_on_id")
        if sub == "add":
            state.graph.add_dependency(dependent, prerequisite)
            return f"#{dependent} now depends on #{prerequisite}."
        state.graph.remove_dependency(dependent, prerequisite)
        return f"#{dependent} no longer depends on #{prerequisite}."

    if sub == "blocked":
        blocked = state.graph.list_blocked()
        if not blocked:
            return "No blocked tasks. Everything is ready to work on."
        lines = [f"Blocked tasks ({len(blocked)}):"]
        for b in blocked:
            lines.append(f"  {_fmt_task(b.task)}")
            lines.extend(f"    waits for {_fmt_task(p)}" for p in b.blocked_by)
        return "\n".join(lines)

    if sub == "chain":
        if len(args) != 2:
            return "Usage: /dep chain <task_id>"
        chain = state.graph.dependency_chain(_int_arg(args[1], "task_id"))
        lines = [_fmt_task(chain.task), "Depends on:"]
        if chain.depends_on:
            _fmt_chain_nodes(chain.depends_on, 1, lines)
        else:
            lines.append("  (nothing)")
        lines.append("Blocks:")
        lines.extend(f"  - {_fmt_task(t)}" for t in chain.blocks)
        if not chain.blocks:
            lines.append("  (nothing)")
        return "\n".join(lines)

    return "Usage: /dep add|rm <task_id> <depends_on_id> | /dep blocked | /dep chain <task_id>"


def cmd_tpl(state: AppState, args: list[str]) -> str:
    """
    /tpl add <project_id> <daily|weekly|monthly|custom> <title...> [dow=1] [dom=31] [time=09:00] [priority=..] [hours=..]
    /tpl list [active]
    /tpl set <id> key=value...
    /tpl on <id> | /tpl off <id> | /tpl rm <id>
    """
    if not args:
        return "Usage: /tpl add|list|set|on|off|rm ..."

    sub = args[0].lower()
    positional, options = _split_kv(args[1:])

    if sub == "add":
        if len(positional) < 3:
            return "Usage: /tpl add <project_id> <pattern> <title...> [dow=..] [dom=..] [time=HH:MM]"
        changes = _template_changes(options)
        template = state.scheduler.create_template(
            project_id=_int_arg(positional[0], "project_id"),
            recurrence_pattern=positional[1],
            title=" ".join(positional[2:]),
            recurrence_config=changes.pop("recurrence_config", None),
            **{k: v for k, v in changes.items() if k not in ("recurrence_pattern", "title", "project_id")},
        )
        return f"Created {_fmt_template(template)}"

    if sub == "list":
        active_only = bool(positional) and positional[0].lower() == "active"
        summaries = state.scheduler.list_templates(active_only=active_only)
        if not summaries:
            return "No recurring templates."
        return "\n".join(f"{_fmt_template(s.template)} instances={s.instance_count}" for s in summaries)

    if sub in ("set", "on", "off", "rm", "delete"):
        if not positional:
            return f"Usage: /tpl {sub} <id>"
        template_id = _int_arg(positional[0], "template_id")

        if sub == "set":
            if not options:
                return "Usage: /tpl set <id> key=value..."
            current = state.scheduler.get_template(template_id)
            changes = _template_changes(options, current.recurrence_config.to_dict())
            template = state.scheduler.update_template(template_id, **changes)
            return f"Updated {_fmt_template(template)}"
        if sub in ("on", "off"):
            template = state.scheduler.set_active(template_id, sub == "on")
            return f"Updated {_fmt_template(template)}"
        state.scheduler.delete_template(template_id)
        return f"Deleted template T{template_id}."

    return "Usage: /tpl add|list|set|on|off|rm ..."


def cmd_generate(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /generate            -> generate every due template
    /generate <tpl_id>   -> generate one template now, due or not
    """
    if emit:
        with contextlib.suppress(Exception):
            emit("[GEN] Generating recurring tasks...")

    if args:
        report = state.scheduler.generate_template(_int_arg(args[0], "template_id"))
    else:
        report = state.scheduler.generate_due_templates()
    return _fmt_report(report)


def cmd_pending(state: AppState, args: list[str]) -> str:
    tasks = state.lifecycle.list_pending_acknowledgments()
    if not tasks:
        return "No pending acknowledgments."
    lines = [f"{len(tasks)} task(s) need acknowledgment:"]
    for t in tasks:
        lines.append(f"  - {_fmt_task(t)} generated {_fmt_dt(t.recurrence_instance_date or t.created_at)}")
    return "\n".join(lines)


def cmd_ack(state: AppState, args: list[str]) -> str:
    if len(args) != 1:
        return "Usage: /ack <task_id>"
    task = state.lifecycle.acknowledge(_int_arg(args[0], "task_id"))
    return f"Acknowledged: {task.title}"


def cmd_archive(state: AppState, args: list[str]) -> str:
    """/archive [days] -> archive tasks done for at least N days (default from settings)."""
    days = int(getattr(state.settings, "archive_after_days", 7))
    if args:
        days = _int_arg(args[0], "days")
    count = state.lifecycle.archive_completed(older_than_days=days)
    return f"Archived {count} task(s) completed {days}+ days ago."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("project", cmd_project, help_text="Projects: /project add <name> | /project list.")
registry.register("task", cmd_task, help_text="Tasks: /task add|show|list|set.")
registry.register("status", cmd_status, help_text="Change status (dependency-gated): /status <id> <status>.")
registry.register("dep", cmd_dep, help_text="Dependencies: /dep add|rm <task> <prereq> | blocked | chain <task>.")
registry.register("tpl", cmd_tpl, help_text="Recurring templates: /tpl add|list|set|on|off|rm.")
registry.register("generate", cmd_generate, help_text="Generate due recurring tasks: /generate [template_id].")
registry.register("pending", cmd_pending, help_text="List generated tasks awaiting acknowledgment.")
registry.register("ack", cmd_ack, help_text="Acknowledge a generated task: /ack <task_id>.")
registry.register("archive", cmd_archive, help_text="Archive long-completed tasks: /archive [days].")
