# src/taskflow/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..core.clock import from_ts, to_ts
from ..errors import AlreadyExists, InvalidArgument, NotFound
from .task_models import Project, Task, TaskDependency, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

_UNSET: Any = object()

# validate(prerequisites_of) is called inside the write transaction, right before the insert.
EdgeValidator = Callable[[Callable[[int], list[int]]], None]


def _ts_or_now(now: datetime | None) -> float:
    ts = to_ts(now)
    return time.time() if ts is None else ts


class TaskStore:
    """
    SQLite store for projects, tasks and dependency edges.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Storage contract relied on by the dependency graph:
    - UNIQUE(task_id, depends_on_task_id) on task_dependencies
    - add_dependency() runs the caller's validator and the insert in one
      BEGIN IMMEDIATE transaction

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskflow.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    archived INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                )
                """
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    project_id INTEGER NOT NULL REFERENCES projects(id),
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("estimated_hours", "REAL")
            add_col("start_date", "REAL")
            add_col("due_date", "REAL")
            add_col("archived", "INTEGER NOT NULL DEFAULT 0")
            add_col("parent_task_id", "INTEGER REFERENCES tasks(id)")
            add_col("is_recurring", "INTEGER NOT NULL DEFAULT 0")
            add_col("recurring_template_id", "INTEGER")
            add_col("recurrence_instance_date", "REAL")
            add_col("needs_acknowledgment", "INTEGER NOT NULL DEFAULT 0")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    depends_on_task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    created_at REAL NOT NULL,
                    UNIQUE(task_id, depends_on_task_id)
                )
                """
            )

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks(project_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_ack ON tasks(needs_acknowledgment, created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_template ON tasks(recurring_template_id)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_deps_prerequisite ON task_dependencies(depends_on_task_id)"
            )

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=int(row["id"]),
            name=str(row["name"] or ""),
            archived=bool(row["archived"]),
            created_at=from_ts(row["created_at"] or 0.0),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            title=str(row["title"] or ""),
            description=row["description"],
            project_id=int(row["project_id"]),
            status=TaskStatus.from_db(row["status"]),
            priority=TaskPriority.from_db(row["priority"]),
            created_at=from_ts(row["created_at"] or 0.0),
            updated_at=from_ts(row["updated_at"] or 0.0),
            estimated_hours=float(row["estimated_hours"]) if row["estimated_hours"] is not None else None,
            start_date=from_ts(row["start_date"]),
            due_date=from_ts(row["due_date"]),
            archived=bool(row["archived"]),
            parent_task_id=row["parent_task_id"],
            is_recurring=bool(row["is_recurring"]),
            recurring_template_id=row["recurring_template_id"],
            recurrence_instance_date=from_ts(row["recurrence_instance_date"]),
            needs_acknowledgment=bool(row["needs_acknowledgment"]),
        )

    # ---- projects ----

    def add_project(self, name: str, *, now: datetime | None = None) -> int:
        if not name or not name.strip():
            raise InvalidArgument("project name is required")
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO projects(name, archived, created_at) VALUES (?, 0, ?)",
                (name.strip(), _ts_or_now(now)),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for projects insert")
            logger.debug("Project added id=%s name=%s", rowid, name)
            return int(rowid)
        finally:
            conn.close()

    def get_project(self, project_id: int) -> Project | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (int(project_id),)).fetchone()
            return self._row_to_project(row) if row else None
        finally:
            conn.close()

    def project_exists(self, project_id: int) -> bool:
        return self.get_project(project_id) is not None

    def list_projects(self) -> list[Project]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM projects ORDER BY id ASC").fetchall()
            return [self._row_to_project(r) for r in rows]
        finally:
            conn.close()

    def delete_project(self, project_id: int) -> bool:
        """Hard-delete a project that owns no tasks. Raises sqlite3.IntegrityError otherwise."""
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (int(project_id),))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # ---- tasks ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)
        finally:
            conn.close()

    def add_task(
        self,
        *,
        title: str,
        project_id: int,
        description: str | None = None,
        status: TaskStatus = TaskStatus.TODO,
        priority: TaskPriority = TaskPriority.MEDIUM,
        estimated_hours: float | None = None,
        start_date: datetime | None = None,
        due_date: datetime | None = None,
        parent_task_id: int | None = None,
        is_recurring: bool = False,
        recurring_template_id: int | None = None,
        recurrence_instance_date: datetime | None = None,
        needs_acknowledgment: bool = False,
        now: datetime | None = None,
    ) -> int:
        if not title or not title.strip():
            raise InvalidArgument("title is required")

        now_ts = _ts_or_now(now)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            try:
                cur.execute(
                    """
                    INSERT INTO tasks(
                        title, description, project_id, status, priority,
                        created_at, updated_at,
                        estimated_hours, start_date, due_date, archived, parent_task_id,
                        is_recurring, recurring_template_id, recurrence_instance_date,
                        needs_acknowledgment
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        title.strip(),
                        description,
                        int(project_id),
                        TaskStatus(status).value,
                        TaskPriority(priority).value,
                        now_ts,
                        now_ts,
                        estimated_hours,
                        to_ts(start_date),
                        to_ts(due_date),
                        parent_task_id,
                        int(bool(is_recurring)),
                        recurring_template_id,
                        to_ts(recurrence_instance_date),
                        int(bool(needs_acknowledgment)),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise NotFound(
                    f"project {project_id} or parent task {parent_task_id} not found"
                ) from e
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for tasks insert")
            task_id = int(rowid)
            logger.debug(
                "Task added id=%s project=%s status=%s recurring=%s",
                task_id,
                project_id,
                status,
                is_recurring,
            )
            return task_id
        finally:
            conn.close()

    def get_task(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def get_tasks(self, task_ids: Iterable[int]) -> dict[int, Task]:
        ids = sorted({int(t) for t in task_ids})
        if not ids:
            return {}
        conn = self._get_conn()
        try:
            placeholders = ",".join("?" for _ in ids)
            rows = conn.execute(f"SELECT * FROM tasks WHERE id IN ({placeholders})", ids).fetchall()
            return {int(r["id"]): self._row_to_task(r) for r in rows}
        finally:
            conn.close()

    def list_tasks(
        self,
        *,
        project_id: int | None = None,
        status: TaskStatus | None = None,
        archived: bool | None = False,
        limit: int = 500,
    ) -> list[Task]:
        where: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            where.append("project_id = ?")
            params.append(int(project_id))
        if status is not None:
            where.append("status = ?")
            params.append(TaskStatus(status).value)
        if archived is not None:
            where.append("archived = ?")
            params.append(int(bool(archived)))

        sql = "SELECT * FROM tasks"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(int(limit))

        conn = self._get_conn()
        try:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def list_subtasks(self, parent_task_id: int) -> list[Task]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE parent_task_id = ? AND archived = 0 ORDER BY created_at ASC, id ASC",
                (int(parent_task_id),),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def update_task_status(self, task_id: int, new_status: TaskStatus, *, now: datetime | None = None) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (TaskStatus(new_status).value, _ts_or_now(now), int(task_id)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def update_task_fields(
        self,
        task_id: int,
        *,
        title: str | None = None,
        description: str | None = _UNSET,
        project_id: int | None = None,
        priority: TaskPriority | None = None,
        estimated_hours: float | None = _UNSET,
        start_date: datetime | None = _UNSET,
        due_date: datetime | None = _UNSET,
        archived: bool | None = None,
        parent_task_id: int | None = _UNSET,
        needs_acknowledgment: bool | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Partial update. Nullable columns use a sentinel so callers can clear them
        by passing None explicitly. Status is not updatable here on purpose:
        it goes through update_task_status() after the dependency gate.
        """
        fields: list[str] = []
        params: list[Any] = []

        if title is not None:
            if not title.strip():
                raise InvalidArgument("title cannot be empty")
            fields.append("title = ?")
            params.append(title.strip())
        if description is not _UNSET:
            fields.append("description = ?")
            params.append(description)
        if project_id is not None:
            fields.append("project_id = ?")
            params.append(int(project_id))
        if priority is not None:
            fields.append("priority = ?")
            params.append(TaskPriority(priority).value)
        if estimated_hours is not _UNSET:
            fields.append("estimated_hours = ?")
            params.append(estimated_hours)
        if start_date is not _UNSET:
            fields.append("start_date = ?")
            params.append(to_ts(start_date))
        if due_date is not _UNSET:
            fields.append("due_date = ?")
            params.append(to_ts(due_date))
        if archived is not None:
            fields.append("archived = ?")
            params.append(int(bool(archived)))
        if parent_task_id is not _UNSET:
            fields.append("parent_task_id = ?")
            params.append(parent_task_id)
        if needs_acknowledgment is not None:
            fields.append("needs_acknowledgment = ?")
            params.append(int(bool(needs_acknowledgment)))

        if not fields:
            return self.get_task(task_id) is not None

        fields.append("updated_at = ?")
        params.append(_ts_or_now(now))
        params.append(int(task_id))

        sql = f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?"

        conn = self._get_conn()
        try:
            try:
                cur = conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                raise NotFound(f"referenced project or parent task not found for task {task_id}") from e
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def list_pending_acknowledgments(self) -> list[Task]:
        """Every non-archived task flagged for acknowledgment, oldest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE needs_acknowledgment = 1
                  AND archived = 0
                ORDER BY created_at ASC, id ASC
                """
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def archive_done_before(self, cutoff: datetime, *, now: datetime | None = None) -> int:
        """Archive done tasks whose last update is older than cutoff. Returns the count."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE tasks
                SET archived = 1, updated_at = ?
                WHERE status = 'done'
                  AND archived = 0
                  AND updated_at < ?
                """,
                (_ts_or_now(now), to_ts(cutoff)),
            )
            conn.commit()
            return int(cur.rowcount)
        finally:
            conn.close()

    def count_template_instances(self, template_id: int) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE recurring_template_id = ?", (int(template_id),)
            ).fetchone()
            return int(n)
        finally:
            conn.close()

    def clear_template_reference(self, template_id: int) -> int:
        """Detach generated instances from a template that is being deleted."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "UPDATE tasks SET recurring_template_id = NULL WHERE recurring_template_id = ?",
                (int(template_id),),
            )
            conn.commit()
            return int(cur.rowcount)
        finally:
            conn.close()

    # ---- dependency edges ----

    @staticmethod
    def _prerequisite_ids(conn: sqlite3.Connection, task_id: int) -> list[int]:
        rows = conn.execute(
            "SELECT depends_on_task_id FROM task_dependencies "
            "WHERE task_id = ? ORDER BY created_at ASC, rowid ASC",
            (int(task_id),),
        ).fetchall()
        return [int(r[0]) for r in rows]

    def prerequisite_ids(self, task_id: int) -> list[int]:
        conn = self._get_conn()
        try:
            return self._prerequisite_ids(conn, task_id)
        finally:
            conn.close()

    def dependent_ids(self, task_id: int) -> list[int]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT task_id FROM task_dependencies "
                "WHERE depends_on_task_id = ? ORDER BY created_at ASC, rowid ASC",
                (int(task_id),),
            ).fetchall()
            return [int(r[0]) for r in rows]
        finally:
            conn.close()

    def has_dependency(self, task_id: int, depends_on_task_id: int) -> bool:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT 1 FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
                (int(task_id), int(depends_on_task_id)),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def list_dependencies(self) -> list[TaskDependency]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM task_dependencies ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
            return [
                TaskDependency(
                    task_id=int(r["task_id"]),
                    depends_on_task_id=int(r["depends_on_task_id"]),
                    created_at=from_ts(r["created_at"]),
                )
                for r in rows
            ]
        finally:
            conn.close()

    def add_dependency(
        self,
        task_id: int,
        depends_on_task_id: int,
        *,
        validate: EdgeValidator | None = None,
        now: datetime | None = None,
    ) -> TaskDependency:
        """
        Insert the edge (task_id depends on depends_on_task_id).

        `validate` receives a prerequisites_of(task_id) lookup bound to the
        write transaction, so it sees the latest committed edge set and no
        other writer can slip an edge in between the check and the insert.
        Raises AlreadyExists on a duplicate ordered pair.
        """
        now_ts = _ts_or_now(now)
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if validate is not None:
                    validate(lambda tid: self._prerequisite_ids(conn, tid))
                conn.execute(
                    "INSERT INTO task_dependencies(task_id, depends_on_task_id, created_at) VALUES (?, ?, ?)",
                    (int(task_id), int(depends_on_task_id), now_ts),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE" in str(e).upper():
                    raise AlreadyExists(
                        f"task {task_id} already depends on task {depends_on_task_id}"
                    ) from e
                raise NotFound(f"task {task_id} or task {depends_on_task_id} not found") from e
            conn.commit()
            logger.debug("Dependency added %s -> %s", task_id, depends_on_task_id)
            return TaskDependency(
                task_id=int(task_id),
                depends_on_task_id=int(depends_on_task_id),
                created_at=from_ts(now_ts),
            )
        finally:
            conn.close()

    def remove_dependency(self, task_id: int, depends_on_task_id: int) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
                (int(task_id), int(depends_on_task_id)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def list_unresolved_edges(
        self, *, task_id: int | None = None, include_archived: bool = False
    ) -> list[tuple[int, int]]:
        """
        (task_id, depends_on_task_id) pairs whose prerequisite is not done.

        One query, so the dependent's view of its prerequisites is a single snapshot.
        Archived dependents are skipped unless include_archived is set.
        """
        sql = """
            SELECT d.task_id, d.depends_on_task_id
            FROM task_dependencies d
            JOIN tasks t ON t.id = d.task_id
            JOIN tasks p ON p.id = d.depends_on_task_id
            WHERE p.status != 'done'
        """
        params: list[Any] = []
        if not include_archived:
            sql += " AND t.archived = 0"
        if task_id is not None:
            sql += " AND d.task_id = ?"
            params.append(int(task_id))
        sql += " ORDER BY d.task_id ASC, d.created_at ASC, d.rowid ASC"

        conn = self._get_conn()
        try:
            return [(int(r[0]), int(r[1])) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()
