# src/taskflow/recurrence/template_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..core.clock import from_ts, to_ts
from ..errors import InvalidArgument
from ..tasks.task_models import TaskPriority
from .rules import RecurrenceConfig, RecurrencePattern
from .template_models import RecurringTemplate

logger = logging.getLogger(__name__)

_UNSET: Any = object()

# next_generation_at values are minute-aligned; the tolerance only absorbs
# float/datetime round-trips in compare-and-swap updates.
_TS_EPSILON = 1e-3


def _ts_or_now(now: datetime | None) -> float:
    ts = to_ts(now)
    return time.time() if ts is None else ts


class TemplateStore:
    """
    SQLite store for recurring task templates.

    Shares the database file with TaskStore but owns only its own table.

    Generation claims are compare-and-swap updates on next_generation_at:
    two overlapping runs can both *see* a due template, but only one of them
    moves next_generation_at forward, and only that one creates an instance.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskflow.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_templates()
        except sqlite3.Error:
            total = -1
        logger.info("TemplateStore ready db=%s total=%s", self._db_path, total)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS recurring_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    project_id INTEGER NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    estimated_hours REAL,
                    recurrence_pattern TEXT NOT NULL,
                    recurrence_config TEXT NOT NULL DEFAULT '{}',
                    active INTEGER NOT NULL DEFAULT 1,
                    last_generated_at REAL,
                    next_generation_at REAL NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_templates_due "
                "ON recurring_templates(active, next_generation_at)"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _config_to_str(config: RecurrenceConfig | None) -> str:
        if config is None:
            return "{}"
        return json.dumps(config.to_dict(), ensure_ascii=False)

    @staticmethod
    def _str_to_config(s: str | None, template_id: int) -> RecurrenceConfig:
        if not s:
            return RecurrenceConfig()
        try:
            return RecurrenceConfig.from_dict(json.loads(s))
        except (ValueError, InvalidArgument):
            logger.warning("Template %s has an unreadable recurrence config; using defaults.", template_id)
            return RecurrenceConfig()

    def _row_to_template(self, row: sqlite3.Row) -> RecurringTemplate:
        template_id = int(row["id"])
        return RecurringTemplate(
            id=template_id,
            title=str(row["title"] or ""),
            description=row["description"],
            project_id=int(row["project_id"]),
            priority=TaskPriority.from_db(row["priority"]),
            estimated_hours=float(row["estimated_hours"]) if row["estimated_hours"] is not None else None,
            recurrence_pattern=RecurrencePattern.from_db(row["recurrence_pattern"]),
            recurrence_config=self._str_to_config(row["recurrence_config"], template_id),
            active=bool(row["active"]),
            last_generated_at=from_ts(row["last_generated_at"]),
            next_generation_at=from_ts(row["next_generation_at"]),
            created_at=from_ts(row["created_at"] or 0.0),
            updated_at=from_ts(row["updated_at"] or 0.0),
        )

    # ---- CRUD ----

    def count_templates(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM recurring_templates").fetchone()
            return int(n)
        finally:
            conn.close()

    def add_template(
        self,
        *,
        title: str,
        project_id: int,
        recurrence_pattern: RecurrencePattern,
        next_generation_at: datetime,
        recurrence_config: RecurrenceConfig | None = None,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        estimated_hours: float | None = None,
        active: bool = True,
        now: datetime | None = None,
    ) -> int:
        if not title or not title.strip():
            raise InvalidArgument("title is required")

        now_ts = _ts_or_now(now)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO recurring_templates(
                    title, description, project_id, priority, estimated_hours,
                    recurrence_pattern, recurrence_config, active,
                    last_generated_at, next_generation_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
                """,
                (
                    title.strip(),
                    description,
                    int(project_id),
                    TaskPriority(priority).value,
                    estimated_hours,
                    RecurrencePattern(recurrence_pattern).value,
                    self._config_to_str(recurrence_config),
                    int(bool(active)),
                    to_ts(next_generation_at),
                    now_ts,
                    now_ts,
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for recurring_templates insert")
            logger.debug(
                "Template added id=%s pattern=%s next=%s",
                rowid,
                recurrence_pattern,
                next_generation_at.isoformat(),
            )
            return int(rowid)
        finally:
            conn.close()

    def get_template(self, template_id: int) -> RecurringTemplate | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM recurring_templates WHERE id = ?", (int(template_id),)
            ).fetchone()
            return self._row_to_template(row) if row else None
        finally:
            conn.close()

    def list_templates(self, *, active_only: bool = False) -> list[RecurringTemplate]:
        sql = "SELECT * FROM recurring_templates"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY created_at DESC, id DESC"
        conn = self._get_conn()
        try:
            return [self._row_to_template(r) for r in conn.execute(sql).fetchall()]
        finally:
            conn.close()

    def update_template(
        self,
        template_id: int,
        *,
        title: str | None = None,
        description: str | None = _UNSET,
        project_id: int | None = None,
        priority: TaskPriority | None = None,
        estimated_hours: float | None = _UNSET,
        recurrence_pattern: RecurrencePattern | None = None,
        recurrence_config: RecurrenceConfig | None = None,
        active: bool | None = None,
        next_generation_at: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
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
        if recurrence_pattern is not None:
            fields.append("recurrence_pattern = ?")
            params.append(RecurrencePattern(recurrence_pattern).value)
        if recurrence_config is not None:
            fields.append("recurrence_config = ?")
            params.append(self._config_to_str(recurrence_config))
        if active is not None:
            fields.append("active = ?")
            params.append(int(bool(active)))
        if next_generation_at is not None:
            fields.append("next_generation_at = ?")
            params.append(to_ts(next_generation_at))

        if not fields:
            return self.get_template(template_id) is not None

        fields.append("updated_at = ?")
        params.append(_ts_or_now(now))
        params.append(int(template_id))

        conn = self._get_conn()
        try:
            cur = conn.execute(f"UPDATE recurring_templates SET {', '.join(fields)} WHERE id = ?", params)
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def delete_template(self, template_id: int) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM recurring_templates WHERE id = ?", (int(template_id),))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # ---- scheduler API ----

    def list_due_templates(
        self,
        *,
        now: datetime,
        limit: int = 64,
        exclude_ids: Iterable[int] = (),
    ) -> list[RecurringTemplate]:
        """
        Active templates with next_generation_at <= now, most overdue first.

        exclude_ids skips templates the caller already handled, so a caller
        paging with a limit still reaches templates behind failing ones.
        """
        excluded = sorted({int(t) for t in exclude_ids})
        sql = """
            SELECT *
            FROM recurring_templates
            WHERE active = 1
              AND next_generation_at <= ?
        """
        params: list[Any] = [to_ts(now)]
        if excluded:
            sql += f" AND id NOT IN ({','.join('?' for _ in excluded)})"
            params.extend(excluded)
        sql += " ORDER BY next_generation_at ASC, id ASC LIMIT ?"
        params.append(int(limit))

        conn = self._get_conn()
        try:
            return [self._row_to_template(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def try_claim_generation(
        self,
        template_id: int,
        *,
        expected_next: datetime,
        new_next: datetime,
        generated_at: datetime,
    ) -> bool:
        """
        Compare-and-swap claim of one due cycle.

        Atomically transitions:
          next_generation_at == expected_next -> new_next, last_generated_at = generated_at

        Returns True if the row was claimed by this caller.
        """
        gen_ts = to_ts(generated_at)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE recurring_templates
                SET next_generation_at = ?, last_generated_at = ?, updated_at = ?
                WHERE id = ?
                  AND ABS(next_generation_at - ?) < ?
                """,
                (to_ts(new_next), gen_ts, gen_ts, int(template_id), to_ts(expected_next), _TS_EPSILON),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def release_generation(
        self,
        template_id: int,
        *,
        claimed_next: datetime,
        previous_next: datetime,
        previous_last: datetime | None,
    ) -> bool:
        """Undo a claim whose instance could not be created (only if nobody moved it since)."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE recurring_templates
                SET next_generation_at = ?, last_generated_at = ?
                WHERE id = ?
                  AND ABS(next_generation_at - ?) < ?
                """,
                (
                    to_ts(previous_next),
                    to_ts(previous_last),
                    int(template_id),
                    to_ts(claimed_next),
                    _TS_EPSILON,
                ),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()
