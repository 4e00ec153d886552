# src/taskflow/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- Nothing required at import time; every key has a default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKFLOW"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Front ends ----
    console_enabled: bool

    # ---- Storage (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Recurrence ----
    timezone: str
    scheduler_enabled: bool
    scheduler_interval_seconds: float
    scheduler_batch_limit: int

    # ---- Housekeeping ----
    archive_after_days: int

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskflow") or "taskflow"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskflow"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "taskflow.sqlite3")

        timezone = _env(_k("TIMEZONE"), "UTC").strip() or "UTC"
        scheduler_enabled = _env_bool(_k("SCHEDULER_ENABLED"), True)
        scheduler_interval_seconds = _env_float(_k("SCHEDULER_INTERVAL_SECONDS"), 60.0)
        scheduler_batch_limit = _env_int(_k("SCHEDULER_BATCH_LIMIT"), 64)

        archive_after_days = _env_int(_k("ARCHIVE_AFTER_DAYS"), 7)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            data_dir=data_dir,
            db_path=db_path,
            timezone=timezone,
            scheduler_enabled=scheduler_enabled,
            scheduler_interval_seconds=scheduler_interval_seconds,
            scheduler_batch_limit=scheduler_batch_limit,
            archive_after_days=archive_after_days,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
