# src/taskflow/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FILE_NAME = "taskflow.log"

# Minimum level a taskflow logger needs to reach the console. The generation
# loop runs in its own thread and would interleave INFO lines with the REPL
# prompt; the stores announce readiness and every write. Both stay in the file.
_CONSOLE_FLOORS: dict[str, int] = {
    "taskflow.recurrence.recurrence_scheduler": logging.WARNING,
    "taskflow.recurrence.template_store": logging.WARNING,
    "taskflow.tasks.task_store": logging.WARNING,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Console view of the engine log.

    taskflow.* records pass unless their module has a floor in _CONSOLE_FLOORS.
    Everything else (captured warnings, libraries) only shows at ERROR.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if not name.startswith("taskflow."):
            return record.levelno >= logging.ERROR

        for prefix, floor in _CONSOLE_FLOORS.items():
            if name.startswith(prefix):
                return record.levelno >= floor
        return True


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskflow",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Route all logging to stderr (filtered) and to <log_dir>/taskflow.log (unfiltered).

    Replaces any handlers already on the root logger. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
