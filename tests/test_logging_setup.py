# tests/test_logging_setup.py

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from taskflow.logging_setup import _ConsoleNoiseFilter, setup_logging


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.mark.parametrize(
    ("name", "level", "shown"),
    [
        ("taskflow.tasks.lifecycle", logging.INFO, True),
        ("taskflow.cli.commands", logging.DEBUG, True),
        ("taskflow.recurrence.recurrence_scheduler", logging.INFO, False),
        ("taskflow.recurrence.recurrence_scheduler", logging.WARNING, True),
        ("taskflow.tasks.task_store", logging.INFO, False),
        ("taskflow.recurrence.template_store", logging.ERROR, True),
        ("py.warnings", logging.WARNING, False),
        ("asyncio", logging.ERROR, True),
    ],
)
def test_console_filter(name: str, level: int, shown: bool) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_setup_logging_writes_everything_to_file(tmp_path: Path, restore_root_logging) -> None:
    log_file = setup_logging(log_dir=tmp_path / "logs")

    logging.getLogger("taskflow.recurrence.recurrence_scheduler").debug("tick done")
    for h in logging.getLogger().handlers:
        h.flush()

    assert log_file == tmp_path / "logs" / "taskflow.log"
    assert "tick done" in log_file.read_text(encoding="utf-8")
