# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskflow.cli.bootstrap import create_initial_state
from taskflow.core.state import AppState
from taskflow.tasks.task_models import Project

from .fakes import FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and bootstrap.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the environment.
    """
    return SimpleNamespace(
        app_name="taskflow",
        data_dir=tmp_path / "data",
        db_path=tmp_path / "data" / "taskflow.sqlite3",
        timezone="UTC",
        scheduler_batch_limit=64,
        archive_after_days=7,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state(settings: SimpleNamespace, clock: FakeClock) -> AppState:
    """
    AppState wired by the real composition root.

    We keep real SQLite stores here because their constraints (uniqueness,
    foreign keys, compare-and-swap claims) are part of what we want to test.
    """
    return create_initial_state(settings=settings, clock=clock)


@pytest.fixture()
def project(state: AppState) -> Project:
    return state.lifecycle.add_project("Home")


@pytest.fixture()
def make_task(state: AppState, project: Project):
    def _make(title: str, **fields):
        return state.lifecycle.create_task(title=title, project_id=fields.pop("project_id", project.id), **fields)

    return _make
