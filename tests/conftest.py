"""Shared test fixtures for cadence tests."""

import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from cadence import db
from cadence.config import load_config
from cadence.extensions import ProjectContext
from cadence.schedules import update_schedule


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """A project directory with an initialised state database."""
    monkeypatch.delenv("CADENCE_DIR", raising=False)
    db.init_schema(tmp_path)
    return tmp_path


@pytest.fixture
def scheduler_config(project_dir):
    """Merged default configuration; tests tweak sections in place."""
    return load_config(project_dir)


@pytest.fixture
def project_ctx(project_dir, scheduler_config):
    ctx = ProjectContext(project_dir=project_dir, config=scheduler_config)
    yield ctx
    ctx.close()


@pytest.fixture
def active_session(project_dir):
    """An active session bound to an external session handle."""
    db.create_session(project_dir, "sess-1")
    db.save_session_handle(project_dir, "sess-1", "sdk-handle-1")
    return {"session_id": "sess-1", "sdk_session_id": "sdk-handle-1"}


@pytest.fixture
def fake_spawn():
    """Replace worker spawning with fake pids that look alive.

    Set ``fake_spawn.alive.return_value = False`` to simulate crashed workers.
    """
    pids = itertools.count(40000)
    with (
        patch("cadence.background.subprocess.Popen") as popen,
        patch("cadence.background.is_process_running", return_value=True) as alive,
    ):
        popen.side_effect = lambda *args, **kwargs: MagicMock(pid=next(pids))
        yield SimpleNamespace(popen=popen, alive=alive)


@pytest.fixture
def monday_9am():
    """Monday 2026-10-19 09:00 local time."""
    return datetime(2026, 10, 19, 9, 0).astimezone()


@pytest.fixture
def make_due(project_dir):
    """Set a schedule's next run to now (or slightly earlier)."""

    def _make_due(schedule_id, now, seconds_ago=0):
        update_schedule(
            project_dir,
            schedule_id,
            next_run_at=db.to_db_timestamp(now - timedelta(seconds=seconds_ago)),
        )

    return _make_due
