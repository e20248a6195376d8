from __future__ import annotations

from pathlib import Path

import pytest

from task_deadline_mcp.deadline_monitor import DeadlineMonitor
from task_deadline_mcp.task_store import TaskStore

from tests.fakes import FakeClock, FakeTaskStore, RecordingNotifier


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def monitor(fake_store: FakeTaskStore, notifier: RecordingNotifier, clock: FakeClock):
    """Monitor wired to in-memory fakes; dispatch runs inline."""
    mon = DeadlineMonitor(fake_store, notifier, clock=clock)
    yield mon
    mon.close()


@pytest.fixture()
def sqlite_store(tmp_path: Path):
    """Real SQLAlchemy store on a throwaway SQLite file."""
    store = TaskStore(f"sqlite:///{(tmp_path / 'tasks.sqlite3').as_posix()}")
    yield store
    store.close()
