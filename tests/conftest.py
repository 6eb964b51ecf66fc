# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from guardian_sync.tasks.task_authority import TaskAuthority
from guardian_sync.tasks.task_models import Role, User, new_id
from guardian_sync.tasks.task_store import TaskStore

from .fakes import FakeEventSink, FrozenClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with create_app() and ClientAgent.

    A SimpleNamespace rather than the real config keeps tests isolated from
    the environment and .env files.
    """
    return SimpleNamespace(
        app_name="guardian-sync-test",
        log_level="DEBUG",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        server_db_path=tmp_path / "server.sqlite3",
        client_db_path=tmp_path / "client.sqlite3",
        # HTTP
        host="127.0.0.1",
        port=3001,
        cors_origins=["http://localhost:5173"],
        jwt_secret="test-secret",
        token_ttl_hours=1,
        # Channel / reminders
        heartbeat_interval_seconds=30.0,
        reconnect_delay_seconds=0.0,
        reconnect_max_attempts=3,
        reminder_interval_seconds=60.0,
        reminder_lookahead_minutes=30,
        reminder_timezone="UTC",
        # Client
        server_url="http://testserver",
        poll_interval_seconds=5.0,
        reconnect_settle_seconds=0.0,
        request_timeout_seconds=5.0,
    )


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture()
def task_store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "server.sqlite3")


@pytest.fixture()
def sink() -> FakeEventSink:
    return FakeEventSink()


@pytest.fixture()
def authority(task_store: TaskStore, sink: FakeEventSink, clock: FrozenClock) -> TaskAuthority:
    return TaskAuthority(task_store, sink, clock=clock)


@pytest.fixture()
def family(task_store: TaskStore) -> SimpleNamespace:
    """
    A guardian linked to one dependent, plus an unrelated guardian.

    Users are inserted directly (no bcrypt) since auth is not under test here.
    """
    guardian = User(id=new_id(), name="gina", password_hash="-", role=Role.GUARDIAN)
    other = User(id=new_id(), name="oscar", password_hash="-", role=Role.GUARDIAN)
    dependent = User(id=new_id(), name="dan", password_hash="-", role=Role.DEPENDENT, code="AB12CD34")
    for u in (guardian, other, dependent):
        task_store.add_user(u)

    assert task_store.link_dependent(dependent.id, guardian.id)
    dependent.guardian_id = guardian.id
    return SimpleNamespace(guardian=guardian, other=other, dependent=dependent)
