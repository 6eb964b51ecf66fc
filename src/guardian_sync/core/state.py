# src/guardian_sync/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..server.auth import AuthService
from ..server.registry import InMemoryConnectionRegistry
from ..tasks.reminder_scheduler import ReminderScheduler
from ..tasks.task_authority import TaskAuthority
from ..tasks.task_store import TaskStore


@dataclass
class ServerState:
    # Store Settings on the state for easy access from request handlers.
    settings: object

    store: TaskStore
    auth: AuthService
    registry: InMemoryConnectionRegistry
    authority: TaskAuthority
    reminders: ReminderScheduler
