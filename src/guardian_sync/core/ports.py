# src/guardian_sync/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The authority, the reminder scheduler and the sync engine depend on Protocols
instead of concrete implementations. This keeps transports and storage
swappable (e.g. an external pub/sub registry in a multi-process deployment)
and makes testing easier.
"""

from typing import Any, Awaitable, Protocol

from ..tasks.task_models import PendingChange, Task, TaskStatus, User

Message = dict[str, Any]
# JSON frames pushed over the notification channel: {"type": "...", ...}.


class ChannelHandle(Protocol):
    """One live server-side connection (a WebSocket in production)."""

    def send_json(self, data: Message) -> Awaitable[None]: ...
    def close(self, code: int = 1000, reason: str = "") -> Awaitable[None]: ...


class EventSink(Protocol):
    """What producers of events (authority, reminders) need: send-by-user-id."""

    def send_to(self, user_id: str, message: Message) -> Awaitable[bool]: ...
    def is_connected(self, user_id: str) -> bool: ...


class ConnectionRegistry(EventSink, Protocol):
    """
    userId -> live connection, at most one per user.

    register() on an already registered user goes through supersede():
    the previous handle is closed and replaced.
    """

    def register(self, user_id: str, handle: ChannelHandle, role: str) -> Awaitable[None]: ...
    def supersede(self, user_id: str, handle: ChannelHandle, role: str) -> Awaitable[ChannelHandle | None]: ...
    def unregister(self, user_id: str, handle: ChannelHandle | None = None) -> bool: ...
    def touch(self, user_id: str) -> None: ...
    def evict(self, user_id: str, reason: str) -> Awaitable[None]: ...
    def idle_seconds(self, user_id: str) -> float | None: ...
    def handle_for(self, user_id: str) -> ChannelHandle | None: ...


class TaskRepo(Protocol):
    # Users / linking
    def add_user(self, user: User) -> None: ...
    def get_user(self, user_id: str) -> User | None: ...
    def get_user_by_name(self, name: str) -> User | None: ...
    def get_user_by_code(self, code: str) -> User | None: ...
    def link_dependent(self, dependent_id: str, guardian_id: str) -> bool: ...
    def list_dependents(self, guardian_id: str) -> list[User]: ...

    # Tasks
    def insert_task_if_absent(self, task: Task) -> bool: ...
    def get_task(self, task_id: str) -> Task | None: ...
    def list_tasks_for_guardian(self, guardian_id: str) -> list[Task]: ...
    def list_tasks_for_dependent(self, dependent_id: str) -> list[Task]: ...
    def update_task_status(self, task_id: str, status: TaskStatus, last_updated: str) -> None: ...
    def delete_task(self, task_id: str) -> bool: ...

    # Reminder scan
    def list_reminder_candidates(self, *, dates: list[str]) -> list[Task]: ...


class LocalTaskStore(Protocol):
    """Per-device durable mirror + pending-change queue."""

    def put(self, task: Task) -> None: ...
    def get(self, task_id: str) -> Task | None: ...
    def get_all(self, dependent_id: str | None = None) -> list[Task]: ...
    def delete(self, task_id: str) -> None: ...
    def enqueue_change(self, change: PendingChange) -> int: ...
    def list_pending_changes(self) -> list[PendingChange]: ...
    def remove_pending_change(self, sequence_id: int) -> None: ...
    def clear_pending_changes(self) -> None: ...
    def count_pending_changes(self) -> int: ...


class AuthorityClient(Protocol):
    """
    Client-side view of the Task Authority (REST in production).

    Implementations raise the typed errors from core.errors; transport
    failures surface as ConnectivityError.
    """

    def create_task(self, payload: dict[str, Any]) -> Awaitable[Task]: ...
    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        last_updated: str | None = None,
        force: bool = False,
    ) -> Awaitable[Task]: ...
    def delete_task(self, task_id: str) -> Awaitable[None]: ...
    def list_tasks(self, role: str) -> Awaitable[list[Task]]: ...
