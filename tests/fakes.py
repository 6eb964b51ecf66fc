# tests/fakes.py

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from guardian_sync.core.errors import ConnectivityError
from guardian_sync.core.ports import Message
from guardian_sync.tasks.task_authority import TaskAuthority
from guardian_sync.tasks.task_models import Task, TaskStatus, User


class FrozenClock:
    """Manually advanced UTC clock shared by the authority, the engines and the scheduler."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass(slots=True)
class FakeHandle:
    """ChannelHandle that records frames and closes."""

    sent: list[Message] = field(default_factory=list)
    closed: tuple[int, str] | None = None
    fail_sends: bool = False

    async def send_json(self, data: Message) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


@dataclass(slots=True)
class FakeEventSink:
    """
    EventSink for authority/scheduler tests.

    Only users in `connected` receive frames; every delivered frame is recorded.
    """

    connected: set[str] = field(default_factory=set)
    sent: list[tuple[str, Message]] = field(default_factory=list)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.connected

    async def send_to(self, user_id: str, message: Message) -> bool:
        if user_id not in self.connected:
            return False
        self.sent.append((user_id, message))
        return True

    def types_for(self, user_id: str) -> list[str]:
        return [m["type"] for uid, m in self.sent if uid == user_id]


class InProcessAuthorityClient:
    """
    AuthorityClient that calls a TaskAuthority directly as a fixed user.

    - online=False makes every call raise ConnectivityError (request never lands)
    - lose_next_ack=True applies the next call, then raises ConnectivityError
      (request landed, response lost)
    """

    def __init__(self, authority: TaskAuthority, user: User, *, online: bool = True) -> None:
        self.authority = authority
        self.user = user
        self.online = online
        self.lose_next_ack = False
        self.calls: list[tuple[str, Any]] = []

    def _gate(self) -> None:
        if not self.online:
            raise ConnectivityError("offline")

    def _ack(self, result: Any) -> Any:
        if self.lose_next_ack:
            self.lose_next_ack = False
            raise ConnectivityError("response lost")
        return result

    async def create_task(self, payload: dict[str, Any]) -> Task:
        self._gate()
        self.calls.append(("create", payload.get("id")))
        task, _created = await self.authority.create_task(self.user, dict(payload))
        return self._ack(replace(task))

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        last_updated: str | None = None,
        force: bool = False,
    ) -> Task:
        self._gate()
        self.calls.append(("status", (task_id, TaskStatus(status).value, last_updated, force)))
        task = await self.authority.update_status(
            self.user, task_id, status, last_updated=last_updated, force=force
        )
        return self._ack(replace(task))

    async def delete_task(self, task_id: str) -> None:
        self._gate()
        self.calls.append(("delete", task_id))
        await self.authority.delete_task(self.user, task_id)
        self._ack(None)

    async def list_tasks(self, role: str) -> list[Task]:
        self._gate()
        return [replace(t) for t in self.authority.list_tasks(self.user, role)]


def task_payload(dependent_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Take medication",
        "description": "Blue pill",
        "date": "2025-01-01",
        "time": "08:20",
        "dependentId": dependent_id,
    }
    payload.update(overrides)
    return payload
