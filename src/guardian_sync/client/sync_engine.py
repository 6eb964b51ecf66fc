# src/guardian_sync/client/sync_engine.py

from __future__ import annotations

"""
Client sync engine: local-first writes, offline queue, replay, merge.

Write path
    Every mutation hits the local store first, unconditionally. Online with an
    empty queue, it is then sent to the authority; otherwise (or when the send
    fails for connectivity reasons) it is appended to the pending-change queue
    with a capture timestamp, behind whatever is already waiting.

Fetch/merge path
    Union on id. Server fields win, except `status`, which is kept from the
    local cache whenever the cache holds that id. This protects an optimistic
    local status edit from a stale snapshot (and accepts the reverse risk).

Replay
    Strictly in capture order, one request at a time. A change is removed only
    after the authority acknowledged it. A status change claims its capture
    time, or the version the authority returned for an earlier change to the
    same task in this run. The first non-conflict failure halts replay and
    leaves the change (and everything after it) queued. A conflict goes to the
    injected resolver; without one (or with resolve=False), replay halts on it.

Conflicts
    Never merged automatically. The resolver (a human, in the UI) picks
    ACCEPT_AUTHORITY (reconcile the cache) or FORCE (reissue with force=True).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from ..core.errors import (
    AuthorizationError,
    ConflictError,
    ConnectivityError,
    GuardianSyncError,
    NotFoundError,
    ValidationError,
)
from ..core.events import EventType
from ..core.ports import AuthorityClient, LocalTaskStore, Message
from ..tasks.task_models import (
    ChangeKind,
    Conflict,
    PendingChange,
    Role,
    Task,
    TaskStatus,
    format_ts,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class Resolution(StrEnum):
    ACCEPT_AUTHORITY = "accept_authority"
    FORCE = "force"


ConflictResolver = Callable[[Conflict], Awaitable[Resolution]]
ReminderCallback = Callable[[Message], None]


@dataclass(slots=True)
class ReplayReport:
    applied: int = 0
    remaining: int = 0
    halted: bool = False
    error: Exception | None = None
    conflict: Conflict | None = None


def merge_tasks(local: list[Task], server: list[Task]) -> list[Task]:
    """
    Union on id; server fields preferred, except status, preferred from local.

    Local-only tasks (e.g. created offline, not yet replayed) are kept.
    """
    local_by_id = {t.id: t for t in local}
    merged: dict[str, Task] = {}

    for s in server:
        cached = local_by_id.get(s.id)
        merged[s.id] = replace(s, status=cached.status) if cached is not None else s

    for t in local:
        if t.id not in merged:
            merged[t.id] = t

    return list(merged.values())


class SyncEngine:
    def __init__(
        self,
        store: LocalTaskStore,
        authority: AuthorityClient,
        *,
        role: str,
        user_id: str,
        is_online: Callable[[], bool],
        resolver: ConflictResolver | None = None,
        on_reminder: ReminderCallback | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._authority = authority
        self.role = Role(role)
        self.user_id = user_id
        self._is_online = is_online
        self._resolver = resolver
        self._on_reminder = on_reminder
        self._clock = clock
        self._replay_lock = asyncio.Lock()

    # ---- helpers ----

    def _now(self) -> str:
        return format_ts(self._clock())

    def _enqueue(self, kind: ChangeKind, payload: dict) -> PendingChange:
        change = PendingChange(kind=kind, payload=payload, captured_at=self._now())
        self._store.enqueue_change(change)
        logger.info("Queued %s seq=%s task=%s", kind.value, change.sequence_id, change.task_id)
        return change

    def _keep_local_status(self, server_task: Task) -> Task:
        cached = self._store.get(server_task.id)
        if cached is None:
            return server_task
        return replace(server_task, status=cached.status)

    def _can_send(self) -> bool:
        """Online and nothing queued: a direct send cannot overtake a queued change."""
        return self._is_online() and self._store.count_pending_changes() == 0

    def pending_count(self) -> int:
        return self._store.count_pending_changes()

    def tasks(self, dependent_id: str | None = None) -> list[Task]:
        return self._store.get_all(dependent_id)

    # ---- write path ----

    async def create_task(
        self,
        *,
        title: str,
        date: str,
        time: str,
        dependent_id: str,
        description: str = "",
    ) -> Task:
        """
        Create a task with a client-assigned id, so a replayed create is a no-op
        on the authority if the first attempt actually landed.
        """
        if self.role != Role.GUARDIAN:
            raise AuthorizationError("Only a guardian can create tasks")

        task = Task(
            id=new_id(),
            title=title.strip(),
            description=description.strip(),
            date=date,
            time=time,
            status=TaskStatus.PENDING,
            guardian_id=self.user_id,
            dependent_id=dependent_id,
            created_at=self._now(),
            last_updated=None,
        )
        payload = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "date": task.date,
            "time": task.time,
            "dependentId": task.dependent_id,
        }

        self._store.put(task)

        if self._can_send():
            try:
                stored = await self._authority.create_task(payload)
            except ConnectivityError:
                logger.info("Create task=%s failed to reach the server; queueing", task.id)
            except (ValidationError, AuthorizationError, NotFoundError):
                self._store.delete(task.id)
                raise
            else:
                self._store.put(stored)
                return stored

        self._enqueue(ChangeKind.CREATE, payload)
        return task

    async def change_status(self, task_id: str, status: TaskStatus | str) -> Task:
        new_status = TaskStatus.parse(status)
        if new_status is None:
            raise ValidationError("Invalid task status")

        cached = self._store.get(task_id)
        if cached is None:
            raise NotFoundError("Task not found in local cache")

        self._store.put(replace(cached, status=new_status))

        if self._can_send():
            try:
                result = await self._authority.update_status(
                    task_id, new_status, last_updated=cached.last_updated
                )
            except ConflictError as e:
                conflict = Conflict(
                    task_id=task_id,
                    attempted_status=new_status,
                    current_status=e.current_status,
                    current_version=e.current_version,
                )
                resolved = await self._resolve(conflict)
                if resolved is None:
                    self._store.put(cached)
                    raise
                return resolved
            except ConnectivityError:
                logger.info("Status change task=%s failed to reach the server; queueing", task_id)
            except (ValidationError, AuthorizationError, NotFoundError):
                self._store.put(cached)
                raise
            else:
                self._store.put(result)
                return result

        self._enqueue(
            ChangeKind.STATUS_UPDATE,
            {
                "taskId": task_id,
                "status": new_status.value,
                # What the client had seen; None means the task was never acknowledged.
                "basis": cached.last_updated,
            },
        )
        return replace(cached, status=new_status)

    async def delete_task(self, task_id: str) -> None:
        if self.role != Role.GUARDIAN:
            raise AuthorizationError("Only a guardian can delete tasks")

        cached = self._store.get(task_id)
        self._store.delete(task_id)

        if self._can_send():
            try:
                await self._authority.delete_task(task_id)
                return
            except NotFoundError:
                return
            except ConnectivityError:
                logger.info("Delete task=%s failed to reach the server; queueing", task_id)
            except (ValidationError, AuthorizationError):
                if cached is not None:
                    self._store.put(cached)
                raise

        self._enqueue(ChangeKind.DELETE, {"taskId": task_id})

    # ---- conflicts ----

    async def _resolve(self, conflict: Conflict) -> Task | None:
        if self._resolver is None:
            return None
        choice = await self._resolver(conflict)
        return await self.apply_resolution(conflict, choice)

    async def apply_resolution(self, conflict: Conflict, resolution: Resolution) -> Task | None:
        """Carry out the user's choice for a conflict. Returns the resulting cached task."""
        if resolution == Resolution.FORCE:
            result = await self._authority.update_status(
                conflict.task_id, conflict.attempted_status, force=True
            )
            self._store.put(result)
            logger.info("Conflict task=%s forced -> %s", conflict.task_id, result.status.value)
            return result

        cached = self._store.get(conflict.task_id)
        if cached is None:
            return None
        reconciled = replace(
            cached,
            status=TaskStatus.parse(conflict.current_status) or cached.status,
            last_updated=conflict.current_version or cached.last_updated,
        )
        self._store.put(reconciled)
        logger.info("Conflict task=%s reconciled to authority status=%s", conflict.task_id, reconciled.status.value)
        return reconciled

    # ---- replay ----

    async def _send_change(self, change: PendingChange, acked: dict[str, str]) -> Task | None:
        """Send one queued change. `acked` maps task ids to versions acknowledged earlier in this run."""
        payload = change.payload

        if change.kind == ChangeKind.CREATE:
            stored = await self._authority.create_task(payload)
            self._store.put(self._keep_local_status(stored))
            return stored

        if change.kind == ChangeKind.STATUS_UPDATE:
            task_id = str(payload["taskId"])
            claimed = acked.get(task_id)
            if claimed is None and payload.get("basis"):
                claimed = change.captured_at
            result = await self._authority.update_status(
                task_id, TaskStatus(payload["status"]), last_updated=claimed
            )
            self._store.put(self._keep_local_status(result))
            return result

        if change.kind == ChangeKind.DELETE:
            try:
                await self._authority.delete_task(str(payload["taskId"]))
            except NotFoundError:
                logger.info("Replayed delete task=%s: already gone", payload["taskId"])
            return None

        raise ValidationError(f"Unknown change kind {change.kind!r}")

    async def replay(self, *, resolve: bool = True) -> ReplayReport:
        """
        Replay queued changes in sequence order, awaiting each acknowledgement.

        With resolve=False a conflict halts replay instead of reaching the
        resolver (background runs must not prompt). Concurrent calls are
        serialized; the second one sees whatever the first left.
        """
        async with self._replay_lock:
            report = ReplayReport()
            acked: dict[str, str] = {}

            for change in self._store.list_pending_changes():
                try:
                    result = await self._send_change(change, acked)
                except ConflictError as e:
                    conflict = Conflict(
                        task_id=str(change.payload.get("taskId")),
                        attempted_status=TaskStatus(change.payload["status"]),
                        current_status=e.current_status,
                        current_version=e.current_version,
                    )
                    try:
                        result = await self._resolve(conflict) if resolve else None
                    except GuardianSyncError as err:
                        logger.warning("Replay halted at seq=%s while resolving conflict: %s", change.sequence_id, err)
                        report.halted, report.error = True, err
                        break
                    if result is None:
                        logger.info("Replay halted at seq=%s: unresolved conflict", change.sequence_id)
                        report.halted, report.error, report.conflict = True, e, conflict
                        break
                except GuardianSyncError as e:
                    logger.warning(
                        "Replay halted at seq=%s kind=%s: %s", change.sequence_id, change.kind.value, e
                    )
                    report.halted, report.error = True, e
                    break

                if result is not None and result.last_updated:
                    acked[result.id] = result.last_updated
                if change.sequence_id is not None:
                    self._store.remove_pending_change(change.sequence_id)
                report.applied += 1

            report.remaining = self._store.count_pending_changes()
            if report.applied or report.halted:
                logger.info(
                    "Replay done applied=%s remaining=%s halted=%s",
                    report.applied,
                    report.remaining,
                    report.halted,
                )
            return report

    def discard_change(self, sequence_id: int) -> None:
        """Drop a queued change the authority keeps rejecting (user decision)."""
        self._store.remove_pending_change(sequence_id)
        logger.info("Discarded queued change seq=%s", sequence_id)

    # ---- fetch / merge ----

    async def refresh(self) -> list[Task]:
        """Fetch the role's task list and merge it into the cache."""
        server_tasks = await self._authority.list_tasks(self.role.value)
        merged = merge_tasks(self._store.get_all(), server_tasks)
        for task in merged:
            self._store.put(task)
        return merged

    async def sync(self, *, resolve: bool = True) -> ReplayReport:
        """Reconnect routine: replay the queue, then refresh if replay went through."""
        report = await self.replay(resolve=resolve)
        if not report.halted:
            await self.refresh()
        return report

    # ---- inbound events ----

    async def handle_event(self, message: Message) -> None:
        """Merge a notification-channel frame. Unknown kinds are ignored."""
        kind = message.get("type")

        if kind == EventType.TASK_STATUS_CHANGED:
            task_id = str(message.get("taskId") or "")
            new_status = TaskStatus.parse(message.get("newStatus"))
            cached = self._store.get(task_id) if task_id else None
            if cached is None or new_status is None:
                return
            self._store.put(
                replace(
                    cached,
                    status=new_status,
                    last_updated=message.get("timestamp") or cached.last_updated,
                )
            )
            return

        if kind == EventType.TASK_DELETED:
            task_id = str(message.get("taskId") or "")
            if task_id:
                self._store.delete(task_id)
            return

        if kind == EventType.NEW_TASK:
            try:
                await self.refresh()
            except GuardianSyncError:
                logger.warning("Refresh after new_task failed; the poll will catch up", exc_info=True)
            return

        if kind == EventType.TASK_REMINDER:
            if self._on_reminder is not None:
                self._on_reminder(message)
            return

        # connection_established, ping, pong and anything newer: nothing to merge.
        logger.debug("Ignoring channel frame type=%s", kind)
