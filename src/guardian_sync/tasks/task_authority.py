# src/guardian_sync/tasks/task_authority.py

from __future__ import annotations

"""
Task Authority: the only write path for task rows.

Every mutation goes through here:
- validate input (status enum, uuid ids, timestamps, date/time shape),
- authorize the requester against the task's parties,
- detect stale status updates (claimed lastUpdated < stored lastUpdated),
- stamp a fresh, per-task monotonic lastUpdated,
- persist, then push the resulting change to connected parties.

Authorization reads and the write run together in a worker thread, one
mutation at a time. Writers outside this process are not coordinated.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from ..core import events
from ..core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ..core.ports import EventSink, Message, TaskRepo
from .task_models import (
    Role,
    Task,
    TaskStatus,
    User,
    format_ts,
    is_uuid,
    is_valid_date,
    is_valid_time,
    new_id,
    parse_ts,
    utc_now,
)

logger = logging.getLogger(__name__)

_ONE_TICK = timedelta(microseconds=1)


class TaskAuthority:
    def __init__(
        self,
        repo: TaskRepo,
        events_sink: EventSink | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repo
        self._events = events_sink
        self._clock = clock
        self._write_lock = asyncio.Lock()

    # ---- helpers ----

    def _next_version(self, previous: str | None) -> str:
        """Fresh lastUpdated, strictly after the previous one even if the clock stalls or steps back."""
        now = self._clock()
        if previous:
            try:
                prev_dt = parse_ts(previous)
            except ValueError:
                prev_dt = None
            if prev_dt is not None and now <= prev_dt:
                now = prev_dt + _ONE_TICK
        return format_ts(now)

    @staticmethod
    def _require_task_id(task_id: Any) -> str:
        if not is_uuid(task_id):
            raise ValidationError("Invalid task id format")
        return str(task_id)

    async def _notify(self, user_id: str, message: Message) -> None:
        if self._events is None or not user_id:
            return
        try:
            await self._events.send_to(user_id, message)
        except Exception:
            # Delivery is best effort; the poll path catches the client up.
            logger.exception("Event delivery failed user=%s type=%s", user_id, message.get("type"))

    # ---- reads ----

    def list_tasks(self, requester: User, role: str) -> list[Task]:
        if requester.role.value != role:
            raise AuthorizationError("Access denied")
        if requester.role == Role.GUARDIAN:
            return self._repo.list_tasks_for_guardian(requester.id)
        return self._repo.list_tasks_for_dependent(requester.id)

    # ---- mutations ----
    #
    # Each mutation's check-and-write runs in a worker thread, one at a time,
    # so SQLite never blocks the event loop and versions stay monotonic.
    # Notifications go out on the loop after the write.

    async def _write(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._write_lock:
            return await asyncio.to_thread(fn, *args)

    async def create_task(self, requester: User, payload: dict[str, Any]) -> tuple[Task, bool]:
        """
        Create a task for a linked dependent.

        Put-semantics: if `payload["id"]` names an existing task of this guardian,
        nothing is written and the stored task is returned with created=False.
        Replaying the same create twice therefore yields one task.
        """
        if requester.role != Role.GUARDIAN:
            raise AuthorizationError("Only a guardian can create tasks")

        title = str(payload.get("title") or "").strip()
        description = str(payload.get("description") or "").strip()
        date = payload.get("date")
        time_ = payload.get("time")
        dependent_id = str(payload.get("dependentId") or "")

        if not title:
            raise ValidationError("title is required")
        if not is_valid_date(date):
            raise ValidationError("date must be YYYY-MM-DD")
        if not is_valid_time(time_):
            raise ValidationError("time must be HH:MM")
        if not dependent_id:
            raise ValidationError("dependentId is required")

        raw_id = payload.get("id")
        task_id = self._require_task_id(raw_id) if raw_id else new_id()

        draft = Task(
            id=task_id,
            title=title,
            description=description,
            date=str(date),
            time=str(time_),
            status=TaskStatus.PENDING,
            guardian_id=requester.id,
            dependent_id=dependent_id,
        )
        task, created = await self._write(self._insert_task, requester, draft)
        if created:
            logger.info("Task created id=%s guardian=%s dependent=%s", task.id, requester.id, task.dependent_id)
            await self._notify(task.dependent_id, events.new_task(task))
        return task, created

    def _insert_task(self, requester: User, draft: Task) -> tuple[Task, bool]:
        existing = self._repo.get_task(draft.id)
        if existing is not None:
            if existing.guardian_id != requester.id:
                raise AuthorizationError("No access to this task")
            logger.info("Create replay for existing task id=%s; no-op", draft.id)
            return existing, False

        dependent = self._repo.get_user(draft.dependent_id)
        if (
            dependent is None
            or dependent.role != Role.DEPENDENT
            or dependent.guardian_id != requester.id
        ):
            raise AuthorizationError("No access to this dependent")

        stamp = self._next_version(None)
        draft.created_at = stamp
        draft.last_updated = stamp

        if not self._repo.insert_task_if_absent(draft):
            stored = self._repo.get_task(draft.id)
            if stored is None:
                raise NotFoundError("Task not found")
            return stored, False
        return draft, True

    async def update_status(
        self,
        requester: User,
        task_id: Any,
        status: Any,
        *,
        last_updated: Any = None,
        force: bool = False,
    ) -> Task:
        """
        Change a task's status.

        Accepted unconditionally when `last_updated` is None or `force` is set.
        Otherwise rejected with ConflictError when the claimed lastUpdated
        predates the stored one.
        """
        tid = self._require_task_id(task_id)
        new_status = TaskStatus.parse(status)
        if new_status is None:
            raise ValidationError("Invalid task status")

        claimed: datetime | None = None
        if last_updated is not None and last_updated != "":
            try:
                claimed = parse_ts(str(last_updated))
            except ValueError as e:
                raise ValidationError("Invalid lastUpdated format") from e

        task = await self._write(self._apply_status, requester, tid, new_status, claimed, force)
        logger.info(
            "Task %s -> %s by=%s force=%s version=%s", tid, new_status.value, requester.id, force, task.last_updated
        )

        message = events.task_status_changed(task, changed_by=requester.id)
        for party in (task.guardian_id, task.dependent_id):
            await self._notify(party, message)
        return task

    def _apply_status(
        self,
        requester: User,
        tid: str,
        new_status: TaskStatus,
        claimed: datetime | None,
        force: bool,
    ) -> Task:
        task = self._repo.get_task(tid)
        if task is None:
            raise NotFoundError("Task not found")
        if requester.id not in (task.guardian_id, task.dependent_id):
            raise AuthorizationError("No access to this task")

        if not force and claimed is not None and task.last_updated:
            stored = parse_ts(task.last_updated)
            if claimed < stored:
                logger.info(
                    "Conflict task=%s claimed=%s stored=%s current=%s",
                    tid,
                    format_ts(claimed),
                    task.last_updated,
                    task.status.value,
                )
                raise ConflictError(
                    "The task was changed by someone else",
                    current_status=task.status.value,
                    current_version=task.last_updated,
                    task_id=tid,
                )

        version = self._next_version(task.last_updated)
        self._repo.update_task_status(tid, new_status, version)
        task.status = new_status
        task.last_updated = version
        return task

    async def delete_task(self, requester: User, task_id: Any) -> Task:
        tid = self._require_task_id(task_id)
        if requester.role != Role.GUARDIAN:
            raise AuthorizationError("Only a guardian can delete tasks")

        task = await self._write(self._remove_task, requester, tid)
        logger.info("Task deleted id=%s by=%s", tid, requester.id)
        await self._notify(task.dependent_id, events.task_deleted(task))
        return task

    def _remove_task(self, requester: User, tid: str) -> Task:
        task = self._repo.get_task(tid)
        if task is None or task.guardian_id != requester.id:
            raise NotFoundError("Task not found or access denied")
        self._repo.delete_task(tid)
        return task
