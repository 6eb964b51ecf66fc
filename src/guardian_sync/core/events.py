# src/guardian_sync/core/events.py

"""Notification channel frames. Every frame is a JSON object with a "type"."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from ..tasks.task_models import Task, format_ts, utc_now

Message = dict[str, Any]


class EventType(StrEnum):
    CONNECTION_ESTABLISHED = "connection_established"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_REMINDER = "task_reminder"
    NEW_TASK = "new_task"
    TASK_DELETED = "task_deleted"
    PING = "ping"
    PONG = "pong"


def _frame(kind: EventType, **fields: Any) -> Message:
    out: Message = {"type": kind.value}
    out.update(fields)
    out.setdefault("timestamp", format_ts(utc_now()))
    return out


def connection_established(user_id: str, role: str) -> Message:
    return _frame(
        EventType.CONNECTION_ESTABLISHED,
        message="Connection established",
        userId=user_id,
        role=role,
    )


def task_status_changed(task: Task, *, changed_by: str) -> Message:
    # timestamp is the authority's version, so clients can store it as lastUpdated.
    return _frame(
        EventType.TASK_STATUS_CHANGED,
        taskId=task.id,
        newStatus=task.status.value,
        userId=changed_by,
        timestamp=task.last_updated,
    )


def _describe(task: Task) -> str:
    lines = [task.title]
    if task.description:
        lines.append(f"Description: {task.description}")
    return "\n".join(lines)


def new_task(task: Task) -> Message:
    body = f"You have a new task:\n{_describe(task)}\nDate: {task.date}\nTime: {task.time}"
    return _frame(EventType.NEW_TASK, taskId=task.id, title="New task", body=body)


def task_reminder(task: Task) -> Message:
    body = f"Task coming up soon:\n{_describe(task)}\nTime: {task.time}"
    return _frame(EventType.TASK_REMINDER, taskId=task.id, title="Task reminder", body=body)


def task_deleted(task: Task) -> Message:
    body = f'Task "{task.title}" was deleted by the guardian'
    return _frame(EventType.TASK_DELETED, taskId=task.id, title="Task deleted", body=body)


def ping() -> Message:
    return _frame(EventType.PING)


def pong(timestamp: Any = None) -> Message:
    if timestamp is None:
        return _frame(EventType.PONG)
    return _frame(EventType.PONG, timestamp=timestamp)
