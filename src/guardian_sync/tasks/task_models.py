# src/guardian_sync/tasks/task_models.py

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: Any) -> TaskStatus | None:
        """Strict parse; None for anything outside the enum."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw))
        except ValueError:
            return None


class Role(StrEnum):
    GUARDIAN = "guardian"
    DEPENDENT = "dependent"


class ChangeKind(StrEnum):
    CREATE = "create"
    STATUS_UPDATE = "statusUpdate"
    DELETE = "delete"


# ---- timestamps ----


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """ISO-8601 UTC with microseconds, e.g. 2025-01-01T09:00:00.000000Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_ts(raw: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. Naive values are taken as UTC.

    Raises ValueError on malformed input.
    """
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_uuid(raw: Any) -> bool:
    try:
        uuid.UUID(str(raw))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def new_id() -> str:
    return str(uuid.uuid4())


def is_valid_date(raw: Any) -> bool:
    if not isinstance(raw, str) or not _DATE_RE.match(raw):
        return False
    try:
        datetime.strptime(raw, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def is_valid_time(raw: Any) -> bool:
    if not isinstance(raw, str) or not _TIME_RE.match(raw):
        return False
    try:
        datetime.strptime(raw, "%H:%M")
    except ValueError:
        return False
    return True


# ---- records ----


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str
    date: str
    time: str
    status: TaskStatus
    guardian_id: str
    dependent_id: str
    created_at: str | None = None
    # Stamped by the authority only; None for a task not yet acknowledged.
    last_updated: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "date": self.date,
            "time": self.time,
            "status": self.status.value,
            "guardianId": self.guardian_id,
            "dependentId": self.dependent_id,
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        status = TaskStatus.parse(data.get("status")) or TaskStatus.PENDING
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            date=str(data.get("date") or ""),
            time=str(data.get("time") or ""),
            status=status,
            guardian_id=str(data.get("guardianId") or ""),
            dependent_id=str(data.get("dependentId") or ""),
            created_at=data.get("createdAt"),
            last_updated=data.get("lastUpdated"),
        )


@dataclass(slots=True)
class User:
    id: str
    name: str
    password_hash: str
    role: Role
    code: str | None = None
    guardian_id: str | None = None

    def public_dict(self, *, with_code: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "role": self.role.value}
        if with_code and self.role == Role.DEPENDENT:
            out["code"] = self.code
        return out


@dataclass(slots=True)
class PendingChange:
    """
    A locally queued mutation awaiting replay.

    sequence_id is assigned by the local store on enqueue and defines replay order.
    captured_at is the client's claimed lastUpdated for status updates.
    """

    kind: ChangeKind
    payload: dict[str, Any]
    captured_at: str
    sequence_id: int | None = None

    @property
    def task_id(self) -> str | None:
        raw = self.payload.get("id") or self.payload.get("taskId")
        return str(raw) if raw else None


@dataclass(slots=True)
class Conflict:
    """What the user is shown when the authority rejects a stale update."""

    task_id: str
    attempted_status: TaskStatus
    current_status: str
    current_version: str | None
