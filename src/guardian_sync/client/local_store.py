# src/guardian_sync/client/local_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..core.errors import StoreUnavailableError
from ..tasks.task_models import ChangeKind, PendingChange, Task, TaskStatus

logger = logging.getLogger(__name__)


class LocalStore:
    """
    Per-device durable store: the task mirror and the pending-change queue.

    - tasks: keyed by task id, indexed by dependent_id and status
    - pending_changes: append-only, AUTOINCREMENT sequence defines replay order

    Each call is atomic on its own (one short-lived connection, one commit).
    Failures raise StoreUnavailableError; nothing is dropped silently.
    """

    def __init__(self, db_path: str | Path = "client.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info(
            "LocalStore ready db=%s pending=%s", self._db_path, self.count_pending_changes()
        )

    # ---- low-level helpers ----

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"local store unavailable: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.Error as e:
            logger.exception("LocalStore operation failed db=%s", self._db_path)
            raise StoreUnavailableError(f"local store error: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    dependent_id TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'pending',
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_changes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    captured_at TEXT NOT NULL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_local_tasks_dependent ON tasks(dependent_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_local_tasks_status ON tasks(status)")
            conn.commit()

    @staticmethod
    def _payload_to_str(payload: dict[str, Any]) -> str:
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    @staticmethod
    def _row_to_change(row: sqlite3.Row) -> PendingChange:
        payload = json.loads(row["payload"])
        return PendingChange(
            kind=ChangeKind(row["kind"]),
            payload=payload if isinstance(payload, dict) else {},
            captured_at=str(row["captured_at"]),
            sequence_id=int(row["seq"]),
        )

    # ---- task mirror ----

    def put(self, task: Task) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO tasks(id, dependent_id, status, data)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    dependent_id = excluded.dependent_id,
                    status = excluded.status,
                    data = excluded.data
                """,
                (task.id, task.dependent_id, task.status.value, json.dumps(task.to_dict())),
            )
            conn.commit()

    def get(self, task_id: str) -> Task | None:
        with self._conn() as conn:
            row = conn.execute("SELECT data FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return Task.from_dict(json.loads(row["data"])) if row else None

    def get_all(self, dependent_id: str | None = None) -> list[Task]:
        with self._conn() as conn:
            if dependent_id:
                rows = conn.execute(
                    "SELECT data FROM tasks WHERE dependent_id = ?", (dependent_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT data FROM tasks").fetchall()
            return [Task.from_dict(json.loads(r["data"])) for r in rows]

    def get_by_status(self, status: TaskStatus) -> list[Task]:
        with self._conn() as conn:
            rows = conn.execute("SELECT data FROM tasks WHERE status = ?", (status.value,)).fetchall()
            return [Task.from_dict(json.loads(r["data"])) for r in rows]

    def delete(self, task_id: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()

    # ---- pending-change queue ----

    def enqueue_change(self, change: PendingChange) -> int:
        """Append to the queue; returns (and sets) the sequence id once committed."""
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT INTO pending_changes(kind, payload, captured_at) VALUES (?, ?, ?)",
                (change.kind.value, self._payload_to_str(change.payload), change.captured_at),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise StoreUnavailableError("SQLite did not return lastrowid for pending change insert")
        change.sequence_id = int(rowid)
        logger.debug("Queued change seq=%s kind=%s", change.sequence_id, change.kind.value)
        return change.sequence_id

    def list_pending_changes(self) -> list[PendingChange]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM pending_changes ORDER BY seq ASC").fetchall()
            return [self._row_to_change(r) for r in rows]

    def remove_pending_change(self, sequence_id: int) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM pending_changes WHERE seq = ?", (int(sequence_id),))
            conn.commit()

    def clear_pending_changes(self) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM pending_changes")
            conn.commit()

    def count_pending_changes(self) -> int:
        with self._conn() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM pending_changes").fetchone()
            return int(n)
