# src/guardian_sync/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from ..core.errors import AlreadyExistsError, StoreUnavailableError
from ..tasks.task_models import Role, Task, TaskStatus, User, format_ts, utc_now

logger = logging.getLogger(__name__)


class TaskStore:
    """
    SQLite store of record for users and tasks (server side).

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection

    Only the Task Authority writes task rows; everything else reads.
    """

    def __init__(self, db_path: str | Path = "server.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except StoreUnavailableError:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"task store unavailable: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.exception("TaskStore operation failed db=%s", self._db_path)
            raise StoreUnavailableError(f"task store error: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._conn() as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    password TEXT NOT NULL,
                    role TEXT NOT NULL,
                    code TEXT,
                    guardian_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    date TEXT,
                    time TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    guardian_id TEXT NOT NULL,
                    dependent_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_updated TEXT NOT NULL,
                    FOREIGN KEY (guardian_id) REFERENCES users(id),
                    FOREIGN KEY (dependent_id) REFERENCES users(id)
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("last_updated", "TEXT NOT NULL DEFAULT ''")

            cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_users_code ON users(code)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_users_guardian ON users(guardian_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_guardian ON tasks(guardian_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_dependent ON tasks(dependent_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_status ON tasks(status, date, time)")

            conn.commit()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=str(row["id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            date=str(row["date"] or ""),
            time=str(row["time"] or ""),
            status=TaskStatus.parse(row["status"]) or TaskStatus.PENDING,
            guardian_id=str(row["guardian_id"]),
            dependent_id=str(row["dependent_id"]),
            created_at=row["created_at"],
            last_updated=row["last_updated"] or None,
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=str(row["id"]),
            name=str(row["name"]),
            password_hash=str(row["password"]),
            role=Role(row["role"]),
            code=row["code"],
            guardian_id=row["guardian_id"],
        )

    # ---- users ----

    def add_user(self, user: User) -> None:
        with self._conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users(id, name, password, role, code, guardian_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.id,
                        user.name,
                        user.password_hash,
                        user.role.value,
                        user.code,
                        user.guardian_id,
                        format_ts(utc_now()),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise AlreadyExistsError("A user with this name already exists") from e
        logger.debug("User added id=%s role=%s", user.id, user.role.value)

    def get_user(self, user_id: str) -> User | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_name(self, name: str) -> User | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_code(self, code: str) -> User | None:
        if not code:
            return None
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE code = ? AND role = ?",
                (code, Role.DEPENDENT.value),
            ).fetchone()
            return self._row_to_user(row) if row else None

    def link_dependent(self, dependent_id: str, guardian_id: str) -> bool:
        """
        Set guardian_id once. Returns False if the dependent is already linked
        (to anyone) by the time the UPDATE runs.
        """
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE users SET guardian_id = ? WHERE id = ? AND guardian_id IS NULL",
                (guardian_id, dependent_id),
            )
            conn.commit()
            return cur.rowcount == 1

    def list_dependents(self, guardian_id: str) -> list[User]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE guardian_id = ? ORDER BY name ASC",
                (guardian_id,),
            ).fetchall()
            return [self._row_to_user(r) for r in rows]

    # ---- tasks ----

    def count_tasks(self) -> int:
        with self._conn() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def insert_task_if_absent(self, task: Task) -> bool:
        """
        Put-semantics insert: a row with the same id is left untouched.
        Returns True only if a new row was written.
        """
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO tasks(
                    id, title, description, date, time, status,
                    guardian_id, dependent_id, created_at, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.title,
                    task.description,
                    task.date,
                    task.time,
                    task.status.value,
                    task.guardian_id,
                    task.dependent_id,
                    task.created_at,
                    task.last_updated or "",
                ),
            )
            conn.commit()
            inserted = cur.rowcount == 1
        logger.debug("Task put id=%s inserted=%s", task.id, inserted)
        return inserted

    def get_task(self, task_id: str) -> Task | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks_for_guardian(self, guardian_id: str) -> list[Task]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE guardian_id = ? ORDER BY created_at DESC",
                (guardian_id,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_tasks_for_dependent(self, dependent_id: str) -> list[Task]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE dependent_id = ? ORDER BY created_at DESC",
                (dependent_id,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def update_task_status(self, task_id: str, status: TaskStatus, last_updated: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE tasks SET status = ?, last_updated = ? WHERE id = ?",
                (status.value, last_updated, task_id),
            )
            conn.commit()

    def delete_task(self, task_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
            return cur.rowcount == 1

    def list_reminder_candidates(self, *, dates: list[str]) -> list[Task]:
        """
        Not-completed tasks scheduled on any of the given calendar dates.

        The exact due-window check happens in the scheduler (it is timezone-aware).
        """
        if not dates:
            return []
        placeholders = ",".join("?" for _ in dates)
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM tasks
                WHERE status != 'completed'
                  AND date IN ({placeholders})
                  AND time IS NOT NULL AND time != ''
                ORDER BY date ASC, time ASC
                """,
                tuple(dates),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
