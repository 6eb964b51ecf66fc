# src/guardian_sync/tasks/reminder_scheduler.py

from __future__ import annotations

"""
Reminder scheduler.

A small polling loop that, every interval:
- fetches not-completed tasks scheduled around today,
- keeps those whose date+time falls within [now, now + lookahead],
- pushes a task_reminder to the task's guardian and dependent if connected.

There is no durable reminder log. A party that stays disconnected for the
whole window gets no reminder for that occurrence. An in-memory marker keeps
a connected party from being reminded again every tick of the same window.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core import events
from ..core.ports import EventSink, TaskRepo
from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown reminder timezone %r; using UTC", name)
        return timezone.utc


def task_due_at(task: Task, tz: tzinfo) -> datetime | None:
    """Combined date+time as an aware datetime, or None if the task has no usable schedule."""
    if not task.date or not task.time:
        return None
    try:
        naive = datetime.strptime(f"{task.date} {task.time}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None
    return naive.replace(tzinfo=tz)


class ReminderScheduler:
    def __init__(
        self,
        repo: TaskRepo,
        sink: EventSink,
        *,
        lookahead_minutes: int = 30,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repo
        self._sink = sink
        self._lookahead = timedelta(minutes=max(1, int(lookahead_minutes)))
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # (task_id, user_id, due iso) already delivered within the current window.
        self._sent: set[tuple[str, str, str]] = set()
        self._running = False

    def _candidate_dates(self, now: datetime) -> list[str]:
        start = now.astimezone(self._tz).date()
        end = (now + self._lookahead).astimezone(self._tz).date()
        out = [start.isoformat()]
        if end != start:
            out.append(end.isoformat())
        return out

    def due_tasks(self, now: datetime) -> list[tuple[Task, datetime]]:
        horizon = now + self._lookahead
        out: list[tuple[Task, datetime]] = []
        for task in self._repo.list_reminder_candidates(dates=self._candidate_dates(now)):
            if task.status == TaskStatus.COMPLETED:
                continue
            due = task_due_at(task, self._tz)
            if due is None:
                continue
            if now <= due <= horizon:
                out.append((task, due))
        return out

    async def tick(self) -> int:
        """
        Run one scan. Returns the number of reminders delivered.

        Overlapping calls are skipped (returns 0) while a previous tick is running.
        """
        if self._running:
            logger.debug("Reminder tick skipped: previous tick still running")
            return 0

        self._running = True
        try:
            return await self._scan()
        finally:
            self._running = False

    async def _scan(self) -> int:
        now = self._clock()
        try:
            due = await asyncio.to_thread(self.due_tasks, now)
        except Exception:
            logger.exception("Reminder scan failed")
            return 0

        live_keys: set[tuple[str, str, str]] = set()
        delivered = 0

        for task, due_at in due:
            message = events.task_reminder(task)
            due_iso = due_at.isoformat()

            for user_id in (task.guardian_id, task.dependent_id):
                if not user_id:
                    continue
                key = (task.id, user_id, due_iso)
                live_keys.add(key)
                if key in self._sent:
                    continue
                if not self._sink.is_connected(user_id):
                    continue
                try:
                    ok = await self._sink.send_to(user_id, message)
                except Exception:
                    logger.exception("Reminder send failed task=%s user=%s", task.id, user_id)
                    continue
                if ok:
                    self._sent.add(key)
                    delivered += 1
                    logger.info("Reminder sent task=%s user=%s due=%s", task.id, user_id, due_iso)

        # Forget markers of tasks that left the window (done, deleted, rescheduled, past).
        self._sent &= live_keys
        return delivered


async def run_reminder_scheduler(
        scheduler: ReminderScheduler,
        *,
        interval_seconds: float = 60.0,
) -> None:
    """
    Fire a tick every interval_seconds.

    Ticks are started as separate tasks so a slow scan does not delay the
    timer; ReminderScheduler.tick() skips a tick while the previous one runs.

    To stop the scheduler, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))
    inflight: set[asyncio.Task] = set()

    try:
        while True:
            t = asyncio.create_task(scheduler.tick())
            inflight.add(t)
            t.add_done_callback(inflight.discard)
            await asyncio.sleep(sleep_s)
    finally:
        for t in list(inflight):
            t.cancel()
