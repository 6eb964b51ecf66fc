# src/guardian_sync/client/commands.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..core.errors import ConflictError, GuardianSyncError
from ..tasks.task_models import Task
from .agent import ClientAgent

CommandHandler = Callable[[ClientAgent, list[str]], Awaitable[str]]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console client (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases or []:
            self._handlers[alias.lower()] = handler

    async def handle(self, agent: ClientAgent, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(agent, parts[1:])
        except ConflictError as e:
            return f"Conflict: the task is now '{e.current_status}' on the server. Nothing was changed."
        except GuardianSyncError as e:
            return f"Error: {e.message}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def format_task(task: Task) -> str:
    return f"{task.id[:8]}  {task.date} {task.time}  [{task.status.value}]  {task.title}"


def _find_task(agent: ClientAgent, prefix: str) -> Task | None:
    matches = [t for t in agent.store.get_all() if t.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


async def cmd_help(agent: ClientAgent, args: list[str]) -> str:
    return registry.build_help()


async def cmd_status(agent: ClientAgent, args: list[str]) -> str:
    user = agent.user or {}
    channel = "connected" if agent.channel is not None and agent.channel.connected else "down"
    return (
        "Status:\n"
        f"  User: {user.get('name', '?')} ({user.get('role', '?')})\n"
        f"  Network: {'online' if agent.monitor.online else 'offline'}\n"
        f"  Channel: {channel}\n"
        f"  Pending changes: {agent.store.count_pending_changes()}"
    )


async def cmd_tasks(agent: ClientAgent, args: list[str]) -> str:
    """
    /tasks              -> all cached tasks
    /tasks <dependent>  -> only one dependent's tasks
    """
    tasks = agent.store.get_all(args[0] if args else None)
    if not tasks:
        return "No tasks."
    tasks.sort(key=lambda t: (t.date, t.time))
    return "\n".join(format_task(t) for t in tasks)


async def cmd_add(agent: ClientAgent, args: list[str]) -> str:
    """/add <dependentId> <YYYY-MM-DD> <HH:MM> <title...>"""
    if len(args) < 4:
        return "Usage: /add <dependentId> <YYYY-MM-DD> <HH:MM> <title>"
    dependent_id, date, time = args[0], args[1], args[2]
    task = await agent.require_engine().create_task(
        title=" ".join(args[3:]), date=date, time=time, dependent_id=dependent_id
    )
    return f"Created {format_task(task)}"


async def cmd_set(agent: ClientAgent, args: list[str]) -> str:
    """/set <taskId-prefix> <pending|in_progress|completed|cancelled>"""
    if len(args) != 2:
        return "Usage: /set <taskId> <status>"
    task = _find_task(agent, args[0])
    if task is None:
        return f"No unique task matches '{args[0]}'."
    updated = await agent.require_engine().change_status(task.id, args[1])
    return f"Updated {format_task(updated)}"


async def cmd_delete(agent: ClientAgent, args: list[str]) -> str:
    if len(args) != 1:
        return "Usage: /delete <taskId>"
    task = _find_task(agent, args[0])
    if task is None:
        return f"No unique task matches '{args[0]}'."
    await agent.require_engine().delete_task(task.id)
    return f"Deleted {task.title}"


async def cmd_sync(agent: ClientAgent, args: list[str]) -> str:
    if not agent.monitor.online:
        return f"Offline. {agent.store.count_pending_changes()} change(s) waiting."
    report = await agent.require_engine().sync()
    if report.halted:
        return f"Sync stopped: {report.error}. {report.remaining} change(s) still queued."
    return f"Synced. Replayed {report.applied} change(s)."


async def cmd_pending(agent: ClientAgent, args: list[str]) -> str:
    """
    /pending              -> list queued changes
    /pending drop <seq>   -> discard one queued change
    """
    if len(args) == 2 and args[0] == "drop":
        try:
            seq = int(args[1])
        except ValueError:
            return "Usage: /pending drop <seq>"
        agent.require_engine().discard_change(seq)
        return f"Dropped change #{seq}."

    changes = agent.store.list_pending_changes()
    if not changes:
        return "Queue is empty."
    return "\n".join(
        f"#{c.sequence_id}  {c.kind.value}  task={(c.task_id or '?')[:8]}  at {c.captured_at}"
        for c in changes
    )


async def cmd_code(agent: ClientAgent, args: list[str]) -> str:
    return f"Your link code: {await agent.api.dependent_code()}"


async def cmd_link(agent: ClientAgent, args: list[str]) -> str:
    if len(args) != 1:
        return "Usage: /link <code>"
    dependent = await agent.api.link_dependent(args[0])
    return f"Linked {dependent.get('name')} ({dependent.get('id')})"


async def cmd_dependents(agent: ClientAgent, args: list[str]) -> str:
    deps = await agent.api.list_dependents()
    if not deps:
        return "No linked dependents."
    return "\n".join(f"{d['id']}  {d['name']}" for d in deps)


registry.register("help", cmd_help, "show this help", aliases=["h", "?"])
registry.register("status", cmd_status, "network, channel and queue status")
registry.register("tasks", cmd_tasks, "list cached tasks", aliases=["ls"])
registry.register("add", cmd_add, "create a task for a dependent")
registry.register("set", cmd_set, "change a task's status")
registry.register("delete", cmd_delete, "delete a task", aliases=["rm"])
registry.register("sync", cmd_sync, "replay queued changes and refresh now")
registry.register("pending", cmd_pending, "show or drop queued changes")
registry.register("code", cmd_code, "show your link code (dependent)")
registry.register("link", cmd_link, "link a dependent by code (guardian)")
registry.register("dependents", cmd_dependents, "list linked dependents (guardian)")
