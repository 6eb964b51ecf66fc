# src/guardian_sync/client/console.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..core.ports import Message
from ..tasks.task_models import Conflict
from .agent import ClientAgent
from .commands import registry as command_registry
from .sync_engine import Resolution

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def print_reminder(message: Message) -> None:
    _print_ts(f"[{message.get('title', 'Reminder')}] {message.get('body', '')}")


async def ask_conflict(conflict: Conflict) -> Resolution:
    """
    Let the user pick a side; anything but 'f' keeps the server's value.

    Only reached from command handlers (/set, /sync), while the REPL is
    waiting on the reply and not reading stdin itself. Background syncs
    replay with resolve=False and leave conflicts queued.
    """
    _print_ts(
        f"[CONFLICT] Task {conflict.task_id[:8]} is '{conflict.current_status}' on the server; "
        f"you set '{conflict.attempted_status.value}'."
    )
    answer = await asyncio.to_thread(input, "Keep server value [k] or force yours [f]? ")
    return Resolution.FORCE if answer.strip().lower().startswith("f") else Resolution.ACCEPT_AUTHORITY


async def run_console_loop(agent: ClientAgent) -> None:
    logger.info("Console client started user=%s", (agent.user or {}).get("name"))
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    while True:
        try:
            line = (await asyncio.to_thread(input, ">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not line:
            continue

        if line.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            reply = await command_registry.handle(agent, line)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        _print_ts(reply if reply is not None else "Commands start with '/'. Try /help.")
