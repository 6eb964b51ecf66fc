# src/guardian_sync/cli/main.py

"""
CLI entrypoint.

  guardian-sync serve                      -> Task Authority (REST + /ws + reminders)
  guardian-sync client NAME [--password P] -> console client (local-first, offline queue)

Initializes logging from Settings before anything else.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging

from ..config import get_settings
from ..core.errors import GuardianSyncError
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="guardian-sync")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    client = sub.add_parser("client", help="run the console client")
    client.add_argument("name")
    client.add_argument("--password", default=None)
    client.add_argument(
        "--register",
        choices=["guardian", "dependent"],
        default=None,
        help="create the account with this role before signing in",
    )
    client.add_argument("--server", default=None, help="server base URL")
    return parser


def _serve(settings, args: argparse.Namespace) -> None:
    import uvicorn

    from ..server.app import create_app

    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Serving on %s:%s", host, port)
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


async def _client(settings, args: argparse.Namespace) -> None:
    from ..client.agent import ClientAgent
    from ..client.api_client import HttpAuthorityClient
    from ..client.console import ask_conflict, print_reminder, run_console_loop

    api = HttpAuthorityClient(
        args.server or settings.server_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    agent = ClientAgent(settings, api=api, resolver=ask_conflict, on_reminder=print_reminder)

    password = args.password or getpass.getpass("Password: ")
    try:
        if args.register:
            await agent.register(args.name, password, args.register)
        else:
            await agent.login(args.name, password)
    except GuardianSyncError as e:
        logger.error("Sign-in failed: %s", e.message)
        await api.aclose()
        return

    background = asyncio.create_task(agent.run())
    try:
        await run_console_loop(agent)
    finally:
        background.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await background


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=getattr(settings, "data_dir", ".local/guardian"), console_level=console_level)

    logger.info("Starting %s (%s)...", getattr(settings, "app_name", "guardian-sync"), args.command)

    if args.command == "serve":
        _serve(settings, args)
    else:
        try:
            asyncio.run(_client(settings, args))
        except KeyboardInterrupt:
            pass

    logger.info("Bye.")


if __name__ == "__main__":
    main()
