# src/guardian_sync/client/agent.py

"""
Headless client composition: one device, one signed-in user.

Wires LocalStore + HttpAuthorityClient + SyncEngine + ConnectivityMonitor +
NotificationClient, and runs the background loops:
- connectivity probe against /api/health (drives offline -> online sync),
- periodic refresh while online (the channel is only a latency optimisation),
- the notification channel, restarted on the next reconnect after it gave up.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from ..core.errors import GuardianSyncError
from .api_client import HttpAuthorityClient
from .channel_client import Connect, NotificationClient
from .connectivity import ConnectivityMonitor
from .local_store import LocalStore
from .sync_engine import ConflictResolver, ReminderCallback, ReplayReport, SyncEngine

logger = logging.getLogger(__name__)


class ClientAgent:
    def __init__(
        self,
        settings,
        *,
        api: HttpAuthorityClient | None = None,
        store: LocalStore | None = None,
        resolver: ConflictResolver | None = None,
        on_reminder: ReminderCallback | None = None,
        connect: Connect | None = None,
    ) -> None:
        self.settings = settings
        self.api = api or HttpAuthorityClient(
            settings.server_url,
            timeout_seconds=getattr(settings, "request_timeout_seconds", 10.0),
        )
        self.store = store or LocalStore(settings.client_db_path)
        self.monitor = ConnectivityMonitor(
            self._on_reconnect,
            initially_online=False,
            settle_seconds=getattr(settings, "reconnect_settle_seconds", 1.0),
        )

        self._resolver = resolver
        self._on_reminder = on_reminder
        self._connect = connect

        self.user: dict[str, Any] | None = None
        self.engine: SyncEngine | None = None
        self.channel: NotificationClient | None = None
        self._channel_task: asyncio.Task | None = None
        self._polling = False
        self.last_report: ReplayReport | None = None

    # ---- session ----

    async def login(self, name: str, password: str) -> dict[str, Any]:
        user = await self.api.login(name, password)
        self._bind(user)
        return user

    async def register(self, name: str, password: str, role: str) -> dict[str, Any]:
        user = await self.api.register(name, password, role)
        self._bind(user)
        return user

    def _bind(self, user: dict[str, Any]) -> None:
        self.user = user
        self.engine = SyncEngine(
            self.store,
            self.api,
            role=str(user["role"]),
            user_id=str(user["id"]),
            is_online=lambda: self.monitor.online,
            resolver=self._resolver,
            on_reminder=self._on_reminder,
        )
        self.channel = NotificationClient(
            self.api.channel_url,
            self.engine.handle_event,
            reconnect_delay_seconds=getattr(self.settings, "reconnect_delay_seconds", 3.0),
            max_attempts=getattr(self.settings, "reconnect_max_attempts", 5),
            on_unavailable=self._channel_unavailable,
            connect=self._connect,
        )
        logger.info("Signed in as %s (%s)", user.get("name"), user.get("role"))

    def require_engine(self) -> SyncEngine:
        if self.engine is None:
            raise RuntimeError("ClientAgent is not signed in")
        return self.engine

    # ---- reconnect / channel ----

    async def _on_reconnect(self) -> None:
        engine = self.require_engine()
        self._note_report(await engine.sync(resolve=False))
        self._ensure_channel()

    def _note_report(self, report: ReplayReport) -> None:
        self.last_report = report
        if report.conflict is not None:
            logger.warning(
                "Queued change for task %s conflicts with the server (%s); use /sync to resolve",
                report.conflict.task_id[:8],
                report.conflict.current_status,
            )

    def _ensure_channel(self) -> None:
        if self.channel is None:
            return
        if self._channel_task is not None and not self._channel_task.done():
            return
        self._channel_task = asyncio.get_running_loop().create_task(self.channel.run())

    def _channel_unavailable(self) -> None:
        logger.info("Realtime updates off; relying on the %ss poll", self.settings.poll_interval_seconds)

    # ---- polling ----

    async def poll_once(self) -> bool:
        """
        One refresh if online; a poll still in flight makes this a no-op.

        Changes still queued (e.g. made during a blip the reconnect sync had
        already passed) are replayed first.
        """
        if self.engine is None or not self.monitor.online or self._polling:
            return False
        self._polling = True
        try:
            if self.engine.pending_count():
                self._note_report(await self.engine.sync(resolve=False))
            else:
                await self.engine.refresh()
            return True
        except GuardianSyncError as e:
            logger.warning("Poll failed: %s", e)
            return False
        finally:
            self._polling = False

    async def run_polling(self) -> None:
        interval = max(0.05, float(self.settings.poll_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            await self.poll_once()

    # ---- lifecycle ----

    async def run(self) -> None:
        """Run the probe and poll loops until cancelled."""
        self.require_engine()
        interval = float(self.settings.poll_interval_seconds)
        loops = [
            asyncio.create_task(self.monitor.run_probe(self.api.health, interval_seconds=interval)),
            asyncio.create_task(self.run_polling()),
        ]
        try:
            await asyncio.gather(*loops)
        finally:
            for t in loops:
                t.cancel()
            for t in loops:
                with contextlib.suppress(asyncio.CancelledError):
                    await t
            await self.aclose()

    async def aclose(self) -> None:
        if self.channel is not None:
            await self.channel.stop()
        if self._channel_task is not None:
            self._channel_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._channel_task
            self._channel_task = None
        await self.monitor.wait_idle()
        await self.api.aclose()
