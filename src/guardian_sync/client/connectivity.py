# src/guardian_sync/client/connectivity.py

from __future__ import annotations

"""
Connectivity monitor.

Binary online/offline state fed by the platform signal (set_online) or by a
probe loop (run_probe). Only the offline -> online transition triggers sync;
going offline just flips the flag read by the write path.

Flapping is coalesced: the sync callback fires after a settle delay, is
cancelled if the link drops again before that, and never overlaps a sync
run that is still in flight.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SyncCallback = Callable[[], Awaitable[object]]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    def __init__(
        self,
        on_online: SyncCallback | None = None,
        *,
        initially_online: bool = False,
        settle_seconds: float = 1.0,
    ) -> None:
        self._on_online = on_online
        self._online = bool(initially_online)
        self._settle = max(0.0, float(settle_seconds))
        self._pending: asyncio.Task | None = None
        self._running: asyncio.Task | None = None
        self.sync_runs = 0

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Feed the platform signal. Must be called from the event loop thread."""
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity -> %s", "online" if online else "offline")

        if not online:
            self._cancel_pending()
            return

        if self._on_online is None:
            return
        self._cancel_pending()
        self._pending = asyncio.get_running_loop().create_task(self._trigger_after_settle(self._on_online))

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def _trigger_after_settle(self, on_online: SyncCallback) -> None:
        if self._settle:
            await asyncio.sleep(self._settle)
        if not self._online:
            return
        if self._running is not None and not self._running.done():
            logger.debug("Sync already running; coalescing online transition")
            return
        # From here on this task is a sync run: going offline must not cancel it.
        me = asyncio.current_task()
        if self._pending is me:
            self._pending = None
        self._running = me
        self.sync_runs += 1
        try:
            await on_online()
        except Exception:
            logger.exception("Sync after reconnect failed")

    async def wait_idle(self) -> None:
        """Wait for a scheduled or running sync trigger to finish (used on shutdown and in tests)."""
        for t in (self._pending, self._running):
            if t is not None and not t.done():
                with contextlib.suppress(asyncio.CancelledError):
                    await t

    async def run_probe(self, probe: Probe, *, interval_seconds: float = 5.0) -> None:
        """
        Derive the signal from `probe` every interval. A probe that raises counts as offline.

        To stop the loop, cancel the coroutine/task.
        """
        sleep_s = max(0.05, float(interval_seconds))
        while True:
            try:
                ok = bool(await probe())
            except Exception:
                logger.debug("Connectivity probe failed", exc_info=True)
                ok = False
            self.set_online(ok)
            await asyncio.sleep(sleep_s)
