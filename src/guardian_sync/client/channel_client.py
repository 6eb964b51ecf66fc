# src/guardian_sync/client/channel_client.py

from __future__ import annotations

"""
Notification channel client (WebSocket).

One connection at a time. On close or failure it reconnects after a fixed
delay, at most `max_attempts` times in a row; a successful connect resets the
count. When the attempts are exhausted it stops and calls `on_unavailable`
(the caller falls back to polling and may start it again later).

Server pings are answered with a pong; every other frame is handed to
`on_message` (normally SyncEngine.handle_event).
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from websockets.exceptions import InvalidStatus

from ..core.events import EventType, pong
from ..core.ports import Message

logger = logging.getLogger(__name__)

# Close codes after which reconnecting is pointless.
CLOSE_POLICY_VIOLATION = 1008
CLOSE_SUPERSEDED = 4000
_TERMINAL_CLOSE_CODES = {CLOSE_POLICY_VIOLATION, CLOSE_SUPERSEDED}
# A handshake the server closes before accept reaches the client as an HTTP refusal.
_TERMINAL_HTTP_STATUSES = {401, 403}

MessageHandler = Callable[[Message], Awaitable[None]]
Connect = Callable[[str], Any]


class NotificationClient:
    def __init__(
        self,
        url: str | Callable[[], str],
        on_message: MessageHandler,
        *,
        reconnect_delay_seconds: float = 3.0,
        max_attempts: int = 5,
        on_unavailable: Callable[[], None] | None = None,
        connect: Connect | None = None,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._delay = max(0.0, float(reconnect_delay_seconds))
        self._max_attempts = max(0, int(max_attempts))
        self._on_unavailable = on_unavailable
        self._connect = connect or websockets.connect

        self._ws: Any = None
        self._stopping = False
        self.connected = False
        self.connects = 0

    def _resolve_url(self) -> str:
        return self._url() if callable(self._url) else self._url

    async def stop(self) -> None:
        self._stopping = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Channel close failed", exc_info=True)

    async def run(self) -> None:
        """Connect and pump frames until stopped or the reconnect budget is spent."""
        self._stopping = False
        failures = 0

        while not self._stopping:
            close_code: int | None = None
            refused = False
            try:
                async with self._connect(self._resolve_url()) as ws:
                    self._ws = ws
                    self.connected = True
                    self.connects += 1
                    failures = 0
                    logger.info("Notification channel connected")
                    await self._pump(ws)
                    close_code = getattr(ws, "close_code", None)
            except asyncio.CancelledError:
                raise
            except websockets.ConnectionClosed as e:
                close_code = e.rcvd.code if e.rcvd is not None else None
                logger.info("Notification channel closed code=%s", close_code)
            except InvalidStatus as e:
                status = e.response.status_code
                refused = status in _TERMINAL_HTTP_STATUSES
                logger.warning("Notification channel handshake rejected status=%s", status)
            except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
                logger.warning("Notification channel connect failed: %r", e)
            finally:
                self._ws = None
                self.connected = False

            if self._stopping:
                break

            if refused:
                logger.warning("Notification channel token refused; not reconnecting")
                return

            if close_code in _TERMINAL_CLOSE_CODES:
                logger.warning("Notification channel closed by server code=%s; not reconnecting", close_code)
                return

            if failures >= self._max_attempts:
                logger.warning(
                    "Notification channel unavailable after %s attempts; falling back to polling",
                    failures,
                )
                if self._on_unavailable is not None:
                    self._on_unavailable()
                return

            failures += 1
            logger.info(
                "Reconnecting notification channel in %.1fs (attempt %s/%s)",
                self._delay,
                failures,
                self._max_attempts,
            )
            await asyncio.sleep(self._delay)

    async def _pump(self, ws: Any) -> None:
        async for raw in ws:
            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("Ignoring non-JSON channel frame")
                continue
            if not isinstance(message, dict):
                continue

            if message.get("type") == EventType.PING:
                await ws.send(json.dumps(pong()))
                continue

            try:
                await self._on_message(message)
            except Exception:
                logger.exception("Channel message handler failed type=%s", message.get("type"))
