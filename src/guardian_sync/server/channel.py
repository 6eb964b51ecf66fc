# src/guardian_sync/server/channel.py

"""
Server half of the notification channel.

One WebSocket per authenticated user at /ws?token=<bearer token>:
- the token is verified before accept; a bad or missing token is refused,
- a new connection supersedes (closes) the user's previous one,
- the server sends {"type": "ping"} every heartbeat interval and evicts the
  registration after two silent intervals,
- a client {"type": "ping"} is answered with {"type": "pong"}.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from ..core import events
from ..core.errors import AuthenticationError
from ..core.ports import ChannelHandle, ConnectionRegistry, Message
from ..core.state import ServerState

logger = logging.getLogger(__name__)

# Policy violation: used to refuse the handshake.
CLOSE_POLICY_VIOLATION = 1008


class WebSocketHandle:
    """ChannelHandle over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, data: Message) -> None:
        await self._ws.send_text(json.dumps(data, ensure_ascii=False))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code=code, reason=reason)


async def run_heartbeat(
        registry: ConnectionRegistry,
        user_id: str,
        handle: ChannelHandle,
        *,
        interval_seconds: float = 30.0,
) -> None:
    """
    Ping the user's connection every interval; evict it when nothing came back.

    Stops on its own once `handle` is no longer the user's registration.
    """
    interval = max(0.01, float(interval_seconds))
    while True:
        await asyncio.sleep(interval)

        if registry.handle_for(user_id) is not handle:
            return

        idle = registry.idle_seconds(user_id)
        if idle is None:
            return
        if idle > 2 * interval:
            await registry.evict(user_id, "heartbeat timeout")
            return

        if not await registry.send_to(user_id, events.ping()):
            return


async def serve_channel(websocket: WebSocket, state: ServerState) -> None:
    token = websocket.query_params.get("token")
    try:
        user = await asyncio.to_thread(state.auth.verify_token, token)
    except AuthenticationError as e:
        logger.info("Channel handshake refused: %s", e.message)
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    handle = WebSocketHandle(websocket)
    registry = state.registry
    await registry.register(user.id, handle, user.role.value)

    heartbeat = asyncio.create_task(
        run_heartbeat(
            registry,
            user.id,
            handle,
            interval_seconds=getattr(state.settings, "heartbeat_interval_seconds", 30.0),
        )
    )

    try:
        await handle.send_json(events.connection_established(user.id, user.role.value))

        while True:
            raw = await websocket.receive_text()
            registry.touch(user.id)

            try:
                data = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON frame from user=%s", user.id)
                continue
            if not isinstance(data, dict):
                continue

            if data.get("type") == events.EventType.PING:
                await handle.send_json(events.pong(data.get("timestamp")))

    except WebSocketDisconnect as e:
        logger.info("Channel closed user=%s code=%s", user.id, e.code)
    except RuntimeError:
        # Starlette raises RuntimeError when receiving on a socket we closed (superseded/evicted).
        logger.debug("Channel receive after close user=%s", user.id)
    except Exception:
        logger.exception("Channel error user=%s", user.id)
    finally:
        heartbeat.cancel()
        registry.unregister(user.id, handle)
