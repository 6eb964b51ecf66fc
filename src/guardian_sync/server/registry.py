# src/guardian_sync/server/registry.py

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass

from ..core.ports import ChannelHandle, Message

logger = logging.getLogger(__name__)

# WebSocket close code used when a newer connection of the same user takes over.
CLOSE_SUPERSEDED = 4000


@dataclass(slots=True)
class Registration:
    handle: ChannelHandle
    role: str
    last_activity: float


class InMemoryConnectionRegistry:
    """
    In-process ConnectionRegistry: userId -> the single live connection.

    Fine for a single worker. A multi-worker deployment needs another
    implementation of the same port backed by a shared broker.

    Delivery is best effort: send_to() returns False when the user has no
    live registration or when sending failed (the registration is evicted).
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._by_user: dict[str, Registration] = {}

    # ---- lifecycle ----

    async def register(self, user_id: str, handle: ChannelHandle, role: str) -> None:
        await self.supersede(user_id, handle, role)

    async def supersede(self, user_id: str, handle: ChannelHandle, role: str) -> ChannelHandle | None:
        """
        Install `handle` as the user's connection, closing the previous one.

        Returns the handle that was replaced (already closed), if any.
        """
        previous = self._by_user.get(user_id)
        self._by_user[user_id] = Registration(handle=handle, role=role, last_activity=self._clock())

        if previous is None or previous.handle is handle:
            logger.info("Channel registered user=%s role=%s", user_id, role)
            return None

        logger.info("Channel superseded user=%s (closing previous connection)", user_id)
        with contextlib.suppress(Exception):
            await previous.handle.close(CLOSE_SUPERSEDED, "superseded by a new connection")
        return previous.handle

    def unregister(self, user_id: str, handle: ChannelHandle | None = None) -> bool:
        """
        Remove the user's registration.

        With `handle`, only removes it if it is still the current one, so a late
        disconnect of a superseded socket cannot drop the newer registration.
        """
        reg = self._by_user.get(user_id)
        if reg is None:
            return False
        if handle is not None and reg.handle is not handle:
            return False
        del self._by_user[user_id]
        logger.info("Channel unregistered user=%s", user_id)
        return True

    async def evict(self, user_id: str, reason: str) -> None:
        reg = self._by_user.pop(user_id, None)
        if reg is None:
            return
        logger.warning("Channel evicted user=%s reason=%s", user_id, reason)
        with contextlib.suppress(Exception):
            await reg.handle.close(1001, reason)

    # ---- activity ----
    # last_activity tracks inbound frames only; the heartbeat reads it to detect dead peers.

    def touch(self, user_id: str) -> None:
        reg = self._by_user.get(user_id)
        if reg is not None:
            reg.last_activity = self._clock()

    def idle_seconds(self, user_id: str) -> float | None:
        reg = self._by_user.get(user_id)
        return self._clock() - reg.last_activity if reg else None

    def handle_for(self, user_id: str) -> ChannelHandle | None:
        reg = self._by_user.get(user_id)
        return reg.handle if reg else None

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._by_user

    def connected_users(self) -> list[str]:
        return list(self._by_user)

    # ---- delivery ----

    async def send_to(self, user_id: str, message: Message) -> bool:
        reg = self._by_user.get(user_id)
        if reg is None:
            logger.debug("No live channel for user=%s; dropping %s", user_id, message.get("type"))
            return False

        try:
            await reg.handle.send_json(message)
        except Exception:
            logger.warning(
                "Send failed user=%s type=%s; evicting", user_id, message.get("type"), exc_info=True
            )
            if self._by_user.get(user_id) is reg:
                await self.evict(user_id, "send failure")
            return False

        return True
