"""Monitor client liveness via application-level ping."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bingo.session.room import Room

HEARTBEAT_CHECK_INTERVAL = 5  # seconds between heartbeat checks
HEARTBEAT_TIMEOUT = 30  # seconds before disconnecting an idle client

logger = logging.getLogger(__name__)

# Resolves a room by id; None once the room is gone.
RoomResolver = Callable[[str], "Room | None"]


class HeartbeatMonitor:
    """Track per-connection ping timestamps and close connections that go quiet.

    One background loop runs per room while the room exists.
    """

    def __init__(self, check_interval: float = HEARTBEAT_CHECK_INTERVAL, timeout: float = HEARTBEAT_TIMEOUT) -> None:
        self._check_interval = check_interval
        self._timeout = timeout
        self._last_ping: dict[str, float] = {}  # connection_id -> monotonic timestamp
        self._tasks: dict[str, asyncio.Task[None]] = {}  # room_id -> task

    def record_connect(self, connection_id: str) -> None:
        self._last_ping[connection_id] = time.monotonic()

    def record_disconnect(self, connection_id: str) -> None:
        self._last_ping.pop(connection_id, None)

    def record_ping(self, connection_id: str) -> None:
        """Update ping timestamp for a tracked connection."""
        if connection_id in self._last_ping:
            self._last_ping[connection_id] = time.monotonic()

    def is_running(self, room_id: str) -> bool:
        task = self._tasks.get(room_id)
        return task is not None and not task.done()

    def start_for_room(self, room_id: str, get_room: RoomResolver) -> None:
        existing = self._tasks.get(room_id)
        if existing is not None and not existing.done():
            existing.cancel()
        self._tasks[room_id] = asyncio.create_task(self._check_loop(room_id, get_room))

    async def stop_for_room(self, room_id: str) -> None:
        task = self._tasks.pop(room_id, None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop_all(self) -> None:
        for room_id in list(self._tasks):
            await self.stop_for_room(room_id)

    async def _check_loop(self, room_id: str, get_room: RoomResolver) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            room = get_room(room_id)
            if room is None:
                return

            now = time.monotonic()
            for player in list(room.players.values()):
                last_ping = self._last_ping.get(player.connection_id)
                if last_ping is not None and now - last_ping > self._timeout:
                    logger.info("heartbeat timeout for %s in room %s, disconnecting", player.connection_id, room_id)
                    with contextlib.suppress(RuntimeError, OSError, ConnectionError):
                        await player.connection.close(code=1000, reason="heartbeat_timeout")
