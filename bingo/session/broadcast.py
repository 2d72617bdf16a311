"""Shared broadcast utility for sending messages to everyone in a room."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from bingo.session.room import Player, Room


async def broadcast_to_players(
    players: dict[str, Player],
    message: dict[str, Any],
    exclude_connection_id: str | None = None,
    only: Callable[[Player], bool] | None = None,
) -> None:
    """Broadcast a message to players, skipping one connection if excluded.

    Snapshot the dict values via list() to avoid RuntimeError if a
    concurrent leave mutates the dict while we yield on send_message.
    """
    for player in list(players.values()):
        if player.connection_id == exclude_connection_id:
            continue
        if only is not None and not only(player):
            continue
        with contextlib.suppress(RuntimeError, OSError):
            await player.connection.send_message(message)


async def broadcast_to_room(room: Room, message: dict[str, Any]) -> None:
    await broadcast_to_players(room.players, message)
