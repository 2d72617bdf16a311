from __future__ import annotations

from typing import TYPE_CHECKING

from bingo.logic.types import SourcePool
from bingo.messaging.types import FinalizeMixMessage, JoinRoomMessage
from bingo.tests.helpers.songs import make_pool
from bingo.tests.mocks import MockConnection

if TYPE_CHECKING:
    from bingo.session.manager import SessionManager
    from bingo.session.room import Player


async def join(
    manager: SessionManager,
    name: str,
    *,
    room_id: str = "room1",
    is_host: bool = False,
    client_id: str | None = None,
) -> MockConnection:
    conn = MockConnection(room_id=room_id)
    manager.register_connection(conn)
    await manager.join_room(
        conn,
        room_id,
        JoinRoomMessage(player_name=name, is_host=is_host, client_id=client_id),
    )
    return conn


async def create_room_with_players(
    manager: SessionManager,
    player_names: list[str] | None = None,
    room_id: str = "room1",
) -> tuple[MockConnection, list[MockConnection]]:
    """A host plus players (with stable client ids), message history cleared."""
    if player_names is None:
        player_names = ["Alice", "Bob"]
    host = await join(manager, "Host", room_id=room_id, is_host=True, client_id="host-client")
    players = [
        await join(manager, name, room_id=room_id, client_id=f"{name.lower()}-client") for name in player_names
    ]
    for conn in [host, *players]:
        conn.clear()
    return host, players


async def finalize(
    manager: SessionManager,
    host: MockConnection,
    pools: list[SourcePool] | None = None,
) -> None:
    if pools is None:
        pools = [make_pool(75, name="Hits")]
    await manager.finalize_mix(host, FinalizeMixMessage(pools=pools))


def player_of(manager: SessionManager, conn: MockConnection) -> Player:
    player = manager.store.player_for(conn.connection_id)
    assert player is not None
    return player
