"""In-memory registry of rooms and of which room each connection is in."""

import logging
import time

from bingo.logic.exceptions import RoomCapacityError
from bingo.session.room import Player, Room

logger = logging.getLogger(__name__)


class RoomStore:
    """Owns every Room. Access is keyed; nothing depends on iteration order."""

    def __init__(self, max_rooms: int = 200) -> None:
        self._max_rooms = max_rooms
        self._rooms: dict[str, Room] = {}
        self._players: dict[str, Player] = {}  # connection_id -> Player

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: str) -> tuple[Room, bool]:
        """Return the room and whether it was created by this call."""
        room = self._rooms.get(room_id)
        if room is not None:
            return room, False
        if len(self._rooms) >= self._max_rooms:
            raise RoomCapacityError(self._max_rooms)
        room = Room(room_id=room_id)
        self._rooms[room_id] = room
        logger.info("room created: %s (%d active)", room_id, len(self._rooms))
        return room, True

    def remove(self, room_id: str) -> Room | None:
        room = self._rooms.pop(room_id, None)
        if room is not None:
            for connection_id in room.players:
                self._players.pop(connection_id, None)
            logger.info("room removed: %s (%d active)", room_id, len(self._rooms))
        return room

    def rooms(self) -> list[Room]:
        """All rooms, sorted by id."""
        return [self._rooms[room_id] for room_id in sorted(self._rooms)]

    def add_player(self, room: Room, player: Player) -> None:
        room.players[player.connection_id] = player
        self._players[player.connection_id] = player

    def remove_player(self, connection_id: str) -> Player | None:
        player = self._players.pop(connection_id, None)
        if player is None:
            return None
        room = self._rooms.get(player.room_id)
        if room is not None:
            room.players.pop(connection_id, None)
            room.device_ids.pop(connection_id, None)
        return player

    def player_for(self, connection_id: str) -> Player | None:
        return self._players.get(connection_id)

    def room_for(self, connection_id: str) -> Room | None:
        player = self._players.get(connection_id)
        if player is None:
            return None
        return self._rooms.get(player.room_id)

    def expired(self, ttl_seconds: float) -> list[Room]:
        """Rooms older than ttl_seconds that are not mid-round."""
        now = time.monotonic()
        return [room for room in self.rooms() if now - room.created_at > ttl_seconds and not room.in_progress]
