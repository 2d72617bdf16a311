"""Abstract connection protocol for MessagePack binary communication."""

from abc import ABC, abstractmethod
from typing import Any

from bingo.messaging.encoder import decode, encode


class ConnectionProtocol(ABC):
    """
    One client connection to a room.

    Session logic only talks to this interface, so it can be tested with an
    in-memory connection instead of a real WebSocket.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Transient id; a reconnecting client gets a new one."""
        ...

    @property
    @abstractmethod
    def room_id(self) -> str:
        """Room id from the WebSocket URL path (/ws/{room_id})."""
        ...

    @property
    def client_id(self) -> str | None:
        """Stable id presented at connect time, if any; survives reconnects."""
        return None

    @abstractmethod
    async def send_bytes(self, data: bytes) -> None: ...

    @abstractmethod
    async def receive_bytes(self) -> bytes: ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    async def send_message(self, data: dict[str, Any]) -> None:
        await self.send_bytes(encode(data))

    async def receive_message(self) -> dict[str, Any]:
        raw = await self.receive_bytes()
        return decode(raw)
