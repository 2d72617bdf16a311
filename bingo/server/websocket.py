"""
WebSocket transport for one room connection.

The URL names the room (/ws/{room_id}); an optional ?client_id= query
parameter carries the stable identity a browser keeps across reconnects.
join_room falls back to it when the message itself names no client id.
"""

from __future__ import annotations

import contextlib
import re
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from bingo.messaging.encoder import DecodeError, decode
from bingo.messaging.protocol import ConnectionProtocol
from bingo.messaging.types import ClientMessageType, ErrorCode, ErrorMessage
from bingo.server.rate_limit import TokenBucket
from shared.logging import bind_connection_context, clear_connection_context

logger = structlog.get_logger()

if TYPE_CHECKING:
    from bingo.messaging.router import MessageRouter

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_MAX_ROOM_ID_LENGTH = 50
_MAX_CLIENT_ID_LENGTH = 100

# Host transport controls and square marking are bursty but human-paced.
_RATE_LIMIT_RATE = 20.0
_RATE_LIMIT_BURST = 40

# heartbeats keep the connection alive and are never throttled
_UNTHROTTLED = frozenset({ClientMessageType.PING})

_MAX_DECODE_ERRORS = 5

CLOSE_INVALID_ROOM = 4000
CLOSE_INVALID_CLIENT = 4001
CLOSE_DECODE_ERRORS = 4004


class WebSocketConnection(ConnectionProtocol):
    def __init__(
        self,
        websocket: WebSocket,
        room_id: str,
        client_id: str | None = None,
        connection_id: str | None = None,
    ) -> None:
        self._websocket = websocket
        self._room_id = room_id
        self._client_id = client_id
        self._connection_id = connection_id or str(uuid4())

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def client_id(self) -> str | None:
        return self._client_id

    async def send_bytes(self, data: bytes) -> None:
        try:
            await self._websocket.send_bytes(data)
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def receive_bytes(self) -> bytes:
        try:
            return await self._websocket.receive_bytes()
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self._websocket.close(code=code, reason=reason)


def is_valid_room_id(room_id: str) -> bool:
    return bool(_ID_PATTERN.match(room_id)) and len(room_id) <= _MAX_ROOM_ID_LENGTH


def is_valid_client_id(client_id: str) -> bool:
    return bool(_ID_PATTERN.match(client_id)) and len(client_id) <= _MAX_CLIENT_ID_LENGTH


class TooManyDecodeErrors(Exception):
    pass


class _Inbound:
    """Decode strikes and the rate limit of one connection."""

    def __init__(self, connection: WebSocketConnection) -> None:
        self._connection = connection
        self._bucket = TokenBucket(rate=_RATE_LIMIT_RATE, burst=_RATE_LIMIT_BURST)
        self._strikes = 0

    async def _reject(self, code: ErrorCode, message: str) -> None:
        await self._connection.send_message(ErrorMessage(code=code, message=message).model_dump())

    async def next_message(self) -> dict[str, Any] | None:
        """The next routable message, or None when this frame was dropped.

        Raises TooManyDecodeErrors once the client sent too many garbled frames.
        """
        raw = await self._connection.receive_bytes()
        try:
            data = decode(raw)
        except DecodeError as e:
            self._strikes += 1
            logger.warning("decode error", error=str(e), strikes=self._strikes)
            await self._reject(ErrorCode.INVALID_MESSAGE, str(e))
            if self._strikes >= _MAX_DECODE_ERRORS:
                raise TooManyDecodeErrors from e
            return None
        self._strikes = 0

        if data.get("type") not in _UNTHROTTLED and not self._bucket.consume():
            await self._reject(ErrorCode.RATE_LIMITED, "Too many messages")
            return None
        return data


async def websocket_endpoint(websocket: WebSocket, router: MessageRouter) -> None:
    room_id = websocket.path_params["room_id"]
    if not is_valid_room_id(room_id):
        await websocket.close(code=CLOSE_INVALID_ROOM, reason="invalid_room_id")
        return
    client_id = websocket.query_params.get("client_id") or None
    if client_id is not None and not is_valid_client_id(client_id):
        await websocket.close(code=CLOSE_INVALID_CLIENT, reason="invalid_client_id")
        return

    await websocket.accept()

    connection = WebSocketConnection(websocket, room_id=room_id, client_id=client_id)
    bind_connection_context(room_id=room_id, connection_id=connection.connection_id)
    if client_id is not None:
        structlog.contextvars.bind_contextvars(client_id=client_id)
    logger.info("websocket connected", has_client_id=client_id is not None)
    await router.handle_connect(connection)

    inbound = _Inbound(connection)
    try:
        while True:
            data = await inbound.next_message()
            if data is not None:
                await router.handle_message(connection, data)
    except TooManyDecodeErrors:
        logger.info("too many decode errors, disconnecting")
        await connection.close(code=CLOSE_DECODE_ERRORS, reason="too_many_decode_errors")
    except (WebSocketDisconnect, RuntimeError, ConnectionError):
        pass
    finally:
        logger.info("websocket disconnected")
        await router.handle_disconnect(connection)
        clear_connection_context()
