from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, assert_never

from pydantic import ValidationError

from bingo.logic.exceptions import (
    AuthorizationDeniedError,
    BingoError,
    InsufficientSongsError,
    RoomCapacityError,
)
from bingo.messaging.types import (
    ContinueOrEndMessage,
    EndGameMessage,
    ErrorCode,
    ErrorMessage,
    FinalizeMixMessage,
    ForceRefreshMessage,
    JoinRoomMessage,
    MarkSquareMessage,
    NewRoundMessage,
    PauseSongMessage,
    PingMessage,
    PlayerBingoMessage,
    PreviousSongMessage,
    RequestPlayerCardsMessage,
    ResetGameMessage,
    ResumeSongMessage,
    RevealCallMessage,
    SeekSongMessage,
    SetDeviceMessage,
    SetLockJoinsMessage,
    SetPatternMessage,
    SetPreQueueMessage,
    SetSuperStrictMessage,
    SetVolumeMessage,
    ShufflePlaylistMessage,
    SkipSongMessage,
    StartGameMessage,
    SyncStateMessage,
    ToggleRepeatMessage,
    VerifyBingoMessage,
    parse_client_message,
)

if TYPE_CHECKING:
    from bingo.messaging.protocol import ConnectionProtocol
    from bingo.messaging.types import ClientMessage
    from bingo.session.manager import SessionManager

logger = logging.getLogger(__name__)


def _error_for(error: BingoError) -> ErrorMessage:
    if isinstance(error, InsufficientSongsError):
        return ErrorMessage(
            code=ErrorCode.INSUFFICIENT_SONGS,
            message=str(error),
            required=error.required,
            available=error.available,
        )
    if isinstance(error, AuthorizationDeniedError):
        return ErrorMessage(code=ErrorCode.NOT_HOST, message=str(error))
    if isinstance(error, RoomCapacityError):
        return ErrorMessage(code=ErrorCode.ROOM_CAPACITY, message=str(error))
    return ErrorMessage(code=ErrorCode.INVALID_STATE, message=str(error))


class MessageRouter:
    """
    Routes incoming messages to SessionManager operations.

    Domain errors raised by a handler become an error event for the sender;
    anything unexpected is logged and the message is dropped.
    """

    def __init__(self, session_manager: SessionManager) -> None:
        self._session_manager = session_manager

    async def handle_message(
        self,
        connection: ConnectionProtocol,
        raw_message: dict[str, Any],
    ) -> None:
        try:
            message = parse_client_message(raw_message)
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning("invalid message from %s: %s", connection.connection_id, e)
            await connection.send_message(
                ErrorMessage(code=ErrorCode.INVALID_MESSAGE, message=str(e)).model_dump(),
            )
            return

        try:
            await self._dispatch(connection, message)
        except BingoError as e:
            logger.warning("%s rejected for %s: %s", message.type, connection.connection_id, e)
            await connection.send_message(_error_for(e).model_dump())
        except Exception:
            logger.exception("unexpected error handling %s for %s", message.type, connection.connection_id)

    async def _dispatch(self, connection: ConnectionProtocol, message: ClientMessage) -> None:  # noqa: C901, PLR0912
        sm = self._session_manager
        if isinstance(message, JoinRoomMessage):
            await sm.join_room(connection, connection.room_id, message)
        elif isinstance(message, SyncStateMessage):
            await sm.sync_state(connection)
        elif isinstance(message, PingMessage):
            await sm.handle_ping(connection)
        elif isinstance(message, FinalizeMixMessage):
            await sm.finalize_mix(connection, message)
        elif isinstance(message, SetPatternMessage):
            await sm.set_pattern(connection, message)
        elif isinstance(message, StartGameMessage):
            await sm.start_game(connection, message)
        elif isinstance(message, EndGameMessage):
            await sm.end_game(connection)
        elif isinstance(message, ResetGameMessage):
            await sm.reset_game(connection)
        elif isinstance(message, NewRoundMessage):
            await sm.new_round(connection)
        elif isinstance(message, SetLockJoinsMessage):
            await sm.set_lock_joins(connection, message)
        elif isinstance(message, SetPreQueueMessage):
            await sm.set_prequeue(connection, message)
        elif isinstance(message, SetSuperStrictMessage):
            await sm.set_super_strict(connection, message)
        elif isinstance(message, SetDeviceMessage):
            await sm.set_device(connection, message)
        elif isinstance(message, PlayerBingoMessage):
            await sm.player_bingo(connection)
        elif isinstance(message, VerifyBingoMessage):
            await sm.verify_bingo(connection, message)
        elif isinstance(message, ContinueOrEndMessage):
            await sm.continue_or_end(connection, message)
        elif isinstance(message, RequestPlayerCardsMessage):
            await sm.request_player_cards(connection)
        elif isinstance(message, MarkSquareMessage):
            await sm.mark_square(connection, message)
        elif isinstance(message, SkipSongMessage):
            await sm.skip_song(connection)
        elif isinstance(message, PauseSongMessage):
            await sm.pause_song(connection)
        elif isinstance(message, ResumeSongMessage):
            await sm.resume_song(connection)
        elif isinstance(message, PreviousSongMessage):
            await sm.previous_song(connection)
        elif isinstance(message, ShufflePlaylistMessage):
            await sm.shuffle_playlist(connection)
        elif isinstance(message, ToggleRepeatMessage):
            await sm.toggle_repeat(connection)
        elif isinstance(message, SetVolumeMessage):
            await sm.set_volume(connection, message)
        elif isinstance(message, SeekSongMessage):
            await sm.seek_song(connection, message)
        elif isinstance(message, RevealCallMessage):
            await sm.reveal_call(connection, message)
        elif isinstance(message, ForceRefreshMessage):
            await sm.force_refresh(connection, message)
        else:
            assert_never(message)

    async def handle_connect(self, connection: ConnectionProtocol) -> None:
        self._session_manager.register_connection(connection)

    async def handle_disconnect(self, connection: ConnectionProtocol) -> None:
        await self._session_manager.leave_room(connection)
        self._session_manager.unregister_connection(connection)
