from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from bingo.logic.enums import GameEndReason, GameState, RandomStarts, RevealHint, RoundDecision, WinPattern
from bingo.logic.types import BingoCard, RoundWinner, SourcePool, Winner

# ASCII control character boundaries for input validation
_SPACE_ORD = 0x20
_DEL_ORD = 0x7F

_POSITION_PATTERN = r"^[0-4]-[0-4]$"
_PATTERN_VALUES = frozenset(p.value for p in WinPattern)


class ClientMessageType(StrEnum):
    JOIN_ROOM = "join_room"
    SYNC_STATE = "sync_state"
    PING = "ping"
    FINALIZE_MIX = "finalize_mix"
    SET_PATTERN = "set_pattern"
    START_GAME = "start_game"
    END_GAME = "end_game"
    RESET_GAME = "reset_game"
    NEW_ROUND = "new_round"
    SET_LOCK_JOINS = "set_lock_joins"
    SET_PREQUEUE = "set_prequeue"
    SET_SUPER_STRICT = "set_super_strict"
    SET_DEVICE = "set_device"
    PLAYER_BINGO = "player_bingo"
    VERIFY_BINGO = "verify_bingo"
    CONTINUE_OR_END = "continue_or_end"
    REQUEST_PLAYER_CARDS = "request_player_cards"
    MARK_SQUARE = "mark_square"
    SKIP_SONG = "skip_song"
    PAUSE_SONG = "pause_song"
    RESUME_SONG = "resume_song"
    PREVIOUS_SONG = "previous_song"
    SHUFFLE_PLAYLIST = "shuffle_playlist"
    TOGGLE_REPEAT = "toggle_repeat"
    SET_VOLUME = "set_volume"
    SEEK_SONG = "seek_song"
    REVEAL_CALL = "reveal_call"
    FORCE_REFRESH = "force_refresh"


class ServerMessageType(StrEnum):
    ROOM_JOINED = "room_joined"
    ROOM_STATE = "room_state"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    HOST_CHANGED = "host_changed"
    GAME_STARTED = "game_started"
    SONG_PLAYING = "song_playing"
    BINGO_CARD = "bingo_card"
    BINGO_RESULT = "bingo_result"
    BINGO_CALLED = "bingo_called"
    BINGO_VERIFICATION_NEEDED = "bingo_verification_needed"
    BINGO_VERIFICATION_PENDING = "bingo_verification_pending"
    BINGO_CONFIRMED = "bingo_confirmed"
    BINGO_VERIFIED = "bingo_verified"
    ROUND_COMPLETE = "round_complete"
    PLAYER_CARDS = "player_cards"
    PATTERN_COMPLETE = "pattern_complete"
    MIX_FINALIZED = "mix_finalized"
    GAME_ENDED = "game_ended"
    GAME_RESET = "game_reset"
    ROUND_RESET = "round_reset"
    PATTERN_UPDATED = "pattern_updated"
    PLAYBACK_WARNING = "playback_warning"
    PLAYBACK_ERROR = "playback_error"
    PLAYBACK_PAUSED = "playback_paused"
    PLAYBACK_RESUMED = "playback_resumed"
    LOCK_JOINS_UPDATED = "lock_joins_updated"
    PREQUEUE_UPDATED = "prequeue_updated"
    SUPER_STRICT_UPDATED = "super_strict_updated"
    DEVICE_SELECTED = "device_selected"
    ONE_BY_75_POOL = "oneby75_pool"
    FIVE_BY_15_POOL = "fiveby15_pool"
    FIVE_BY_15_MAP = "fiveby15_map"
    PLAYLIST_SHUFFLED = "playlist_shuffled"
    REPEAT_TOGGLED = "repeat_toggled"
    VOLUME_CHANGED = "volume_changed"
    SONG_SEEKED = "song_seeked"
    CALL_REVEALED = "call_revealed"
    FORCE_REFRESH = "force_refresh"
    PONG = "pong"
    ERROR = "error"


class ErrorCode(StrEnum):
    INVALID_MESSAGE = "invalid_message"
    RATE_LIMITED = "rate_limited"
    ROOM_NOT_FOUND = "room_not_found"
    ROOM_LOCKED = "room_locked"
    ROOM_CAPACITY = "room_capacity"
    NOT_HOST = "not_host"
    NOT_IN_ROOM = "not_in_room"
    NO_CARD = "no_card"
    INSUFFICIENT_SONGS = "insufficient_songs"
    INVALID_STATE = "invalid_state"


# --- Inbound commands ---


class JoinRoomMessage(BaseModel):
    type: Literal[ClientMessageType.JOIN_ROOM] = ClientMessageType.JOIN_ROOM
    player_name: str = Field(min_length=1, max_length=50)
    client_id: str | None = Field(default=None, min_length=1, max_length=100)
    is_host: bool = False

    @field_validator("player_name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if any(ord(c) < _SPACE_ORD or ord(c) == _DEL_ORD for c in v):
            raise ValueError("player_name must not contain control characters")
        stripped = v.strip()
        if not stripped:
            raise ValueError("player_name must not be blank")
        return stripped


class SyncStateMessage(BaseModel):
    type: Literal[ClientMessageType.SYNC_STATE] = ClientMessageType.SYNC_STATE


class PingMessage(BaseModel):
    type: Literal[ClientMessageType.PING] = ClientMessageType.PING


class FinalizeMixMessage(BaseModel):
    type: Literal[ClientMessageType.FINALIZE_MIX] = ClientMessageType.FINALIZE_MIX
    pools: list[SourcePool] = Field(min_length=1, max_length=10)
    song_order: list[str] | None = Field(default=None, max_length=5000)


class SetPatternMessage(BaseModel):
    type: Literal[ClientMessageType.SET_PATTERN] = ClientMessageType.SET_PATTERN
    pattern: WinPattern = WinPattern.LINE
    custom_mask: list[str] = Field(default_factory=list, max_length=25)

    @field_validator("pattern", mode="before")
    @classmethod
    def _unknown_pattern_is_line(cls, v: Any) -> Any:  # noqa: ANN401
        if isinstance(v, str) and v not in _PATTERN_VALUES:
            return WinPattern.LINE
        return v


class StartGameMessage(BaseModel):
    type: Literal[ClientMessageType.START_GAME] = ClientMessageType.START_GAME
    pools: list[SourcePool] = Field(default_factory=list, max_length=10)
    song_order: list[str] | None = Field(default=None, max_length=5000)
    snippet_length: float | None = Field(default=None, ge=5, le=300)
    device_id: str | None = Field(default=None, min_length=1, max_length=200)
    random_starts: RandomStarts = RandomStarts.NONE
    pattern: WinPattern | None = None


class EndGameMessage(BaseModel):
    type: Literal[ClientMessageType.END_GAME] = ClientMessageType.END_GAME


class ResetGameMessage(BaseModel):
    type: Literal[ClientMessageType.RESET_GAME] = ClientMessageType.RESET_GAME


class NewRoundMessage(BaseModel):
    type: Literal[ClientMessageType.NEW_ROUND] = ClientMessageType.NEW_ROUND


class SetLockJoinsMessage(BaseModel):
    type: Literal[ClientMessageType.SET_LOCK_JOINS] = ClientMessageType.SET_LOCK_JOINS
    locked: bool


class SetPreQueueMessage(BaseModel):
    type: Literal[ClientMessageType.SET_PREQUEUE] = ClientMessageType.SET_PREQUEUE
    enabled: bool
    window: int = Field(default=10, ge=1, le=50)


class SetSuperStrictMessage(BaseModel):
    type: Literal[ClientMessageType.SET_SUPER_STRICT] = ClientMessageType.SET_SUPER_STRICT
    enabled: bool


class SetDeviceMessage(BaseModel):
    type: Literal[ClientMessageType.SET_DEVICE] = ClientMessageType.SET_DEVICE
    device_id: str = Field(min_length=1, max_length=200)
    device_name: str = Field(default="", max_length=200)


class PlayerBingoMessage(BaseModel):
    type: Literal[ClientMessageType.PLAYER_BINGO] = ClientMessageType.PLAYER_BINGO


class VerifyBingoMessage(BaseModel):
    type: Literal[ClientMessageType.VERIFY_BINGO] = ClientMessageType.VERIFY_BINGO
    player_id: str = Field(min_length=1, max_length=100)
    approved: bool
    reason: str = Field(default="", max_length=200)


class ContinueOrEndMessage(BaseModel):
    type: Literal[ClientMessageType.CONTINUE_OR_END] = ClientMessageType.CONTINUE_OR_END
    action: RoundDecision


class RequestPlayerCardsMessage(BaseModel):
    type: Literal[ClientMessageType.REQUEST_PLAYER_CARDS] = ClientMessageType.REQUEST_PLAYER_CARDS


class MarkSquareMessage(BaseModel):
    type: Literal[ClientMessageType.MARK_SQUARE] = ClientMessageType.MARK_SQUARE
    position: str = Field(pattern=_POSITION_PATTERN)
    song_id: str = Field(min_length=1, max_length=100)


class SkipSongMessage(BaseModel):
    type: Literal[ClientMessageType.SKIP_SONG] = ClientMessageType.SKIP_SONG


class PauseSongMessage(BaseModel):
    type: Literal[ClientMessageType.PAUSE_SONG] = ClientMessageType.PAUSE_SONG


class ResumeSongMessage(BaseModel):
    type: Literal[ClientMessageType.RESUME_SONG] = ClientMessageType.RESUME_SONG


class PreviousSongMessage(BaseModel):
    type: Literal[ClientMessageType.PREVIOUS_SONG] = ClientMessageType.PREVIOUS_SONG


class ShufflePlaylistMessage(BaseModel):
    type: Literal[ClientMessageType.SHUFFLE_PLAYLIST] = ClientMessageType.SHUFFLE_PLAYLIST


class ToggleRepeatMessage(BaseModel):
    type: Literal[ClientMessageType.TOGGLE_REPEAT] = ClientMessageType.TOGGLE_REPEAT


class SetVolumeMessage(BaseModel):
    type: Literal[ClientMessageType.SET_VOLUME] = ClientMessageType.SET_VOLUME
    volume: int = Field(ge=0, le=100)


class SeekSongMessage(BaseModel):
    type: Literal[ClientMessageType.SEEK_SONG] = ClientMessageType.SEEK_SONG
    position_ms: int = Field(ge=0)


class RevealCallMessage(BaseModel):
    type: Literal[ClientMessageType.REVEAL_CALL] = ClientMessageType.REVEAL_CALL
    hint: RevealHint = RevealHint.FULL
    reveal_to_display: bool = True
    reveal_to_players: bool = False


class ForceRefreshMessage(BaseModel):
    type: Literal[ClientMessageType.FORCE_REFRESH] = ClientMessageType.FORCE_REFRESH
    reason: str = Field(default="host-request", max_length=200)


ClientMessage = (
    JoinRoomMessage
    | SyncStateMessage
    | PingMessage
    | FinalizeMixMessage
    | SetPatternMessage
    | StartGameMessage
    | EndGameMessage
    | ResetGameMessage
    | NewRoundMessage
    | SetLockJoinsMessage
    | SetPreQueueMessage
    | SetSuperStrictMessage
    | SetDeviceMessage
    | PlayerBingoMessage
    | VerifyBingoMessage
    | ContinueOrEndMessage
    | RequestPlayerCardsMessage
    | MarkSquareMessage
    | SkipSongMessage
    | PauseSongMessage
    | ResumeSongMessage
    | PreviousSongMessage
    | ShufflePlaylistMessage
    | ToggleRepeatMessage
    | SetVolumeMessage
    | SeekSongMessage
    | RevealCallMessage
    | ForceRefreshMessage
)

_client_adapter = TypeAdapter(Annotated[ClientMessage, Field(discriminator="type")])


def parse_client_message(data: dict[str, Any]) -> ClientMessage:
    """Parse a raw dict into a typed ClientMessage."""
    return _client_adapter.validate_python(data)


# --- Outbound events ---


class PreQueueConfig(BaseModel):
    enabled: bool = False
    window: int = 10


class NowPlaying(BaseModel):
    song_id: str
    song_name: str
    artist_name: str
    preview_url: str | None = None


class RoomSnapshot(BaseModel):
    """Authoritative room state, sent on join and on explicit resync."""

    room_id: str
    game_state: GameState
    current_song: NowPlaying | None
    current_index: int
    total_songs: int
    snippet_length: float
    pattern: WinPattern
    custom_mask: list[str]
    round: int
    winners: list[Winner]
    round_winners: list[RoundWinner]
    played_songs: list[NowPlaying]
    lock_joins: bool
    prequeue: PreQueueConfig
    super_strict: bool
    repeat: bool
    mix_finalized: bool
    player_count: int
    is_host: bool
    card: BingoCard | None


class RoomJoinedMessage(RoomSnapshot):
    type: Literal[ServerMessageType.ROOM_JOINED] = ServerMessageType.ROOM_JOINED
    player_name: str
    client_id: str | None


class RoomStateMessage(RoomSnapshot):
    type: Literal[ServerMessageType.ROOM_STATE] = ServerMessageType.ROOM_STATE


class PlayerJoinedMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYER_JOINED] = ServerMessageType.PLAYER_JOINED
    player_name: str
    player_count: int


class PlayerLeftMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYER_LEFT] = ServerMessageType.PLAYER_LEFT
    player_name: str
    player_count: int


class HostChangedMessage(BaseModel):
    type: Literal[ServerMessageType.HOST_CHANGED] = ServerMessageType.HOST_CHANGED
    host_name: str | None


class GameStartedMessage(BaseModel):
    type: Literal[ServerMessageType.GAME_STARTED] = ServerMessageType.GAME_STARTED
    snippet_length: float
    pattern: WinPattern
    custom_mask: list[str]
    round: int
    total_songs: int


class SongPlayingMessage(NowPlaying):
    type: Literal[ServerMessageType.SONG_PLAYING] = ServerMessageType.SONG_PLAYING
    snippet_length: float
    current_index: int
    total_songs: int


class BingoCardMessage(BaseModel):
    type: Literal[ServerMessageType.BINGO_CARD] = ServerMessageType.BINGO_CARD
    card: BingoCard


class BingoResultMessage(BaseModel):
    type: Literal[ServerMessageType.BINGO_RESULT] = ServerMessageType.BINGO_RESULT
    success: bool
    reason: str | None = None
    awaiting_verification: bool = False
    verified: bool = False
    rejected: bool = False


class BingoCalledMessage(BaseModel):
    type: Literal[ServerMessageType.BINGO_CALLED] = ServerMessageType.BINGO_CALLED
    winner: Winner
    winners: list[Winner]


class BingoVerificationNeededMessage(BaseModel):
    """Sent to the host only: everything needed to check a claim by eye."""

    type: Literal[ServerMessageType.BINGO_VERIFICATION_NEEDED] = ServerMessageType.BINGO_VERIFICATION_NEEDED
    player_id: str
    player_name: str
    card: BingoCard
    pattern: WinPattern
    custom_mask: list[str]
    played_songs: list[NowPlaying]
    called_song_ids: list[str]
    current_index: int


class BingoVerificationPendingMessage(BaseModel):
    type: Literal[ServerMessageType.BINGO_VERIFICATION_PENDING] = ServerMessageType.BINGO_VERIFICATION_PENDING
    player_id: str
    player_name: str


class BingoConfirmedMessage(BaseModel):
    type: Literal[ServerMessageType.BINGO_CONFIRMED] = ServerMessageType.BINGO_CONFIRMED
    player_id: str
    player_name: str


class BingoVerifiedMessage(BaseModel):
    """Acknowledges the host's ruling back to the host."""

    type: Literal[ServerMessageType.BINGO_VERIFIED] = ServerMessageType.BINGO_VERIFIED
    approved: bool
    player_name: str
    reason: str | None = None
    round_number: int | None = None


class RoundCompleteMessage(BaseModel):
    type: Literal[ServerMessageType.ROUND_COMPLETE] = ServerMessageType.ROUND_COMPLETE
    winner: str
    round_number: int
    round_winners: list[RoundWinner]


class PlayerCardView(BaseModel):
    player_id: str
    player_name: str
    card: BingoCard


class PlayerCardsMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYER_CARDS] = ServerMessageType.PLAYER_CARDS
    cards: list[PlayerCardView]
    called_song_ids: list[str]


class PatternCompleteMessage(BaseModel):
    type: Literal[ServerMessageType.PATTERN_COMPLETE] = ServerMessageType.PATTERN_COMPLETE
    pattern: WinPattern


class MixFinalizedMessage(BaseModel):
    type: Literal[ServerMessageType.MIX_FINALIZED] = ServerMessageType.MIX_FINALIZED
    pool_names: list[str]
    mode: str
    total_songs: int


class GameEndedMessage(BaseModel):
    type: Literal[ServerMessageType.GAME_ENDED] = ServerMessageType.GAME_ENDED
    reason: GameEndReason
    winners: list[Winner]


class GameResetMessage(BaseModel):
    type: Literal[ServerMessageType.GAME_RESET] = ServerMessageType.GAME_RESET


class RoundResetMessage(BaseModel):
    type: Literal[ServerMessageType.ROUND_RESET] = ServerMessageType.ROUND_RESET
    round: int


class PatternUpdatedMessage(BaseModel):
    type: Literal[ServerMessageType.PATTERN_UPDATED] = ServerMessageType.PATTERN_UPDATED
    pattern: WinPattern
    custom_mask: list[str]


class PlaybackWarningMessage(BaseModel):
    """Non-fatal device trouble; the round keeps going."""

    type: Literal[ServerMessageType.PLAYBACK_WARNING] = ServerMessageType.PLAYBACK_WARNING
    message: str
    stalled: bool = False


class PlaybackErrorMessage(BaseModel):
    """Fatal to the attempted start/advance; the room stays in its last good state."""

    type: Literal[ServerMessageType.PLAYBACK_ERROR] = ServerMessageType.PLAYBACK_ERROR
    message: str


class PlaybackPausedMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYBACK_PAUSED] = ServerMessageType.PLAYBACK_PAUSED
    remaining_seconds: float


class PlaybackResumedMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYBACK_RESUMED] = ServerMessageType.PLAYBACK_RESUMED
    remaining_seconds: float


class LockJoinsUpdatedMessage(BaseModel):
    type: Literal[ServerMessageType.LOCK_JOINS_UPDATED] = ServerMessageType.LOCK_JOINS_UPDATED
    locked: bool


class PreQueueUpdatedMessage(PreQueueConfig):
    type: Literal[ServerMessageType.PREQUEUE_UPDATED] = ServerMessageType.PREQUEUE_UPDATED


class SuperStrictUpdatedMessage(BaseModel):
    type: Literal[ServerMessageType.SUPER_STRICT_UPDATED] = ServerMessageType.SUPER_STRICT_UPDATED
    enabled: bool


class DeviceSelectedMessage(BaseModel):
    type: Literal[ServerMessageType.DEVICE_SELECTED] = ServerMessageType.DEVICE_SELECTED
    device_id: str
    device_name: str


class OneBy75PoolMessage(BaseModel):
    """Staged reveal pool: identifiers only, never titles."""

    type: Literal[ServerMessageType.ONE_BY_75_POOL] = ServerMessageType.ONE_BY_75_POOL
    song_ids: list[str]


class FiveBy15PoolMessage(BaseModel):
    type: Literal[ServerMessageType.FIVE_BY_15_POOL] = ServerMessageType.FIVE_BY_15_POOL
    columns: list[list[str]]
    names: list[str]


class FiveBy15MapMessage(BaseModel):
    type: Literal[ServerMessageType.FIVE_BY_15_MAP] = ServerMessageType.FIVE_BY_15_MAP
    id_to_column: dict[str, int]


class PlaylistShuffledMessage(BaseModel):
    type: Literal[ServerMessageType.PLAYLIST_SHUFFLED] = ServerMessageType.PLAYLIST_SHUFFLED
    total_songs: int


class RepeatToggledMessage(BaseModel):
    type: Literal[ServerMessageType.REPEAT_TOGGLED] = ServerMessageType.REPEAT_TOGGLED
    repeat: bool


class VolumeChangedMessage(BaseModel):
    type: Literal[ServerMessageType.VOLUME_CHANGED] = ServerMessageType.VOLUME_CHANGED
    volume: int


class SongSeekedMessage(BaseModel):
    type: Literal[ServerMessageType.SONG_SEEKED] = ServerMessageType.SONG_SEEKED
    position_ms: int


class CallRevealedMessage(BaseModel):
    type: Literal[ServerMessageType.CALL_REVEALED] = ServerMessageType.CALL_REVEALED
    song_id: str
    hint: RevealHint
    snippet_length: float
    reveal_to_display: bool
    reveal_to_players: bool
    song_name: str | None = None
    artist_name: str | None = None


class ForceRefreshBroadcast(BaseModel):
    type: Literal[ServerMessageType.FORCE_REFRESH] = ServerMessageType.FORCE_REFRESH
    ts: int
    reason: str


class PongMessage(BaseModel):
    type: Literal[ServerMessageType.PONG] = ServerMessageType.PONG


class ErrorMessage(BaseModel):
    type: Literal[ServerMessageType.ERROR] = ServerMessageType.ERROR
    code: ErrorCode
    message: str
    required: int | None = None
    available: int | None = None
