"""Room and player state owned by the RoomStore."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel

from bingo.logic.enums import GameState, RandomStarts, WinPattern
from bingo.messaging.types import NowPlaying, PreQueueConfig

if TYPE_CHECKING:
    from bingo.logic.dealer import DealtPool
    from bingo.logic.types import BingoCard, RoundWinner, Song, Winner
    from bingo.messaging.protocol import ConnectionProtocol

DEFAULT_SNIPPET_SECONDS = 30.0


class RoomSummary(BaseModel):
    """Room lookup payload for the HTTP surface."""

    room_id: str
    player_count: int
    game_state: GameState
    current_song: NowPlaying | None
    mix_finalized: bool
    snippet_length: float
    has_playlist: bool
    round: int


def _now_playing(song: Song) -> NowPlaying:
    return NowPlaying(song_id=song.id, song_name=song.name, artist_name=song.artist, preview_url=song.preview_url)


@dataclass
class Player:
    """One connection in a room.

    client_id is supplied by the client and persists across reconnects;
    connection_id changes with every new socket.
    """

    connection: ConnectionProtocol
    name: str
    room_id: str
    join_order: int
    client_id: str | None = None
    is_host: bool = False
    has_won: bool = False
    pattern_complete: bool = False
    card: BingoCard | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    @property
    def is_display(self) -> bool:
        return "display" in self.name.lower()

    @property
    def is_contestant(self) -> bool:
        """Players who hold a card: not the host and not a display screen."""
        return not self.is_host and not self.is_display


@dataclass
class Room:
    room_id: str
    state: GameState = GameState.WAITING
    host_connection_id: str | None = None
    sequence: list[Song] = field(default_factory=list)
    current_index: int = -1
    current_song: Song | None = None
    current_start_ms: int = 0
    snippet_seconds: float = DEFAULT_SNIPPET_SECONDS
    pattern: WinPattern = WinPattern.LINE
    custom_mask: frozenset[str] = frozenset()
    round: int = 0
    winners: list[Winner] = field(default_factory=list)
    round_winners: list[RoundWinner] = field(default_factory=list)
    lock_joins: bool = False
    super_strict: bool = False
    repeat: bool = False
    volume: int | None = None
    muted: bool = False
    random_starts: RandomStarts = RandomStarts.NONE
    prequeue: PreQueueConfig = field(default_factory=PreQueueConfig)
    queued_song_ids: set[str] = field(default_factory=set)
    called_song_ids: list[str] = field(default_factory=list)
    mix_finalized: bool = False
    pool_names: list[str] = field(default_factory=list)
    dealt_pool: DealtPool | None = None
    players: dict[str, Player] = field(default_factory=dict)  # connection_id -> Player
    client_cards: dict[str, BingoCard] = field(default_factory=dict)  # client_id -> card
    device_ids: dict[str, str] = field(default_factory=dict)  # connection_id -> device id
    locked_device_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)
    _join_counter: int = 0

    def next_join_order(self) -> int:
        self._join_counter += 1
        return self._join_counter

    @property
    def is_empty(self) -> bool:
        return not self.players

    @property
    def in_progress(self) -> bool:
        return self.state in (GameState.PLAYING, GameState.PAUSED, GameState.VERIFYING, GameState.ROUND_COMPLETE)

    @property
    def player_count(self) -> int:
        """Players excluding the host and display-only connections."""
        return sum(1 for p in self.players.values() if p.is_contestant)

    @property
    def has_playlist(self) -> bool:
        return bool(self.sequence)

    @property
    def snippet_ms(self) -> int:
        return int(self.snippet_seconds * 1000)

    @property
    def host(self) -> Player | None:
        if self.host_connection_id is None:
            return None
        return self.players.get(self.host_connection_id)

    def is_host(self, connection_id: str) -> bool:
        """Either the recorded room host or a player carrying the host flag."""
        if connection_id == self.host_connection_id:
            return True
        player = self.players.get(connection_id)
        return player is not None and player.is_host

    def claim_host(self, player: Player) -> None:
        """Make player the only host, demoting any previous holder."""
        for other in self.players.values():
            other.is_host = False
        player.is_host = True
        self.host_connection_id = player.connection_id

    def earliest_joined(self) -> Player | None:
        """Deterministic host successor: the lowest join order still present."""
        return min(self.players.values(), key=lambda p: p.join_order, default=None)

    def contestants(self) -> list[Player]:
        return sorted((p for p in self.players.values() if p.is_contestant), key=lambda p: p.join_order)

    def mark_called(self, song_id: str) -> None:
        if song_id not in self.called_song_ids:
            self.called_song_ids.append(song_id)

    def pending_claim(self, player_id: str) -> Winner | None:
        return next((w for w in self.winners if w.player_id == player_id and not w.verified), None)

    @property
    def has_pending_claims(self) -> bool:
        return any(not w.verified for w in self.winners)

    def played_songs(self) -> list[NowPlaying]:
        """Songs called this round, in play order."""
        by_id = {song.id: song for song in self.sequence}
        return [_now_playing(by_id[song_id]) for song_id in self.called_song_ids if song_id in by_id]

    def now_playing(self) -> NowPlaying | None:
        if self.current_song is None:
            return None
        return _now_playing(self.current_song)

    def summary(self) -> RoomSummary:
        return RoomSummary(
            room_id=self.room_id,
            player_count=self.player_count,
            game_state=self.state,
            current_song=self.now_playing(),
            mix_finalized=self.mix_finalized,
            snippet_length=self.snippet_seconds,
            has_playlist=self.has_playlist,
            round=self.round,
        )
