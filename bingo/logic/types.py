from __future__ import annotations

from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

CARD_SIZE = 5
CARD_SQUARES = CARD_SIZE * CARD_SIZE


def position_key(row: int, col: int) -> str:
    return f"{row}-{col}"


class Song(BaseModel):
    """A playable track. Identity is the id; name and artist are descriptive only."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=100)
    name: str = Field(default="", max_length=300)
    artist: str = Field(default="", max_length=300)
    preview_url: str | None = None
    uri: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)

    @property
    def track_uri(self) -> str:
        return self.uri or f"spotify:track:{self.id}"


def unique_songs(songs: Iterable[Song]) -> list[Song]:
    """Drop repeated ids, keeping the first occurrence and the original order."""
    seen: set[str] = set()
    result: list[Song] = []
    for song in songs:
        if song.id in seen:
            continue
        seen.add(song.id)
        result.append(song)
    return result


class SourcePool(BaseModel):
    """One named song collection offered to the dealer."""

    name: str = Field(default="", max_length=200)
    songs: list[Song] = Field(default_factory=list, max_length=2000)


class BingoSquare(BaseModel):
    position: str
    song_id: str
    song_name: str
    artist_name: str
    marked: bool = False


class BingoCard(BaseModel):
    """A player's 5x5 card; squares are stored row-major."""

    owner_id: str
    squares: list[BingoSquare]

    @classmethod
    def from_songs(cls, owner_id: str, songs: Sequence[Song]) -> Self:
        if len(songs) != CARD_SQUARES:
            raise ValueError(f"a card needs exactly {CARD_SQUARES} songs, got {len(songs)}")
        squares = [
            BingoSquare(
                position=position_key(i // CARD_SIZE, i % CARD_SIZE),
                song_id=song.id,
                song_name=song.name,
                artist_name=song.artist,
            )
            for i, song in enumerate(songs)
        ]
        return cls(owner_id=owner_id, squares=squares)

    @property
    def song_ids(self) -> list[str]:
        return [s.song_id for s in self.squares]

    def get_square(self, position: str) -> BingoSquare | None:
        for square in self.squares:
            if square.position == position:
                return square
        return None

    def toggle(self, position: str, song_id: str) -> bool | None:
        """Flip the marked flag of one square.

        Returns the new flag, or None when the position does not hold that song
        (stale client view), in which case nothing changes.
        """
        square = self.get_square(position)
        if square is None or square.song_id != song_id:
            return None
        square.marked = not square.marked
        return square.marked

    def marked_positions(self, called_song_ids: set[str] | None = None) -> set[str]:
        """Positions currently marked, optionally restricted to songs already called."""
        return {
            s.position
            for s in self.squares
            if s.marked and (called_song_ids is None or s.song_id in called_song_ids)
        }


class Winner(BaseModel):
    player_name: str
    player_id: str | None = None  # connection id of the claimer
    client_id: str | None = None
    timestamp: int  # epoch milliseconds
    verified: bool = False


class RoundWinner(BaseModel):
    """A host-approved win, kept across new rounds until the game is reset."""

    round_number: int
    player_name: str
    timestamp: int
