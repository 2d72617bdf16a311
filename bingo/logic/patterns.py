"""Win-pattern validation against a card's marked squares."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bingo.logic.enums import WinPattern
from bingo.logic.types import CARD_SIZE, position_key

if TYPE_CHECKING:
    from collections.abc import Iterable

    from bingo.logic.types import BingoCard

_LAST = CARD_SIZE - 1
_CENTER = CARD_SIZE // 2


def _row(r: int) -> frozenset[str]:
    return frozenset(position_key(r, c) for c in range(CARD_SIZE))


def _col(c: int) -> frozenset[str]:
    return frozenset(position_key(r, c) for r in range(CARD_SIZE))


_MAIN_DIAGONAL = frozenset(position_key(i, i) for i in range(CARD_SIZE))
_ANTI_DIAGONAL = frozenset(position_key(i, _LAST - i) for i in range(CARD_SIZE))

LINES: tuple[frozenset[str], ...] = (
    *(_row(r) for r in range(CARD_SIZE)),
    *(_col(c) for c in range(CARD_SIZE)),
    _MAIN_DIAGONAL,
    _ANTI_DIAGONAL,
)

ALL_POSITIONS = frozenset(position_key(r, c) for r in range(CARD_SIZE) for c in range(CARD_SIZE))

# Fixed shapes; LINE and CUSTOM are resolved separately.
PATTERN_POSITIONS: dict[WinPattern, frozenset[str]] = {
    WinPattern.FULL_CARD: ALL_POSITIONS,
    WinPattern.FOUR_CORNERS: frozenset(
        {position_key(0, 0), position_key(0, _LAST), position_key(_LAST, 0), position_key(_LAST, _LAST)},
    ),
    WinPattern.X: _MAIN_DIAGONAL | _ANTI_DIAGONAL,
    WinPattern.T: _row(0) | _col(_CENTER),
    WinPattern.L: _col(0) | _row(_LAST),
    WinPattern.U: _col(0) | _col(_LAST) | _row(_LAST),
    WinPattern.PLUS: _row(_CENTER) | _col(_CENTER),
}


def normalize_custom_mask(mask: Iterable[str] | None) -> frozenset[str]:
    """Keep only well-formed "row-col" positions that exist on a card."""
    if not mask:
        return frozenset()
    return frozenset(p for p in mask if p in ALL_POSITIONS)


def satisfies_pattern(
    marked: set[str] | frozenset[str],
    pattern: WinPattern,
    custom_mask: frozenset[str] = frozenset(),
) -> bool:
    if pattern == WinPattern.LINE:
        return any(line <= marked for line in LINES)
    if pattern == WinPattern.CUSTOM:
        # an empty mask can never be won
        return bool(custom_mask) and custom_mask <= marked
    return PATTERN_POSITIONS[pattern] <= marked


def card_wins(
    card: BingoCard,
    pattern: WinPattern,
    custom_mask: frozenset[str] = frozenset(),
    called_song_ids: set[str] | None = None,
) -> bool:
    """Check a card against the active pattern.

    When called_song_ids is given, a marked square only counts if its song
    has already been played this round.
    """
    return satisfies_pattern(card.marked_positions(called_song_ids), pattern, custom_mask)
