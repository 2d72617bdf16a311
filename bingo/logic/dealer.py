"""Card dealing under the three sourcing modes.

Mode is picked from the shape of the offered pools, in priority order:

- 1x75: a single pool with at least 75 unique songs. One fixed 75-song pool
  (host order first when supplied, topped up with shuffled songs) is
  computed once and every card is an independent 25-song sample of it.
- 5x15: exactly five pools, each still holding at least 15 songs after
  removing songs already seen in an earlier pool. Each pool yields one fixed
  15-song column; every card takes 5 songs from each column.
- fallback: every pool merged and deduplicated; 25 songs sampled per card.

The fixed pool/columns are returned as a DealtPool that the room caches, so
late joiners are dealt from the same universe as everyone else.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from bingo.logic.enums import DealMode
from bingo.logic.exceptions import InsufficientSongsError
from bingo.logic.types import CARD_SIZE, CARD_SQUARES, BingoCard, Song, unique_songs

if TYPE_CHECKING:
    from collections.abc import Sequence

    from bingo.logic.types import SourcePool

logger = structlog.get_logger()

ONE_BY_75_POOL_SIZE = 75
FIVE_BY_15_POOLS = 5
FIVE_BY_15_COLUMN_SIZE = 15


@dataclass
class DealtPool:
    """The fixed song universe produced by one finalize/start."""

    mode: DealMode
    songs: list[Song]
    columns: list[list[Song]] = field(default_factory=list)
    column_names: list[str] = field(default_factory=list)
    play_order: list[Song] = field(default_factory=list)

    @property
    def song_ids(self) -> list[str]:
        return [s.id for s in self.songs]

    @property
    def column_ids(self) -> list[list[str]]:
        return [[s.id for s in column] for column in self.columns]

    def id_to_column(self) -> dict[str, int]:
        return {song.id: col for col, column in enumerate(self.columns) for song in column}


def _dedupe_across(pools: Sequence[SourcePool]) -> list[list[Song]]:
    """Per-pool song lists where a song seen in an earlier pool is dropped from later ones."""
    seen: set[str] = set()
    result: list[list[Song]] = []
    for pool in pools:
        kept: list[Song] = []
        for song in pool.songs:
            if song.id not in seen:
                seen.add(song.id)
                kept.append(song)
        result.append(kept)
    return result


def _apply_order(songs: Sequence[Song], order: Sequence[str] | None) -> list[Song]:
    """Host-ordered subset of songs: ids from order that exist in songs, deduplicated."""
    if not order:
        return []
    by_id = {s.id: s for s in songs}
    return unique_songs(by_id[song_id] for song_id in order if song_id in by_id)


class CardDealer:
    """Pure dealing algorithm; all randomness comes from the injected RNG."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()  # noqa: S311

    def _shuffled(self, songs: Sequence[Song]) -> list[Song]:
        result = list(songs)
        self._rng.shuffle(result)
        return result

    def select_mode(self, pools: Sequence[SourcePool]) -> DealMode:
        if len(pools) == 1 and len(unique_songs(pools[0].songs)) >= ONE_BY_75_POOL_SIZE:
            return DealMode.ONE_BY_75
        if len(pools) == FIVE_BY_15_POOLS and all(
            len(songs) >= FIVE_BY_15_COLUMN_SIZE for songs in _dedupe_across(pools)
        ):
            return DealMode.FIVE_BY_15
        return DealMode.FALLBACK

    def build_pool(
        self,
        pools: Sequence[SourcePool],
        host_order: Sequence[str] | None = None,
    ) -> DealtPool:
        """Compute the fixed universe for a round.

        Raises InsufficientSongsError when fewer than 25 unique songs are reachable.
        """
        mode = self.select_mode(pools)
        if mode is DealMode.ONE_BY_75:
            dealt = self._build_one_by_75(pools[0], host_order)
        elif mode is DealMode.FIVE_BY_15:
            dealt = self._build_five_by_15(pools)
        else:
            dealt = self._build_fallback(pools, host_order)

        if len(dealt.songs) < CARD_SQUARES:
            raise InsufficientSongsError(required=CARD_SQUARES, available=len(dealt.songs))
        logger.info("song pool built", mode=dealt.mode, pool_size=len(dealt.songs))
        return dealt

    def _build_one_by_75(self, pool: SourcePool, host_order: Sequence[str] | None) -> DealtPool:
        songs = unique_songs(pool.songs)
        ordered = _apply_order(songs, host_order)
        # host picks lead; a short order is topped up from the rest of the pool
        picked = {s.id for s in ordered}
        base = (ordered + self._shuffled([s for s in songs if s.id not in picked]))[:ONE_BY_75_POOL_SIZE]
        return DealtPool(mode=DealMode.ONE_BY_75, songs=base, play_order=list(base))

    def _build_five_by_15(self, pools: Sequence[SourcePool]) -> DealtPool:
        columns = [self._shuffled(songs)[:FIVE_BY_15_COLUMN_SIZE] for songs in _dedupe_across(pools)]
        names = [pool.name or f"Column {i + 1}" for i, pool in enumerate(pools)]
        flat = [song for column in columns for song in column]
        return DealtPool(
            mode=DealMode.FIVE_BY_15,
            songs=flat,
            columns=columns,
            column_names=names,
            play_order=self._shuffled(flat),
        )

    def _build_fallback(self, pools: Sequence[SourcePool], host_order: Sequence[str] | None) -> DealtPool:
        merged = unique_songs(song for pool in pools for song in pool.songs)
        ordered = _apply_order(merged, host_order)
        play_order = ordered or self._shuffled(merged)
        return DealtPool(mode=DealMode.FALLBACK, songs=merged, play_order=play_order)

    def deal_card(self, dealt: DealtPool, owner_id: str) -> BingoCard:
        """Draw a fresh card for one player from an already fixed universe."""
        if dealt.mode is DealMode.FIVE_BY_15:
            return BingoCard.from_songs(owner_id, self._five_by_15_picks(dealt))
        if len(dealt.songs) < CARD_SQUARES:
            raise InsufficientSongsError(required=CARD_SQUARES, available=len(dealt.songs))
        return BingoCard.from_songs(owner_id, self._rng.sample(dealt.songs, CARD_SQUARES))

    def _five_by_15_picks(self, dealt: DealtPool) -> list[Song]:
        used: set[str] = set()
        picks: list[list[Song]] = []
        for column in dealt.columns:
            column_picks: list[Song] = []
            for song in self._shuffled(column):
                if song.id not in used:
                    used.add(song.id)
                    column_picks.append(song)
                if len(column_picks) == CARD_SIZE:
                    break
            if len(column_picks) < CARD_SIZE:
                raise InsufficientSongsError(required=CARD_SQUARES, available=len(used))
            picks.append(column_picks)
        # column-major picks, row-major squares
        return [picks[col][row] for row in range(CARD_SIZE) for col in range(CARD_SIZE)]

    def deal(
        self,
        pools: Sequence[SourcePool],
        owner_ids: Sequence[str],
        host_order: Sequence[str] | None = None,
    ) -> tuple[DealtPool, dict[str, BingoCard]]:
        """Build the fixed universe and one card per owner. No card is issued on failure."""
        dealt = self.build_pool(pools, host_order)
        cards = {owner_id: self.deal_card(dealt, owner_id) for owner_id in owner_ids}
        return dealt, cards

    def shuffle_sequence(self, songs: Sequence[Song]) -> list[Song]:
        return self._shuffled(songs)
