from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any

import structlog

from bingo.logic.dealer import CardDealer
from bingo.logic.enums import DealMode, GameEndReason, GameState, RevealHint, RoundDecision, WinPattern
from bingo.logic.exceptions import AuthorizationDeniedError, InsufficientSongsError, NoLockedDeviceError
from bingo.logic.patterns import card_wins, normalize_custom_mask
from bingo.logic.types import CARD_SQUARES, RoundWinner, Winner
from bingo.messaging.types import (
    BingoCalledMessage,
    BingoCardMessage,
    BingoConfirmedMessage,
    BingoResultMessage,
    BingoVerificationNeededMessage,
    BingoVerificationPendingMessage,
    BingoVerifiedMessage,
    CallRevealedMessage,
    DeviceSelectedMessage,
    ErrorCode,
    ErrorMessage,
    FiveBy15MapMessage,
    FiveBy15PoolMessage,
    ForceRefreshBroadcast,
    GameResetMessage,
    GameStartedMessage,
    HostChangedMessage,
    LockJoinsUpdatedMessage,
    MixFinalizedMessage,
    OneBy75PoolMessage,
    PatternCompleteMessage,
    PatternUpdatedMessage,
    PlaybackErrorMessage,
    PlayerJoinedMessage,
    PlayerCardsMessage,
    PlayerCardView,
    PlayerLeftMessage,
    PlaylistShuffledMessage,
    PongMessage,
    PreQueueConfig,
    PreQueueUpdatedMessage,
    RepeatToggledMessage,
    RoomJoinedMessage,
    RoomStateMessage,
    RoundCompleteMessage,
    RoundResetMessage,
    SongPlayingMessage,
    SuperStrictUpdatedMessage,
)
from bingo.playback.credentials import LockedDevice
from bingo.playback.scheduler import PlaybackScheduler
from bingo.session.broadcast import broadcast_to_room
from bingo.session.heartbeat import HeartbeatMonitor
from bingo.session.room import Player
from bingo.session.room_store import RoomStore

if TYPE_CHECKING:
    import random
    from collections.abc import Sequence

    from pydantic import BaseModel

    from bingo.logic.dealer import DealtPool
    from bingo.logic.types import BingoCard, SourcePool
    from bingo.messaging.protocol import ConnectionProtocol
    from bingo.messaging.types import (
        ContinueOrEndMessage,
        FinalizeMixMessage,
        ForceRefreshMessage,
        JoinRoomMessage,
        MarkSquareMessage,
        RevealCallMessage,
        SeekSongMessage,
        SetDeviceMessage,
        SetLockJoinsMessage,
        SetPatternMessage,
        SetPreQueueMessage,
        SetSuperStrictMessage,
        SetVolumeMessage,
        StartGameMessage,
        VerifyBingoMessage,
    )
    from bingo.playback.controller import PlaybackController
    from bingo.playback.credentials import DeviceStore
    from bingo.playback.scheduler import SchedulerConfig
    from bingo.session.room import Room, RoomSummary

logger = structlog.get_logger()

_ROOM_REAPER_INTERVAL = 60  # seconds between reaper checks

# claims are accepted while songs are being called, including during review of another claim
_CLAIMABLE_STATES = (GameState.PLAYING, GameState.PAUSED, GameState.VERIFYING)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _card_owner(player: Player) -> str:
    return player.client_id or player.connection_id


class SessionManager:
    """Room membership, game lifecycle and win validation.

    Host-only commands raise AuthorizationDeniedError; the router turns it
    into an error event. Playback transport is delegated to the
    PlaybackScheduler, which owns every timer.
    """

    def __init__(
        self,
        controller: PlaybackController,
        device_store: DeviceStore,
        *,
        max_rooms: int = 200,
        room_ttl_seconds: int = 0,
        default_snippet_seconds: float = 30,
        scheduler_config: SchedulerConfig | None = None,
        rng: random.Random | None = None,
        heartbeat: HeartbeatMonitor | None = None,
    ) -> None:
        self._controller = controller
        self._device_store = device_store
        self._store = RoomStore(max_rooms=max_rooms)
        self._dealer = CardDealer(rng)
        self._scheduler = PlaybackScheduler(
            controller,
            device_store,
            self._store.get,
            broadcast_to_room,
            config=scheduler_config,
            rng=rng,
        )
        self._heartbeat = heartbeat or HeartbeatMonitor()
        self._default_snippet_seconds = default_snippet_seconds
        self._room_ttl_seconds = room_ttl_seconds
        self._connections: dict[str, ConnectionProtocol] = {}
        self._room_reaper_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> RoomStore:
        return self._store

    @property
    def scheduler(self) -> PlaybackScheduler:
        return self._scheduler

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    @property
    def room_count(self) -> int:
        return self._store.room_count

    def get_room(self, room_id: str) -> Room | None:
        return self._store.get(room_id)

    def room_summaries(self) -> list[RoomSummary]:
        return [room.summary() for room in self._store.rooms()]

    def register_connection(self, connection: ConnectionProtocol) -> None:
        self._connections[connection.connection_id] = connection
        self._heartbeat.record_connect(connection.connection_id)

    def unregister_connection(self, connection: ConnectionProtocol) -> None:
        self._connections.pop(connection.connection_id, None)
        self._heartbeat.record_disconnect(connection.connection_id)

    async def _send(self, connection: ConnectionProtocol, message: BaseModel) -> None:
        with contextlib.suppress(RuntimeError, OSError):
            await connection.send_message(message.model_dump())

    async def _broadcast(self, room: Room, message: BaseModel) -> None:
        await broadcast_to_room(room, message.model_dump())

    async def _send_error(self, connection: ConnectionProtocol, code: ErrorCode, message: str) -> None:
        logger.warning("session error sent to client", error_code=code.value, error_message=message)
        await self._send(connection, ErrorMessage(code=code, message=message))

    async def _context(self, connection: ConnectionProtocol) -> tuple[Room, Player] | None:
        """The sender's room and player record, or None after telling them they are not in one."""
        player = self._store.player_for(connection.connection_id)
        room = self._store.get(player.room_id) if player is not None else None
        if player is None or room is None:
            await self._send_error(connection, ErrorCode.NOT_IN_ROOM, "You must join a room first")
            return None
        return room, player

    async def _host_context(self, connection: ConnectionProtocol, command: str) -> tuple[Room, Player] | None:
        ctx = await self._context(connection)
        if ctx is None:
            return None
        room, _ = ctx
        if not room.is_host(connection.connection_id):
            raise AuthorizationDeniedError(command)
        return ctx

    # --- Membership ---

    async def join_room(self, connection: ConnectionProtocol, room_id: str, message: JoinRoomMessage) -> None:
        connection_id = connection.connection_id
        if self._store.player_for(connection_id) is not None:
            await self.sync_state(connection)
            return

        room, created = self._store.get_or_create(room_id)
        if created:
            room.snippet_seconds = self._default_snippet_seconds
            self._heartbeat.start_for_room(room_id, self._store.get)

        client_id = message.client_id or connection.client_id
        returning = client_id is not None and client_id in room.client_cards
        if room.lock_joins and not message.is_host and not returning:
            await self._send_error(connection, ErrorCode.ROOM_LOCKED, "This room is not accepting new players")
            return

        player = Player(
            connection=connection,
            name=message.player_name,
            room_id=room_id,
            join_order=room.next_join_order(),
            client_id=client_id,
        )
        self._store.add_player(room, player)

        host_changed = False
        if message.is_host:
            host_changed = room.host_connection_id != connection_id
            room.claim_host(player)

        player.card = self._card_for_joiner(room, player)
        logger.info(
            "player joined room",
            player_name=player.name,
            is_host=player.is_host,
            returning=returning,
            player_count=room.player_count,
        )

        await self._send(
            connection,
            RoomJoinedMessage(
                **self._snapshot(room, player),
                player_name=player.name,
                client_id=player.client_id,
            ),
        )
        await broadcast_to_room(
            room,
            PlayerJoinedMessage(player_name=player.name, player_count=room.player_count).model_dump(),
        )
        if host_changed:
            await self._broadcast(room, HostChangedMessage(host_name=player.name))

        # a late joiner hears the current song right away instead of waiting for the next one
        if not player.is_host and room.in_progress and room.current_song is not None:
            await self._send(connection, self._song_playing(room))

    def _card_for_joiner(self, room: Room, player: Player) -> BingoCard | None:
        if player.client_id is not None:
            existing = room.client_cards.get(player.client_id)
            if existing is not None:
                return existing
        if room.dealt_pool is None or player.is_display:
            return None
        try:
            card = self._dealer.deal_card(room.dealt_pool, _card_owner(player))
        except InsufficientSongsError as e:
            logger.warning("could not deal late-join card", player_name=player.name, error=str(e))
            return None
        if player.client_id is not None:
            room.client_cards[player.client_id] = card
        return card

    async def leave_room(self, connection: ConnectionProtocol) -> None:
        """Drop a connection from its room. Room timers survive unless the room empties."""
        player = self._store.remove_player(connection.connection_id)
        if player is None:
            return
        room = self._store.get(player.room_id)
        if room is None:
            return

        logger.info("player left room", player_name=player.name)
        if room.is_empty:
            await self._close_room(room.room_id)
            return

        if player.is_host or room.host_connection_id == player.connection_id:
            successor = room.earliest_joined()
            if successor is not None:
                room.claim_host(successor)
                logger.info("host reassigned", host_name=successor.name)
                await self._broadcast(room, HostChangedMessage(host_name=successor.name))

        await self._broadcast(room, PlayerLeftMessage(player_name=player.name, player_count=room.player_count))

    async def _close_room(self, room_id: str) -> None:
        self._scheduler.teardown(room_id)
        self._store.remove(room_id)
        await self._heartbeat.stop_for_room(room_id)

    # --- Resync ---

    def _snapshot(self, room: Room, player: Player) -> dict[str, Any]:
        return {
            "room_id": room.room_id,
            "game_state": room.state,
            "current_song": room.now_playing(),
            "current_index": room.current_index,
            "total_songs": len(room.sequence),
            "snippet_length": room.snippet_seconds,
            "pattern": room.pattern,
            "custom_mask": sorted(room.custom_mask),
            "round": room.round,
            "winners": room.winners,
            "round_winners": room.round_winners,
            "played_songs": room.played_songs(),
            "lock_joins": room.lock_joins,
            "prequeue": room.prequeue,
            "super_strict": room.super_strict,
            "repeat": room.repeat,
            "mix_finalized": room.mix_finalized,
            "player_count": room.player_count,
            "is_host": room.is_host(player.connection_id),
            "card": player.card,
        }

    def _song_playing(self, room: Room) -> SongPlayingMessage:
        song = room.current_song
        return SongPlayingMessage(
            song_id=song.id,
            song_name=song.name,
            artist_name=song.artist,
            preview_url=song.preview_url,
            snippet_length=room.snippet_seconds,
            current_index=room.current_index,
            total_songs=len(room.sequence),
        )

    async def sync_state(self, connection: ConnectionProtocol) -> None:
        """Authoritative room state for the requester. Safe to call any number of times."""
        ctx = await self._context(connection)
        if ctx is None:
            return
        room, player = ctx
        await self._send(connection, RoomStateMessage(**self._snapshot(room, player)))
        if room.in_progress and room.current_song is not None:
            await self._send(connection, self._song_playing(room))

    async def handle_ping(self, connection: ConnectionProtocol) -> None:
        self._heartbeat.record_ping(connection.connection_id)
        await self._send(connection, PongMessage())

    # --- Dealing ---

    async def _deal(self, room: Room, pools: Sequence[SourcePool], song_order: Sequence[str] | None) -> DealtPool:
        """Build the room's fixed pool and deal every card holder a fresh card.

        Raises InsufficientSongsError before touching room state.
        """
        holders = [p for p in room.players.values() if not p.is_display]
        dealt, cards = self._dealer.deal(pools, [_card_owner(p) for p in holders], song_order)

        room.dealt_pool = dealt
        room.sequence = list(dealt.play_order)
        room.queued_song_ids.clear()
        room.client_cards.clear()
        room.mix_finalized = True
        for player in holders:
            player.card = cards[_card_owner(player)]
            player.has_won = False
            player.pattern_complete = False
            if player.client_id is not None:
                room.client_cards[player.client_id] = player.card

        await self._announce_pool(room, dealt)
        for player in holders:
            await self._send(player.connection, BingoCardMessage(card=player.card))
        logger.info("cards dealt", mode=dealt.mode, cards=len(holders), total_songs=len(room.sequence))
        return dealt

    async def _redeal(self, room: Room) -> None:
        """Fresh cards from the already cached pool (new round)."""
        if room.dealt_pool is None:
            return
        for player in room.players.values():
            if player.is_display:
                continue
            player.card = self._dealer.deal_card(room.dealt_pool, _card_owner(player))
            if player.client_id is not None:
                room.client_cards[player.client_id] = player.card
            await self._send(player.connection, BingoCardMessage(card=player.card))

    async def _announce_pool(self, room: Room, dealt: DealtPool) -> None:
        if dealt.mode == DealMode.ONE_BY_75:
            await self._broadcast(room, OneBy75PoolMessage(song_ids=dealt.song_ids))
        elif dealt.mode == DealMode.FIVE_BY_15:
            await self._broadcast(room, FiveBy15PoolMessage(columns=dealt.column_ids, names=dealt.column_names))
            await self._broadcast(room, FiveBy15MapMessage(id_to_column=dealt.id_to_column()))

    async def finalize_mix(self, connection: ConnectionProtocol, message: FinalizeMixMessage) -> None:
        ctx = await self._host_context(connection, "finalize the mix")
        if ctx is None:
            return
        room, _ = ctx
        if room.mix_finalized and room.dealt_pool is not None:
            # repeated finalize only re-confirms to the sender
            await self._send(connection, self._mix_finalized(room, room.dealt_pool))
            return
        dealt = await self._deal(room, message.pools, message.song_order)
        room.pool_names = [pool.name for pool in message.pools]
        await self._broadcast(room, self._mix_finalized(room, dealt))

    @staticmethod
    def _mix_finalized(room: Room, dealt: DealtPool) -> MixFinalizedMessage:
        return MixFinalizedMessage(pool_names=room.pool_names, mode=dealt.mode, total_songs=len(room.sequence))

    # --- Game lifecycle ---

    async def set_pattern(self, connection: ConnectionProtocol, message: SetPatternMessage) -> None:
        ctx = await self._host_context(connection, "set the pattern")
        if ctx is None:
            return
        room, _ = ctx
        room.pattern = message.pattern
        custom = message.pattern == WinPattern.CUSTOM
        room.custom_mask = normalize_custom_mask(message.custom_mask) if custom else frozenset()
        logger.info("pattern updated", pattern=room.pattern, custom_mask=sorted(room.custom_mask))
        await self._broadcast(room, PatternUpdatedMessage(pattern=room.pattern, custom_mask=sorted(room.custom_mask)))

    async def start_game(self, connection: ConnectionProtocol, message: StartGameMessage) -> None:
        ctx = await self._host_context(connection, "start the game")
        if ctx is None:
            return
        room, _ = ctx
        if room.state != GameState.WAITING:
            # an ended round goes back to waiting only through new_round or reset_game
            await self._send_error(connection, ErrorCode.INVALID_STATE, f"Cannot start a game while {room.state}")
            return

        if message.device_id:
            room.locked_device_id = message.device_id
        # fail fast on a missing device before any state changes
        try:
            self._scheduler.resolve_device(room)
        except NoLockedDeviceError as e:
            logger.warning("start refused, no locked device")
            await self._broadcast(room, PlaybackErrorMessage(message=str(e)))
            return

        if room.dealt_pool is None:
            if not message.pools:
                raise InsufficientSongsError(required=CARD_SQUARES, available=0)
            dealt = await self._deal(room, message.pools, message.song_order)
            room.pool_names = [pool.name for pool in message.pools]
            await self._broadcast(room, self._mix_finalized(room, dealt))
        else:
            await self._deal_missing_cards(room)

        if message.snippet_length is not None:
            room.snippet_seconds = message.snippet_length
        if message.pattern is not None:
            room.pattern = message.pattern
        room.random_starts = message.random_starts
        room.state = GameState.PLAYING
        room.current_index = -1
        room.current_song = None
        room.called_song_ids.clear()
        room.queued_song_ids.clear()

        logger.info(
            "game started",
            total_songs=len(room.sequence),
            snippet_seconds=room.snippet_seconds,
            pattern=room.pattern,
            random_starts=room.random_starts,
        )
        await self._broadcast(
            room,
            GameStartedMessage(
                snippet_length=room.snippet_seconds,
                pattern=room.pattern,
                custom_mask=sorted(room.custom_mask),
                round=room.round,
                total_songs=len(room.sequence),
            ),
        )
        await self._scheduler.start(room)

    async def _deal_missing_cards(self, room: Room) -> None:
        for player in room.players.values():
            if player.card is not None or player.is_display:
                continue
            player.card = self._card_for_joiner(room, player)
            if player.card is not None:
                await self._send(player.connection, BingoCardMessage(card=player.card))

    async def end_game(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "end the game")
        if ctx is None:
            return
        room, _ = ctx
        await self._scheduler.end_round(room, GameEndReason.HOST_ENDED)

    def _clear_round(self, room: Room) -> None:
        room.state = GameState.WAITING
        room.current_index = -1
        room.current_song = None
        room.current_start_ms = 0
        room.winners = []
        room.called_song_ids.clear()
        room.queued_song_ids.clear()
        room.client_cards.clear()
        for player in room.players.values():
            player.has_won = False
            player.pattern_complete = False
            player.card = None

    async def new_round(self, connection: ConnectionProtocol) -> None:
        """Clear winners and cards, then deal fresh cards from the cached pool."""
        ctx = await self._host_context(connection, "start a new round")
        if ctx is None:
            return
        room, _ = ctx
        await self._scheduler.halt(room)
        self._clear_round(room)
        room.round += 1
        logger.info("new round", round=room.round)
        await self._broadcast(room, RoundResetMessage(round=room.round))
        await self._redeal(room)

    async def reset_game(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "reset the game")
        if ctx is None:
            return
        room, _ = ctx
        await self._scheduler.halt(room)
        self._clear_round(room)
        room.round = 0
        room.round_winners = []
        room.sequence = []
        room.dealt_pool = None
        room.pool_names = []
        room.mix_finalized = False
        logger.info("game reset")
        await self._broadcast(room, GameResetMessage())

    # --- Room settings ---

    async def set_lock_joins(self, connection: ConnectionProtocol, message: SetLockJoinsMessage) -> None:
        ctx = await self._host_context(connection, "lock joins")
        if ctx is None:
            return
        room, _ = ctx
        room.lock_joins = message.locked
        logger.info("lock joins updated", locked=room.lock_joins)
        await self._broadcast(room, LockJoinsUpdatedMessage(locked=room.lock_joins))

    async def set_prequeue(self, connection: ConnectionProtocol, message: SetPreQueueMessage) -> None:
        ctx = await self._host_context(connection, "change pre-queue")
        if ctx is None:
            return
        room, _ = ctx
        room.prequeue = PreQueueConfig(enabled=message.enabled, window=message.window)
        if not message.enabled:
            room.queued_song_ids.clear()
        await self._broadcast(room, PreQueueUpdatedMessage(enabled=message.enabled, window=message.window))

    async def set_super_strict(self, connection: ConnectionProtocol, message: SetSuperStrictMessage) -> None:
        ctx = await self._host_context(connection, "change strict verification")
        if ctx is None:
            return
        room, _ = ctx
        room.super_strict = message.enabled
        await self._broadcast(room, SuperStrictUpdatedMessage(enabled=room.super_strict))

    async def set_device(self, connection: ConnectionProtocol, message: SetDeviceMessage) -> None:
        ctx = await self._host_context(connection, "select the device")
        if ctx is None:
            return
        room, _ = ctx
        room.device_ids[connection.connection_id] = message.device_id
        room.locked_device_id = message.device_id
        try:
            self._device_store.save(LockedDevice(id=message.device_id, name=message.device_name))
        except OSError as e:
            logger.warning("could not persist locked device", error=str(e))
        await self._broadcast(room, DeviceSelectedMessage(device_id=message.device_id, device_name=message.device_name))

    # --- Cards and claims ---

    def _wins(self, room: Room, card: BingoCard) -> bool:
        # only songs already played this round count toward a win
        return card_wins(card, room.pattern, room.custom_mask, set(room.called_song_ids))

    async def mark_square(self, connection: ConnectionProtocol, message: MarkSquareMessage) -> None:
        ctx = await self._context(connection)
        if ctx is None:
            return
        room, player = ctx
        if player.card is None:
            await self._send_error(connection, ErrorCode.NO_CARD, "No bingo card assigned")
            return
        square = player.card.get_square(message.position)
        if room.super_strict and square is not None and not square.marked:
            if message.song_id not in room.called_song_ids:
                await self._send_error(connection, ErrorCode.INVALID_STATE, "That song has not been played yet")
                return
        if player.card.toggle(message.position, message.song_id) is None:
            logger.warning("mark ignored, square does not hold that song", position=message.position)
            return
        complete = self._wins(room, player.card)
        if complete and not player.pattern_complete:
            await self._send(connection, PatternCompleteMessage(pattern=room.pattern))
        player.pattern_complete = complete

    async def player_bingo(self, connection: ConnectionProtocol) -> None:
        """Validate a claim and hand it to the host for a ruling."""
        ctx = await self._context(connection)
        if ctx is None:
            return
        room, player = ctx
        if player.card is None:
            await self._send(connection, BingoResultMessage(success=False, reason="No bingo card assigned"))
            return
        if room.state not in _CLAIMABLE_STATES:
            await self._send(connection, BingoResultMessage(success=False, reason="No round in progress"))
            return
        if player.has_won:
            await self._send(connection, BingoResultMessage(success=False, reason="You have already called bingo"))
            return
        if not self._wins(room, player.card):
            logger.info("bingo claim rejected", player_name=player.name, pattern=room.pattern)
            await self._send(connection, BingoResultMessage(success=False, reason="Pattern not complete"))
            return

        player.has_won = True
        winner = Winner(
            player_name=player.name,
            player_id=player.connection_id,
            client_id=player.client_id,
            timestamp=_now_ms(),
        )
        room.winners.append(winner)
        await self._scheduler.hold_for_verification(room)
        logger.info("bingo claimed, awaiting host", player_name=player.name, pending=len(room.winners))

        await self._send(connection, BingoResultMessage(success=True, awaiting_verification=True))
        host = room.host
        if host is not None:
            await self._send(
                host.connection,
                BingoVerificationNeededMessage(
                    player_id=player.connection_id,
                    player_name=player.name,
                    card=player.card,
                    pattern=room.pattern,
                    custom_mask=sorted(room.custom_mask),
                    played_songs=room.played_songs(),
                    called_song_ids=list(room.called_song_ids),
                    current_index=room.current_index,
                ),
            )
        await self._broadcast(
            room, BingoVerificationPendingMessage(player_id=player.connection_id, player_name=player.name)
        )

    async def verify_bingo(self, connection: ConnectionProtocol, message: VerifyBingoMessage) -> None:
        ctx = await self._host_context(connection, "verify bingo claims")
        if ctx is None:
            return
        room, _ = ctx
        player = room.players.get(message.player_id)
        winner = room.pending_claim(message.player_id)
        if player is None or winner is None:
            logger.warning("verification for unknown claim", player_id=message.player_id)
            await self._send_error(connection, ErrorCode.INVALID_STATE, "No pending bingo claim for that player")
            return
        if message.approved:
            await self._approve_claim(room, player, winner, connection)
        else:
            await self._reject_claim(room, player, winner, connection, message.reason)

    async def _approve_claim(
        self, room: Room, player: Player, winner: Winner, host_connection: ConnectionProtocol
    ) -> None:
        winner.verified = True
        round_winner = RoundWinner(
            round_number=len(room.round_winners) + 1,
            player_name=player.name,
            timestamp=winner.timestamp,
        )
        room.round_winners.append(round_winner)
        await self._scheduler.complete_round(room)
        logger.info("bingo approved", player_name=player.name, round_number=round_winner.round_number)

        await self._send(player.connection, BingoResultMessage(success=True, verified=True))
        await self._broadcast(room, BingoConfirmedMessage(player_id=player.connection_id, player_name=player.name))
        await self._broadcast(room, BingoCalledMessage(winner=winner, winners=room.winners))
        await self._send(
            host_connection,
            BingoVerifiedMessage(approved=True, player_name=player.name, round_number=round_winner.round_number),
        )
        await self._broadcast(
            room,
            RoundCompleteMessage(
                winner=player.name,
                round_number=round_winner.round_number,
                round_winners=room.round_winners,
            ),
        )

    async def _reject_claim(
        self, room: Room, player: Player, winner: Winner, host_connection: ConnectionProtocol, reason: str
    ) -> None:
        room.winners.remove(winner)
        player.has_won = False
        player.pattern_complete = False
        logger.info("bingo rejected", player_name=player.name, reason=reason)

        await self._send(
            player.connection,
            BingoResultMessage(
                success=False,
                reason=f"Bingo rejected: {reason or 'Invalid pattern'}",
                rejected=True,
            ),
        )
        await self._send(host_connection, BingoVerifiedMessage(approved=False, player_name=player.name, reason=reason))
        if room.state == GameState.VERIFYING and not room.has_pending_claims:
            await self._scheduler.resume(room, from_states=(GameState.VERIFYING,))

    async def continue_or_end(self, connection: ConnectionProtocol, message: ContinueOrEndMessage) -> None:
        """Host decision after a ruling: keep playing the same round or end it."""
        ctx = await self._host_context(connection, "continue or end the round")
        if ctx is None:
            return
        room, _ = ctx
        if not room.in_progress:
            await self._send_error(connection, ErrorCode.INVALID_STATE, "No round in progress")
            return
        if message.action == RoundDecision.END:
            await self._scheduler.end_round(room, GameEndReason.HOST_ENDED)
            return
        if room.state not in (GameState.VERIFYING, GameState.ROUND_COMPLETE):
            await self._send_error(connection, ErrorCode.INVALID_STATE, "There is no finished round to continue")
            return
        logger.info("round continues", round_winners=len(room.round_winners))
        await self._scheduler.resume(room, from_states=(GameState.VERIFYING, GameState.ROUND_COMPLETE))

    async def request_player_cards(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "view player cards")
        if ctx is None:
            return
        room, _ = ctx
        cards = [
            PlayerCardView(player_id=p.connection_id, player_name=p.name, card=p.card)
            for p in room.contestants()
            if p.card is not None
        ]
        await self._send(connection, PlayerCardsMessage(cards=cards, called_song_ids=list(room.called_song_ids)))

    # --- Transport ---

    async def skip_song(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "skip songs")
        if ctx is not None:
            await self._scheduler.skip(ctx[0])

    async def previous_song(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "go back a song")
        if ctx is not None:
            await self._scheduler.previous(ctx[0])

    async def pause_song(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "pause playback")
        if ctx is not None:
            await self._scheduler.pause(ctx[0])

    async def resume_song(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "resume playback")
        if ctx is not None:
            await self._scheduler.resume(ctx[0])

    async def set_volume(self, connection: ConnectionProtocol, message: SetVolumeMessage) -> None:
        ctx = await self._host_context(connection, "change the volume")
        if ctx is not None:
            await self._scheduler.set_volume(ctx[0], message.volume)

    async def seek_song(self, connection: ConnectionProtocol, message: SeekSongMessage) -> None:
        ctx = await self._host_context(connection, "seek")
        if ctx is not None:
            await self._scheduler.seek(ctx[0], message.position_ms)

    async def shuffle_playlist(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "shuffle the playlist")
        if ctx is None:
            return
        room, _ = ctx
        if not room.sequence:
            await self._send_error(connection, ErrorCode.INVALID_STATE, "There is no playlist to shuffle")
            return
        await self._scheduler.reorder(room, self._dealer.shuffle_sequence)
        await self._broadcast(room, PlaylistShuffledMessage(total_songs=len(room.sequence)))

    async def toggle_repeat(self, connection: ConnectionProtocol) -> None:
        ctx = await self._host_context(connection, "toggle repeat")
        if ctx is None:
            return
        room, _ = ctx
        room.repeat = not room.repeat
        await self._broadcast(room, RepeatToggledMessage(repeat=room.repeat))

    async def reveal_call(self, connection: ConnectionProtocol, message: RevealCallMessage) -> None:
        ctx = await self._host_context(connection, "reveal the call")
        if ctx is None:
            return
        room, _ = ctx
        song = room.current_song
        if song is None:
            await self._send_error(connection, ErrorCode.INVALID_STATE, "No song is playing")
            return
        show_title = message.hint in (RevealHint.TITLE, RevealHint.FULL)
        show_artist = message.hint in (RevealHint.ARTIST, RevealHint.FULL)
        await self._broadcast(
            room,
            CallRevealedMessage(
                song_id=song.id,
                hint=message.hint,
                snippet_length=room.snippet_seconds,
                reveal_to_display=message.reveal_to_display,
                reveal_to_players=message.reveal_to_players,
                song_name=song.name if show_title else None,
                artist_name=song.artist if show_artist else None,
            ),
        )

    async def force_refresh(self, connection: ConnectionProtocol, message: ForceRefreshMessage) -> None:
        ctx = await self._host_context(connection, "force a refresh")
        if ctx is None:
            return
        room, _ = ctx
        logger.info("force refresh requested", reason=message.reason)
        await self._broadcast(room, ForceRefreshBroadcast(ts=_now_ms(), reason=message.reason))

    # --- Room reaper ---

    def start_room_reaper(self) -> None:
        """Start the periodic room reaper task. Idempotent."""
        if self._room_ttl_seconds <= 0:
            return
        if self._room_reaper_task is not None and not self._room_reaper_task.done():
            return
        self._room_reaper_task = asyncio.create_task(self._room_reaper_loop())

    async def stop_room_reaper(self) -> None:
        if self._room_reaper_task is not None:
            self._room_reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._room_reaper_task
            self._room_reaper_task = None

    async def _room_reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(_ROOM_REAPER_INTERVAL)
            try:
                await self.reap_expired_rooms()
            except Exception:
                logger.exception("room reaper encountered an error")

    async def reap_expired_rooms(self) -> None:
        """Close rooms older than the TTL that have no round in progress."""
        for room in self._store.expired(self._room_ttl_seconds):
            logger.info("room expired, closing", room_id=room.room_id)
            players = list(room.players.values())
            await self._close_room(room.room_id)
            for player in players:
                with contextlib.suppress(RuntimeError, OSError):
                    await player.connection.close(code=1000, reason="room_expired")

    async def shutdown(self) -> None:
        await self.stop_room_reaper()
        await self._heartbeat.stop_all()
        self._scheduler.shutdown()
