"""
Per-room song advance timer and playback watchdog.

Each room owns one SchedulerHandle holding at most one advance timer and at
most one poll loop. The poll loop runs an early-failure check a couple of
seconds after a song starts, then polls device state for stalls and
overruns until the next song is armed.

All work for one room is serialized through a per-room asyncio.Lock: timer
firings and host transport commands can interleave at every await on the
controller, and the lock keeps a single advance path active at a time.
Public methods take the lock; underscore methods expect it to be held.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
import time
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from bingo.logic.enums import GameEndReason, GameState, RandomStarts
from bingo.logic.exceptions import NoLockedDeviceError, PlaybackError, PlaybackStalledError
from bingo.messaging.types import (
    GameEndedMessage,
    PlaybackErrorMessage,
    PlaybackPausedMessage,
    PlaybackResumedMessage,
    PlaybackWarningMessage,
    SongPlayingMessage,
    SongSeekedMessage,
    VolumeChangedMessage,
)
from bingo.playback.device import DeviceGuard

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from bingo.logic.types import Song
    from bingo.playback.controller import PlaybackController
    from bingo.playback.credentials import DeviceStore
    from bingo.session.room import Room

    RoomResolver = Callable[[str], Room | None]
    RoomBroadcast = Callable[[Room, dict[str, Any]], Awaitable[None]]

logger = structlog.get_logger()

RANDOM_START_BUFFER_MS = 1500
EARLY_START_MAX_MS = 90_000
RANDOM_START_END_MARGIN_MS = 30_000
MIN_RANDOM_WINDOW_MS = 3000
# "previous" within this much of a song start goes back a song; later it restarts the current one
RESTART_THRESHOLD_SECONDS = 1.0
DEFAULT_VOLUME = 80

# host transport commands act on these states; a claim under review freezes them
_TRANSPORT_STATES = (GameState.PLAYING, GameState.PAUSED)


class SchedulerConfig(BaseModel):
    """Timing constants for the advance timer and the watchdog."""

    buffer_ratio: float = Field(default=0.05, ge=0, lt=1)
    max_buffer_seconds: float = Field(default=0.5, ge=0)
    min_poll_seconds: float = Field(default=2.5, gt=0)
    max_poll_seconds: float = Field(default=5.0, gt=0)
    early_check_seconds: float = Field(default=2.0, ge=0)
    early_min_progress_ms: int = Field(default=500, ge=0)
    overrun_margin_ms: int = Field(default=300, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)

    def advance_delay(self, snippet_seconds: float) -> float:
        buffer = min(snippet_seconds * self.buffer_ratio, self.max_buffer_seconds)
        return max(0.0, snippet_seconds - buffer)

    def poll_interval(self, snippet_seconds: float) -> float:
        return min(max(snippet_seconds / 6, self.min_poll_seconds), self.max_poll_seconds)


class SchedulerHandle:
    """
    The timer pair of one room.

    Arming a slot always cancels whatever occupies it first. A callback that
    runs inside one of the slot tasks may re-arm freely: the calling task is
    never cancelled, and a superseded poll loop exits on its next wake-up.
    """

    def __init__(self) -> None:
        self._advance_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._deadline: float | None = None
        self.song_started_at: float = time.monotonic()
        self.resume_attempted = False
        self.paused_remaining: float | None = None

    @property
    def has_advance(self) -> bool:
        return self._advance_task is not None and not self._advance_task.done()

    @property
    def has_poll(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def remaining(self) -> float | None:
        """Seconds until the armed advance fires, or None when nothing is armed."""
        if self._deadline is None or not self.has_advance:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def elapsed(self) -> float:
        return time.monotonic() - self.song_started_at

    def new_song(self) -> None:
        self.song_started_at = time.monotonic()
        self.resume_attempted = False
        self.paused_remaining = None

    def arm_advance(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self._cancel_task(self._advance_task)
        self._deadline = time.monotonic() + delay
        self._advance_task = asyncio.create_task(self._run_delayed(delay, callback))

    def arm_poll(
        self,
        first_delay: float,
        interval: float,
        on_first: Callable[[], Awaitable[None]],
        on_tick: Callable[[], Awaitable[None]],
    ) -> None:
        self._cancel_task(self._poll_task)
        self._poll_task = asyncio.create_task(self._run_poll(first_delay, interval, on_first, on_tick))

    def cancel(self) -> None:
        self._cancel_task(self._advance_task)
        self._cancel_task(self._poll_task)
        self._advance_task = None
        self._poll_task = None
        self._deadline = None

    @staticmethod
    def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_delayed(self, seconds: float, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(seconds)
            await callback()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("scheduler timer callback failed")

    def _is_current_poll(self) -> bool:
        return self._poll_task is asyncio.current_task()

    async def _run_poll(
        self,
        first_delay: float,
        interval: float,
        on_first: Callable[[], Awaitable[None]],
        on_tick: Callable[[], Awaitable[None]],
    ) -> None:
        callback = on_first
        delay = first_delay
        try:
            while True:
                await asyncio.sleep(delay)
                if not self._is_current_poll():
                    return
                try:
                    await callback()
                except Exception:
                    logger.exception("scheduler poll callback failed")
                if not self._is_current_poll():
                    return
                callback = on_tick
                delay = interval
        except asyncio.CancelledError:
            pass


class PlaybackScheduler:
    def __init__(
        self,
        controller: PlaybackController,
        device_store: DeviceStore,
        get_room: RoomResolver,
        broadcast: RoomBroadcast,
        config: SchedulerConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._controller = controller
        self._guard = DeviceGuard(controller)
        self._device_store = device_store
        self._get_room = get_room
        self._broadcast = broadcast
        self._config = config or SchedulerConfig()
        self._rng = rng or random.Random()  # noqa: S311
        self._handles: dict[str, SchedulerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def handle_for(self, room_id: str) -> SchedulerHandle:
        handle = self._handles.get(room_id)
        if handle is None:
            handle = SchedulerHandle()
            self._handles[room_id] = handle
        return handle

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def _send(self, room: Room, message: BaseModel) -> None:
        await self._broadcast(room, message.model_dump())

    async def _warn(self, room: Room, message: str, *, stalled: bool = False) -> None:
        await self._send(room, PlaybackWarningMessage(message=message, stalled=stalled))

    # --- Device resolution ---

    def resolve_device(self, room: Room) -> str:
        """Room's locked device, falling back to the persisted one.

        Never picks an arbitrary available device.
        """
        if room.locked_device_id:
            return room.locked_device_id
        stored = self._device_store.load()
        if stored is None:
            raise NoLockedDeviceError
        room.locked_device_id = stored.id
        return stored.id

    def _device_or_none(self, room: Room) -> str | None:
        try:
            return self.resolve_device(room)
        except NoLockedDeviceError:
            return None

    # --- Public transport operations ---

    async def start(self, room: Room) -> None:
        """Play the first song of the room's sequence."""
        async with self._lock(room.room_id):
            await self._play_index(room, 0)

    async def skip(self, room: Room) -> None:
        async with self._lock(room.room_id):
            if room.state not in _TRANSPORT_STATES:
                return
            await self._advance(room)

    async def previous(self, room: Room) -> None:
        """Go back one song, or restart the current one once it has played for a moment."""
        async with self._lock(room.room_id):
            if room.state not in _TRANSPORT_STATES or not room.sequence:
                return
            handle = self.handle_for(room.room_id)
            index = room.current_index
            if handle.elapsed() <= RESTART_THRESHOLD_SECONDS:
                index = (index - 1) % len(room.sequence)
            await self._play_index(room, index)

    async def pause(self, room: Room) -> bool:
        async with self._lock(room.room_id):
            if room.state != GameState.PLAYING:
                return False
            remaining = await self._hold(room, GameState.PAUSED)
            await self._send(room, PlaybackPausedMessage(remaining_seconds=round(remaining, 3)))
            logger.info("playback paused", room_id=room.room_id, remaining_seconds=remaining)
            return True

    async def hold_for_verification(self, room: Room) -> bool:
        """Freeze a playing round while the host rules on a bingo claim."""
        async with self._lock(room.room_id):
            if room.state != GameState.PLAYING:
                return False
            remaining = await self._hold(room, GameState.VERIFYING)
            logger.info("playback held for verification", room_id=room.room_id, remaining_seconds=remaining)
            return True

    async def complete_round(self, room: Room) -> None:
        """Park the round after an approved claim; resume() or end_round() follows."""
        async with self._lock(room.room_id):
            if room.state == GameState.PLAYING:
                await self._hold(room, GameState.ROUND_COMPLETE)
            elif room.state in (GameState.PAUSED, GameState.VERIFYING):
                self.handle_for(room.room_id).cancel()
                room.state = GameState.ROUND_COMPLETE

    async def _hold(self, room: Room, state: GameState) -> float:
        handle = self.handle_for(room.room_id)
        remaining = handle.remaining()
        if remaining is None:
            remaining = self._config.advance_delay(room.snippet_seconds)
        # timers go first so nothing fires while the device call is in flight
        handle.cancel()
        handle.paused_remaining = remaining
        room.state = state

        device_id = self._device_or_none(room)
        if device_id is not None:
            await self._pause_device(room, device_id)
        return remaining

    async def _pause_device(self, room: Room, device_id: str) -> None:
        try:
            state = await self._controller.get_state()
            if state is not None and not state.is_playing:
                # already paused on the device
                return
            ok = await self._guard.call_with_reactivation(
                "pause",
                device_id,
                lambda: self._controller.pause(device_id),
            )
            if not ok:
                await self._mute(room, device_id)
        except PlaybackError as e:
            logger.warning("pause failed", room_id=room.room_id, error=str(e))
            await self._warn(room, f"Could not pause playback: {e}")

    async def _mute(self, room: Room, device_id: str) -> None:
        try:
            await self._controller.set_volume(device_id, 0)
        except PlaybackError as e:
            logger.warning("mute fallback failed", room_id=room.room_id, error=str(e))
            return
        room.muted = True
        await self._warn(room, "Device refused to pause; playback muted instead")

    async def resume(self, room: Room, *, from_states: Sequence[GameState] = (GameState.PAUSED,)) -> bool:
        async with self._lock(room.room_id):
            if room.state not in from_states:
                return False
            try:
                device_id = self.resolve_device(room)
            except NoLockedDeviceError as e:
                await self._send(room, PlaybackErrorMessage(message=str(e)))
                return False

            handle = self.handle_for(room.room_id)
            remaining = handle.paused_remaining
            if remaining is None:
                remaining = self._config.advance_delay(room.snippet_seconds)

            try:
                await self._guard.ensure_active(device_id)
                if room.muted:
                    await self._controller.set_volume(device_id, room.volume or DEFAULT_VOLUME)
                    room.muted = False
                ok = await self._guard.call_with_reactivation(
                    "resume",
                    device_id,
                    lambda: self._controller.resume(device_id),
                )
                if not ok:
                    await self._warn(room, "Device refused to resume playback")
            except PlaybackError as e:
                logger.warning("resume failed", room_id=room.room_id, error=str(e))
                await self._warn(room, f"Could not resume playback: {e}")

            room.state = GameState.PLAYING
            handle.paused_remaining = None
            handle.resume_attempted = False
            self._arm(room, handle, advance_delay=remaining)
            await self._send(room, PlaybackResumedMessage(remaining_seconds=round(remaining, 3)))
            logger.info("playback resumed", room_id=room.room_id, remaining_seconds=remaining)
            return True

    async def seek(self, room: Room, position_ms: int) -> None:
        """Move the device to position_ms and restart the snippet clock from there."""
        async with self._lock(room.room_id):
            if room.state not in _TRANSPORT_STATES:
                return
            try:
                device_id = self.resolve_device(room)
            except NoLockedDeviceError as e:
                await self._send(room, PlaybackErrorMessage(message=str(e)))
                return
            try:
                ok = await self._guard.call_with_reactivation(
                    "seek",
                    device_id,
                    lambda: self._controller.seek(device_id, position_ms),
                )
            except PlaybackError as e:
                logger.warning("seek failed", room_id=room.room_id, error=str(e))
                await self._warn(room, f"Could not seek: {e}")
                return
            if not ok:
                await self._warn(room, "Device refused to seek")
                return

            room.current_start_ms = position_ms
            handle = self.handle_for(room.room_id)
            handle.new_song()
            if room.state == GameState.PLAYING:
                self._arm(room, handle)
            else:
                handle.paused_remaining = self._config.advance_delay(room.snippet_seconds)
            await self._send(room, SongSeekedMessage(position_ms=position_ms))

    async def set_volume(self, room: Room, volume: int) -> None:
        async with self._lock(room.room_id):
            room.volume = volume
            device_id = self._device_or_none(room)
            if device_id is not None:
                try:
                    ok = await self._guard.call_with_reactivation(
                        "set_volume",
                        device_id,
                        lambda: self._controller.set_volume(device_id, volume),
                    )
                except PlaybackError as e:
                    logger.warning("set volume failed", room_id=room.room_id, error=str(e))
                    await self._warn(room, f"Could not change volume: {e}")
                    return
                if ok:
                    room.muted = False
            await self._send(room, VolumeChangedMessage(volume=volume))

    async def reorder(self, room: Room, shuffle: Callable[[Sequence[Song]], list[Song]]) -> None:
        """Replace the sequence under the room lock; the current song keeps playing."""
        async with self._lock(room.room_id):
            room.sequence = shuffle(room.sequence)
            room.current_index = 0
            room.queued_song_ids.clear()
            logger.info("sequence reordered", room_id=room.room_id, total_songs=len(room.sequence))

    async def end_round(self, room: Room, reason: GameEndReason) -> None:
        async with self._lock(room.room_id):
            if room.state == GameState.ENDED:
                return
            await self._end_round(room, reason)

    async def halt(self, room: Room) -> None:
        """Stop timers and the device without announcing anything (reset/new round)."""
        async with self._lock(room.room_id):
            self.handle_for(room.room_id).cancel()
            if not room.in_progress:
                return
            device_id = self._device_or_none(room)
            if device_id is not None:
                with contextlib.suppress(PlaybackError):
                    await self._controller.pause(device_id)

    def teardown(self, room_id: str) -> None:
        """Cancel every timer of a room that no longer exists."""
        handle = self._handles.pop(room_id, None)
        if handle is not None:
            handle.cancel()
        self._locks.pop(room_id, None)
        logger.debug("scheduler torn down", room_id=room_id)

    def shutdown(self) -> None:
        for room_id in list(self._handles):
            self.teardown(room_id)

    # --- Watchdog ---

    async def check_stall(self, room: Room) -> None:
        """One stall-poll tick: resume once, then warn and force-advance."""
        async with self._lock(room.room_id):
            if room.state != GameState.PLAYING:
                return
            try:
                await self._check_stall(room)
            except PlaybackStalledError as e:
                logger.warning("playback stalled, forcing advance", room_id=room.room_id, error=str(e))
                await self._warn(room, str(e), stalled=True)
                await self._advance(room)

    async def _check_stall(self, room: Room) -> None:
        device_id = self._device_or_none(room)
        song = room.current_song
        if device_id is None or song is None:
            return
        try:
            state = await self._controller.get_state()
        except PlaybackError as e:
            logger.warning("stall poll could not read device state", room_id=room.room_id, error=str(e))
            return

        handle = self.handle_for(room.room_id)
        if state is None or not state.is_playing:
            if handle.resume_attempted:
                raise PlaybackStalledError(f"Playback stalled on {song.name or song.id}")
            handle.resume_attempted = True
            logger.info("device not playing, attempting resume", room_id=room.room_id, song_id=song.id)
            try:
                await self._guard.call_with_reactivation(
                    "resume",
                    device_id,
                    lambda: self._controller.resume(device_id),
                )
            except PlaybackError as e:
                logger.warning("stall resume failed", room_id=room.room_id, error=str(e))
            return

        handle.resume_attempted = False
        played_ms = state.progress_ms - room.current_start_ms
        if state.track_id == song.id and played_ms >= room.snippet_ms - self._config.overrun_margin_ms:
            logger.info("snippet overran on device, advancing", room_id=room.room_id, played_ms=played_ms)
            await self._advance(room)

    async def check_early_failure(self, room: Room) -> None:
        """Detect a song that silently never started and move on."""
        async with self._lock(room.room_id):
            if room.state != GameState.PLAYING or room.current_song is None:
                return
            try:
                state = await self._controller.get_state()
            except PlaybackError as e:
                logger.warning("early check could not read device state", room_id=room.room_id, error=str(e))
                return
            started = (
                state is not None
                and state.is_playing
                and state.progress_ms - room.current_start_ms >= self._config.early_min_progress_ms
            )
            if started:
                return
            song = room.current_song
            logger.warning("song failed to start on device", room_id=room.room_id, song_id=song.id)
            await self._warn(room, f"{song.name or song.id} did not start, skipping")
            await self._advance(room)

    # --- Internal sequencing (lock held) ---

    def _arm(self, room: Room, handle: SchedulerHandle, advance_delay: float | None = None) -> None:
        room_id = room.room_id
        delay = advance_delay if advance_delay is not None else self._config.advance_delay(room.snippet_seconds)
        handle.arm_advance(delay, lambda: self._on_advance_timer(room_id, handle))
        handle.arm_poll(
            self._config.early_check_seconds,
            self._config.poll_interval(room.snippet_seconds),
            lambda: self._on_early_check(room_id, handle),
            lambda: self._on_poll(room_id, handle),
        )

    def _live_room(self, room_id: str, handle: SchedulerHandle) -> Room | None:
        """The room a timer belongs to, or None once it was torn down or re-created."""
        room = self._get_room(room_id)
        if room is None or self._handles.get(room_id) is not handle:
            handle.cancel()
            return None
        return room

    async def _on_advance_timer(self, room_id: str, handle: SchedulerHandle) -> None:
        room = self._live_room(room_id, handle)
        if room is None:
            return
        async with self._lock(room_id):
            if room.state != GameState.PLAYING:
                return
            await self._advance(room)

    async def _on_early_check(self, room_id: str, handle: SchedulerHandle) -> None:
        room = self._live_room(room_id, handle)
        if room is not None:
            await self.check_early_failure(room)

    async def _on_poll(self, room_id: str, handle: SchedulerHandle) -> None:
        room = self._live_room(room_id, handle)
        if room is not None:
            await self.check_stall(room)

    async def _advance(self, room: Room) -> None:
        next_index = room.current_index + 1
        if next_index < len(room.sequence):
            await self._play_index(room, next_index)
        elif room.repeat and room.sequence:
            await self._play_index(room, max(room.current_index, 0))
        else:
            await self._end_round(room, GameEndReason.PLAYLIST_COMPLETE)

    async def _end_round(self, room: Room, reason: GameEndReason) -> None:
        self.handle_for(room.room_id).cancel()
        room.state = GameState.ENDED
        device_id = self._device_or_none(room)
        if device_id is not None:
            try:
                await self._controller.pause(device_id)
            except PlaybackError as e:
                logger.warning("pause at round end failed", room_id=room.room_id, error=str(e))
        await self._send(room, GameEndedMessage(reason=reason, winners=room.winners))
        logger.info("round ended", room_id=room.room_id, reason=reason, winners=len(room.winners))

    def _start_offset(self, room: Room, song: Song) -> int:
        if room.random_starts == RandomStarts.NONE or not song.duration_ms:
            return 0
        if room.random_starts == RandomStarts.EARLY:
            window = min(EARLY_START_MAX_MS, song.duration_ms - room.snippet_ms - RANDOM_START_BUFFER_MS)
        else:
            tail = max(RANDOM_START_END_MARGIN_MS, room.snippet_ms)
            window = song.duration_ms - tail - RANDOM_START_BUFFER_MS
        if window <= MIN_RANDOM_WINDOW_MS:
            return 0
        return self._rng.randint(0, window)

    async def _play_index(self, room: Room, index: int) -> None:
        handle = self.handle_for(room.room_id)
        handle.cancel()
        try:
            device_id = self.resolve_device(room)
        except NoLockedDeviceError as e:
            logger.warning("no locked device, cannot start song", room_id=room.room_id)
            await self._send(room, PlaybackErrorMessage(message=str(e)))
            return

        song = room.sequence[index]
        start_ms = self._start_offset(room, song)
        # index and song move together; a failed start leaves no song playing
        room.current_index = index
        room.current_song = None
        room.current_start_ms = start_ms
        handle.new_song()

        try:
            started = await self._start_on_device(device_id, song, start_ms)
        except PlaybackError as e:
            logger.warning("song start failed", room_id=room.room_id, song_id=song.id, error=str(e))
            started = False
        if self._handles.get(room.room_id) is not handle:
            logger.info("room torn down during song start", room_id=room.room_id, song_id=song.id)
            return
        if not started:
            await self._warn(room, f"Could not start {song.name or song.id}, retrying with the next song")
            handle.arm_advance(self._config.retry_delay_seconds, lambda: self._on_advance_timer(room.room_id, handle))
            return

        room.state = GameState.PLAYING
        room.current_song = song
        room.mark_called(song.id)
        await self._send(
            room,
            SongPlayingMessage(
                song_id=song.id,
                song_name=song.name,
                artist_name=song.artist,
                preview_url=song.preview_url,
                snippet_length=room.snippet_seconds,
                current_index=index,
                total_songs=len(room.sequence),
            ),
        )
        logger.info("song playing", room_id=room.room_id, index=index, song_id=song.id, start_ms=start_ms)
        self._arm(room, handle)
        await self._prequeue(room, device_id, index)

    async def _start_on_device(self, device_id: str, song: Song, start_ms: int) -> bool:
        await self._guard.ensure_active(device_id)
        # deterministic playback: the server owns the sequence
        try:
            await self._controller.set_shuffle(device_id, enabled=False)
            await self._controller.set_repeat(device_id, "off")
        except PlaybackError as e:
            logger.warning("could not reset shuffle/repeat", device_id=device_id, error=str(e))
        return await self._guard.call_with_reactivation(
            "start",
            device_id,
            lambda: self._controller.start(device_id, [song.track_uri], start_ms),
        )

    async def _prequeue(self, room: Room, device_id: str, index: int) -> None:
        if not room.prequeue.enabled:
            return
        upcoming = room.sequence[index + 1 : index + 1 + room.prequeue.window]
        for song in upcoming:
            if song.id in room.queued_song_ids:
                continue
            try:
                await self._controller.add_to_queue(device_id, song.track_uri)
            except PlaybackError as e:
                logger.warning("pre-queue stopped", room_id=room.room_id, error=str(e))
                return
            room.queued_song_ids.add(song.id)
