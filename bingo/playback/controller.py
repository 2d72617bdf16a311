"""Capability contract for the external playback device."""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class PlaybackState(BaseModel):
    """Snapshot of what the device reports right now."""

    is_playing: bool = False
    track_id: str | None = None
    progress_ms: int = 0
    device_id: str | None = None
    device_name: str | None = None


class PlaybackController(ABC):
    """
    Abstract interface over one externally addressed playback device.

    Every call is network I/O and may raise a PlaybackError subclass:
    DeviceRestrictedError for restriction responses, TokenExpiredError when
    a refresh did not help. Implementations retry transient failures
    themselves before raising.
    """

    @abstractmethod
    async def get_state(self) -> PlaybackState | None:
        """Current playback state, or None when nothing is active."""
        ...

    @abstractmethod
    async def transfer(self, device_id: str, *, play: bool = False) -> None: ...

    @abstractmethod
    async def activate_device(self, device_id: str) -> None:
        """Wake a device that refused a command with a restriction."""
        ...

    @abstractmethod
    async def start(self, device_id: str, uris: list[str], position_ms: int = 0) -> None: ...

    @abstractmethod
    async def pause(self, device_id: str) -> None: ...

    @abstractmethod
    async def resume(self, device_id: str) -> None: ...

    @abstractmethod
    async def seek(self, device_id: str, position_ms: int) -> None: ...

    @abstractmethod
    async def set_volume(self, device_id: str, volume_percent: int) -> None: ...

    @abstractmethod
    async def set_shuffle(self, device_id: str, *, enabled: bool) -> None: ...

    @abstractmethod
    async def set_repeat(self, device_id: str, mode: str) -> None:
        """Mode is one of "off", "track", "context"."""
        ...

    @abstractmethod
    async def add_to_queue(self, device_id: str, uri: str) -> None: ...

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""
        return
