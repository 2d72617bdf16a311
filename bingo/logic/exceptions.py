"""Typed domain exceptions for the bingo session engine.

Dealing and authorization failures derive from BingoError and are
converted to error events at the router boundary. Failures at the
playback device boundary derive from PlaybackError; the scheduler
decides per subclass whether to retry, degrade, or surface them.
"""


class BingoError(Exception):
    """Base exception for session rule violations."""


class InsufficientSongsError(BingoError):
    """Not enough unique songs reachable to fill a card.

    Attributes:
        required: Songs needed for one card (always 25).
        available: Unique songs actually reachable under the chosen mode.

    """

    def __init__(self, *, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"need {required} unique songs, only {available} available")


class AuthorizationDeniedError(BingoError):
    """A non-host connection issued a host-only command."""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"only the host may {command}")


class PlaybackError(Exception):
    """Base exception for failures reported by the playback device boundary."""


class NoLockedDeviceError(PlaybackError):
    """No device has been selected for this room, and none is persisted."""

    def __init__(self) -> None:
        super().__init__("Locked device not available")


class DeviceRestrictedError(PlaybackError):
    """The playback surface refused the command with a restriction response."""


class TokenExpiredError(PlaybackError):
    """The access token was rejected and must be refreshed."""


class PlaybackStalledError(PlaybackError):
    """The device stopped reporting progress for the current song."""


class RoomCapacityError(BingoError):
    """The server already holds the maximum number of rooms."""

    def __init__(self, max_rooms: int) -> None:
        self.max_rooms = max_rooms
        super().__init__(f"server is at capacity ({max_rooms} rooms)")
