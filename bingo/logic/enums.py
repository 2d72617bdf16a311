from enum import StrEnum


class GameState(StrEnum):
    WAITING = "waiting"
    PLAYING = "playing"
    PAUSED = "paused"
    # a bingo claim froze playback until the host rules on it
    VERIFYING = "paused_for_verification"
    # a claim was approved; the host decides whether the round continues
    ROUND_COMPLETE = "round_complete"
    ENDED = "ended"


class WinPattern(StrEnum):
    LINE = "line"
    FOUR_CORNERS = "four_corners"
    X = "x"
    FULL_CARD = "full_card"
    T = "t"
    L = "l"
    U = "u"
    PLUS = "plus"
    CUSTOM = "custom"


class DealMode(StrEnum):
    """Card sourcing mode picked by the dealer from the shape of the pools."""

    ONE_BY_75 = "1x75"
    FIVE_BY_15 = "5x15"
    FALLBACK = "fallback"


class RandomStarts(StrEnum):
    NONE = "none"
    EARLY = "early"
    RANDOM = "random"


class RevealHint(StrEnum):
    ARTIST = "artist"
    TITLE = "title"
    FULL = "full"


class RoundDecision(StrEnum):
    CONTINUE = "continue"
    END = "end"


class GameEndReason(StrEnum):
    PLAYLIST_COMPLETE = "playlist-complete"
    HOST_ENDED = "host-ended"
    DEVICE_LOST = "device-lost"
