from bingo.messaging.mock import MockConnection
from bingo.tests.mocks.playback import MockPlaybackController

__all__ = ["MockConnection", "MockPlaybackController"]
