import random

import pytest

from bingo.messaging.router import MessageRouter
from bingo.playback.credentials import DeviceStore, LockedDevice
from bingo.server.app import create_app
from bingo.server.settings import BingoServerSettings
from bingo.session.manager import SessionManager
from bingo.tests.mocks import MockConnection, MockPlaybackController

TEST_DEVICE_ID = "device-1"


@pytest.fixture
def controller():
    return MockPlaybackController()


@pytest.fixture
def device_store(tmp_path):
    """Store with a previously locked device, as left behind by an earlier session."""
    store = DeviceStore(tmp_path / "device.json")
    store.save(LockedDevice(id=TEST_DEVICE_ID, name="Living Room"))
    return store


@pytest.fixture
def empty_device_store(tmp_path):
    return DeviceStore(tmp_path / "missing" / "device.json")


@pytest.fixture
async def session_manager(controller, device_store):
    manager = SessionManager(controller, device_store, rng=random.Random(42))
    yield manager
    await manager.shutdown()


@pytest.fixture
def message_router(session_manager):
    return MessageRouter(session_manager)


@pytest.fixture
def mock_connection():
    return MockConnection()


@pytest.fixture
def server_settings(tmp_path):
    return BingoServerSettings(
        device_file=str(tmp_path / "device.json"),
        token_file=str(tmp_path / "tokens.json"),
    )


@pytest.fixture
def app(server_settings, controller):
    return create_app(settings=server_settings, controller=controller)
