import random

import pytest

from bingo.session.manager import SessionManager


@pytest.fixture
async def manager_without_device(controller, empty_device_store):
    manager = SessionManager(controller, empty_device_store, rng=random.Random(1))
    yield manager
    await manager.shutdown()
