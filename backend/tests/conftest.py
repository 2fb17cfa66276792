from decimal import Decimal

import pytest

from educasino.storage import MemoryStorage
from fakes import FakeClock, Recorder, UserRecorder


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def user_recorder():
    return UserRecorder()


@pytest.fixture
async def storage():
    storage = MemoryStorage()
    await storage.create_user("alice", Decimal("1000.00"))
    await storage.create_user("bob", Decimal("1000.00"))
    await storage.create_user("mod", Decimal("1000.00"), is_admin=True)
    return storage
