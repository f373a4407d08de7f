"""Shared fixtures."""
from datetime import datetime, timezone

import pytest

from whalewatch.storage.database import Database

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeNotifier:
    """Records deliveries; chats listed in `failing` fail or raise."""

    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.sent: list[tuple[str, str]] = []

    async def deliver(self, subscriber_id: str, payload: str) -> bool:
        if subscriber_id in self.raising:
            raise ConnectionError("telegram down")
        if subscriber_id in self.failing:
            return False
        self.sent.append((subscriber_id, payload))
        return True

    @property
    def recipients(self) -> list[str]:
        return [chat for chat, _ in self.sent]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return {}


@pytest.fixture
async def db(tmp_path, clock):
    database = Database(str(tmp_path / "test.db"), clock=clock)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def notifier():
    return FakeNotifier()
