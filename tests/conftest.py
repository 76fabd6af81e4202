from __future__ import annotations

import pytest

from talkd.config import TalkRuntimeConfig
from talkd.registry import RoomRegistry
from talkd.store import RoomStore

HOUR = 3600.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class FakeTransport:
    def __init__(self) -> None:
        self.sent = []
        self.closed = False

    def send(self, event) -> None:
        self.sent.append(event)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> RoomStore:
    return RoomStore(str(tmp_path / "rooms"))


@pytest.fixture
def config() -> TalkRuntimeConfig:
    return TalkRuntimeConfig(outbound_queue_capacity=8)


@pytest.fixture
def registry(config, store, clock) -> RoomRegistry:
    return RoomRegistry(config, store, clock=clock)
