import time

import pytest
from conftest import HOUR, FakeTransport

from talkd.errors import PersistenceFailure
from talkd.events import make_event
from talkd.reaper import ExpiryReaper
from talkd.registry import RoomRegistry
from talkd.store import RoomSnapshot


def test_talk_scenario_room_is_evicted_after_idle_threshold(registry, store, clock) -> None:
    reaper = ExpiryReaper(registry, interval_s=300, clock=clock)

    a = registry.join_room("r1", FakeTransport())
    b = registry.join_room("r1", FakeTransport())
    registry.submit(a, "char", "h")
    registry.submit(a, "char", "i")
    assert [(e.kind, e.payload) for e in b.drain_nowait()] == [("char", "h"), ("char", "i")]
    assert a.drain_nowait() == []

    registry.leave_room(a)
    registry.leave_room(b)
    room = registry.get_room("r1")
    assert room.last_activity_at == clock.now

    clock.advance(11 * HOUR)
    assert reaper.sweep() == []
    assert registry.get_room("r1") is room

    clock.advance(1 * HOUR + 0.001)
    assert reaper.sweep() == ["r1"]
    assert registry.get_room("r1") is None
    assert store.load_room("r1") is None


def test_restart_evicts_stale_room_on_first_sweep(config, store, clock) -> None:
    events = (make_event(1, "gone", "char", "x", timestamp=clock.now - 14 * HOUR),)
    store.save(
        RoomSnapshot(
            "stale",
            created_at=clock.now - 20 * HOUR,
            last_activity_at=clock.now - 13 * HOUR,
            transcript=events,
        )
    )
    store.save(
        RoomSnapshot("fresh", created_at=clock.now - 2 * HOUR, last_activity_at=clock.now - HOUR)
    )

    registry = RoomRegistry(config, store, clock=clock)
    assert registry.load() == 2
    reaper = ExpiryReaper(registry, interval_s=300, clock=clock)

    assert reaper.sweep() == ["stale"]
    assert registry.get_room("stale") is None
    assert registry.get_room("fresh") is not None
    assert set(store.load()) == {"fresh"}


def test_active_rooms_are_never_swept(registry, clock) -> None:
    registry.join_room("busy", FakeTransport())
    clock.advance(48 * HOUR)
    reaper = ExpiryReaper(registry, interval_s=60, clock=clock)
    assert reaper.sweep() == []
    assert registry.get_room("busy") is not None


def test_failed_eviction_is_retried_next_sweep(registry, store, clock, monkeypatch) -> None:
    registry.leave_room(registry.join_room("r1", FakeTransport()))
    clock.advance(12 * HOUR)
    reaper = ExpiryReaper(registry, interval_s=60, clock=clock)

    real_delete = store.delete

    def broken_delete(room_id):
        raise PersistenceFailure("store offline")

    monkeypatch.setattr(store, "delete", broken_delete)
    assert reaper.sweep() == []
    assert registry.get_room("r1") is not None

    monkeypatch.setattr(store, "delete", real_delete)
    assert reaper.sweep() == ["r1"]


def test_background_thread_runs_first_sweep_immediately(config, store, clock) -> None:
    store.save(RoomSnapshot("old", created_at=0.0, last_activity_at=clock.now - 13 * HOUR))
    registry = RoomRegistry(config, store, clock=clock)
    registry.load()

    reaper = ExpiryReaper(registry, interval_s=3600, clock=clock)
    reaper.start()
    try:
        for _ in range(200):
            if registry.get_room("old") is None:
                break
            time.sleep(0.01)
    finally:
        reaper.stop()

    assert registry.get_room("old") is None


def test_interval_must_be_positive(registry) -> None:
    with pytest.raises(ValueError):
        ExpiryReaper(registry, interval_s=0)
