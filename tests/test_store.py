import os

import pytest

from talkd.errors import PersistenceFailure
from talkd.events import make_event
from talkd.store import RoomSnapshot, RoomStore, record_name


def _snapshot(room_id: str = "r1", last: float | None = 1700000100.25) -> RoomSnapshot:
    events = (
        make_event(1, "a1b2", "char", "h", timestamp=1700000001.125),
        make_event(2, "a1b2", "char", '"', timestamp=1700000002.5),
        make_event(3, "c3d4", "backspace", timestamp=1700000003.0),
        make_event(4, "c3d4", "char", "\t", timestamp=1700000004.0),
        make_event(5, "c3d4", "newline", timestamp=1700000005.0),
        make_event(6, "a1b2", "clear", timestamp=1700000006.0),
    )
    return RoomSnapshot(room_id, created_at=1700000000.0, last_activity_at=last, transcript=events)


def test_save_then_load_reproduces_room(store) -> None:
    snap = _snapshot()
    store.save(snap)
    loaded = store.load()
    assert loaded == {"r1": snap}
    assert store.load_room("r1") == snap


def test_occupied_room_round_trips_without_idle_timestamp(store) -> None:
    snap = _snapshot(last=None)
    store.save(snap)
    assert store.load_room("r1") == snap


def test_record_file_is_private_and_named_by_hash(store) -> None:
    store.save(_snapshot("../escape"))
    files = os.listdir(store.path)
    assert files == [record_name("../escape")]
    mode = os.stat(store.path / files[0]).st_mode & 0o777
    assert mode == 0o600


def test_missing_store_loads_empty(tmp_path) -> None:
    assert RoomStore(str(tmp_path / "nowhere")).load() == {}
    assert RoomStore(str(tmp_path / "nowhere")).load_room("r1") is None


def test_corrupt_record_is_skipped(store, caplog) -> None:
    store.save(_snapshot("good"))
    store.save(_snapshot("bad"))
    (store.path / record_name("bad")).write_text("id = [unterminated", encoding="utf-8")
    (store.path / "stray.toml").write_text('id = "stray"\ncreated_at = 1.0\n', encoding="utf-8")

    with caplog.at_level("WARNING", logger="talkd.store"):
        loaded = store.load()

    assert list(loaded) == ["good"]
    assert "Skipping" in caplog.text


def test_record_with_bad_event_is_skipped(store) -> None:
    store.save(_snapshot("r1"))
    p = store.path / record_name("r1")
    text = p.read_text(encoding="utf-8").replace('kind = "clear"', 'kind = "explode"')
    p.write_text(text, encoding="utf-8")
    assert store.load() == {}
    assert store.load_room("r1") is None


def test_delete_removes_record_and_tolerates_missing(store) -> None:
    store.save(_snapshot())
    store.delete("r1")
    store.delete("r1")
    assert store.load() == {}


def test_save_failure_raises_persistence_failure(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")
    broken = RoomStore(str(blocker / "rooms"))
    with pytest.raises(PersistenceFailure):
        broken.save(_snapshot())
