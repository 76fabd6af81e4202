"""Durable room records.

Each room is stored as its own TOML file so that a corrupt record never
prevents the rest from loading. File names are derived from a hash of the
room id; the id itself lives inside the record.

Record layout::

    id = "r1"
    created_at = 1730000000.0
    last_activity_at = 1730000100.0   # omitted while the room was occupied

    [[events]]
    sequence = 1
    sender = "3f9a..."
    kind = "char"
    payload = "h"                     # only for kind = "char"
    timestamp = 1730000050.0
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomlkit

from .errors import PersistenceFailure
from .events import CharEvent, event_from_record, event_to_record
from .util import expand_path

RECORD_SUFFIX = ".toml"


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: str
    created_at: float
    last_activity_at: float | None
    transcript: tuple[CharEvent, ...] = field(default_factory=tuple)


def record_name(room_id: str) -> str:
    return hashlib.sha256(room_id.encode("utf-8")).hexdigest()[:32] + RECORD_SUFFIX


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be a number")
    return float(value)


def snapshot_to_document(snap: RoomSnapshot) -> tomlkit.TOMLDocument:
    doc = tomlkit.document()
    doc.add(tomlkit.comment("talkd room record; maintained by talkd"))
    doc["id"] = snap.room_id
    doc["created_at"] = float(snap.created_at)
    if snap.last_activity_at is not None:
        doc["last_activity_at"] = float(snap.last_activity_at)

    events = tomlkit.aot()
    for ev in snap.transcript:
        events.append(tomlkit.item(event_to_record(ev)))
    doc["events"] = events
    return doc


def snapshot_from_data(data: Any) -> RoomSnapshot:
    if not isinstance(data, dict):
        raise TypeError("room record must be a table")

    room_id = data.get("id")
    if not isinstance(room_id, str) or not room_id:
        raise ValueError("room record has no id")

    created_at = _as_float(data.get("created_at"), "created_at")

    last_activity_at = data.get("last_activity_at")
    if last_activity_at is not None:
        last_activity_at = _as_float(last_activity_at, "last_activity_at")

    raw_events = data.get("events", [])
    if not isinstance(raw_events, list):
        raise TypeError("events must be an array of tables")

    transcript: list[CharEvent] = []
    for rec in raw_events:
        ev = event_from_record(rec)
        if transcript and ev.sequence <= transcript[-1].sequence:
            raise ValueError(f"event sequence {ev.sequence} out of order")
        transcript.append(ev)

    return RoomSnapshot(
        room_id=room_id,
        created_at=created_at,
        last_activity_at=last_activity_at,
        transcript=tuple(transcript),
    )


class RoomStore:
    """Directory of per-room TOML records."""

    def __init__(self, path: str) -> None:
        self.path = Path(expand_path(str(path)))
        self.log = logging.getLogger("talkd.store")
        self._write_lock = threading.Lock()

    def _record_path(self, room_id: str) -> Path:
        return self.path / record_name(room_id)

    def ensure_dir(self) -> None:
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"cannot create room store {self.path}: {e}") from e
        try:
            os.chmod(self.path, 0o700)
        except OSError:
            pass

    def _read(self, p: Path) -> RoomSnapshot:
        with open(p, "rb") as f:
            data = tomllib.load(f)
        return snapshot_from_data(data)

    def load(self) -> dict[str, RoomSnapshot]:
        """Load every readable record; bad records are skipped with a warning."""
        if not self.path.exists():
            return {}
        try:
            entries = sorted(self.path.glob("*" + RECORD_SUFFIX))
        except OSError as e:
            raise PersistenceFailure(f"cannot list room store {self.path}: {e}") from e

        rooms: dict[str, RoomSnapshot] = {}
        for p in entries:
            try:
                snap = self._read(p)
            except Exception as e:
                self.log.warning("Skipping unreadable room record %s: %s", p.name, e)
                continue

            if p.name != record_name(snap.room_id):
                self.log.warning(
                    "Skipping room record %s: name does not match id %r",
                    p.name,
                    snap.room_id,
                )
                continue

            rooms[snap.room_id] = snap

        self.log.info("Loaded %d room record(s) from %s", len(rooms), self.path)
        return rooms

    def load_room(self, room_id: str) -> RoomSnapshot | None:
        p = self._record_path(room_id)
        if not p.exists():
            return None
        try:
            snap = self._read(p)
        except OSError as e:
            raise PersistenceFailure(f"cannot read room {room_id!r}: {e}") from e
        except Exception as e:
            self.log.warning("Ignoring unreadable record for room %r: %s", room_id, e)
            return None
        if snap.room_id != room_id:
            self.log.warning("Ignoring record for room %r: id mismatch", room_id)
            return None
        return snap

    def save(self, snap: RoomSnapshot) -> None:
        text = tomlkit.dumps(snapshot_to_document(snap))
        p = self._record_path(snap.room_id)
        tmp = p.with_name(p.name + ".tmp")
        try:
            with self._write_lock:
                self.ensure_dir()
                with open(tmp, "w", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                try:
                    os.chmod(tmp, 0o600)
                except OSError:
                    pass
                os.replace(tmp, p)
        except OSError as e:
            raise PersistenceFailure(f"cannot save room {snap.room_id!r}: {e}") from e

    def delete(self, room_id: str) -> None:
        p = self._record_path(room_id)
        try:
            with self._write_lock:
                p.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"cannot delete room {room_id!r}: {e}") from e
