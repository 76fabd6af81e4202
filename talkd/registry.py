from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from .config import TalkRuntimeConfig
from .errors import EvictionPrecondition, ForeignSession, PersistenceFailure
from .events import CharEvent
from .rooms import Room, RoomState
from .session import Session, Transport
from .store import RoomStore
from .util import normalize_room_id, normalize_session_id, random_hex

NEW_ROOM_ID_CHARS = 12


class RoomRegistry:
    """
    Process-wide mapping of room id to Room.

    This class is responsible for:
    - Session admission into rooms (creating or restoring rooms on demand)
    - Session departure and forced disconnects
    - Eviction of idle rooms from memory and from the store
    - Checkpointing room state to the store

    The map lock only guards structural changes to the map. Per-room work
    happens under each room's own lock.
    """

    def __init__(
        self,
        config: TalkRuntimeConfig,
        store: RoomStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.log = logging.getLogger("talkd.registry")
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()
        self._loading: dict[str, threading.Event] = {}

    @property
    def idle_threshold_s(self) -> float:
        return float(self.config.idle_threshold_s)

    def load(self) -> int:
        """Populate the registry from the store. Called once at startup."""
        if self.store is None:
            return 0
        try:
            snapshots = self.store.load()
        except PersistenceFailure as e:
            self.log.warning("Room store load failed: %s", e)
            return 0

        now = float(self.clock())
        loaded = 0
        expired = 0
        with self._lock:
            for room_id, snap in snapshots.items():
                if room_id in self._rooms or room_id in self._loading:
                    continue
                room = Room.from_snapshot(snap, clock=self.clock)
                room.saved_version = room.version
                self._rooms[room_id] = room
                loaded += 1
                if room.is_expired(now, self.idle_threshold_s):
                    expired += 1

        self.log.info(
            "Restored %d room(s) from store (%d already past idle threshold)",
            loaded,
            expired,
        )
        return loaded

    def get_room(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.get(room_id)

    def rooms(self) -> list[Room]:
        with self._lock:
            return list(self._rooms.values())

    def idle_rooms(self) -> list[Room]:
        return [r for r in self.rooms() if r.state is RoomState.IDLE]

    def _lookup_or_create(self, room_id: str) -> Room:
        # The store read runs outside the map lock. A pending entry makes
        # concurrent lookups of the same id wait for it, so two Room
        # instances can never exist for one id.
        while True:
            with self._lock:
                room = self._rooms.get(room_id)
                if room is not None:
                    return room
                pending = self._loading.get(room_id)
                if pending is None:
                    pending = threading.Event()
                    self._loading[room_id] = pending
                    break
            pending.wait()

        room = None
        try:
            snap = None
            if self.store is not None:
                try:
                    snap = self.store.load_room(room_id)
                except PersistenceFailure as e:
                    self.log.warning("Room %r lookup in store failed: %s", room_id, e)

            if snap is not None:
                room = Room.from_snapshot(snap, clock=self.clock)
                room.saved_version = room.version
                self.log.info("Restored room %r from store", room_id)
            else:
                room = Room(room_id, clock=self.clock)
                self.log.info("Created room %r", room_id)
            return room
        finally:
            with self._lock:
                if room is not None:
                    self._rooms[room_id] = room
                del self._loading[room_id]
            pending.set()

    def join_room(
        self, room_id: str, transport: Transport, *, session_id: str | None = None
    ) -> Session:
        """
        Attach a new session for ``transport`` to ``room_id``.

        ``session_id`` lets a reconnecting client keep its previous id; it
        must not belong to a session still attached to the room.

        Raises RoomUnavailable if the room is being evicted; the caller may
        retry, which then creates a fresh room.
        """
        rid = normalize_room_id(room_id, self.config.max_room_id_len)
        sid = normalize_session_id(session_id) if session_id is not None else None

        session = Session(
            rid,
            transport,
            capacity=self.config.outbound_queue_capacity,
            clock=self.clock,
            session_id=sid,
        )
        room = self._lookup_or_create(rid)
        replay = room.attach(session, replay_window=self.config.replay_window)

        self.log.info(
            "Session joined session=%s room=%r participants=%d replay=%d",
            session.id,
            rid,
            room.session_count,
            len(replay),
        )
        self.save_room(room)
        return session

    def create_room(
        self, transport: Transport, *, session_id: str | None = None
    ) -> Session:
        """Join a new room under a freshly generated id."""
        while True:
            rid = random_hex(NEW_ROOM_ID_CHARS)
            with self._lock:
                if rid not in self._rooms and rid not in self._loading:
                    break
        return self.join_room(rid, transport, session_id=session_id)

    def leave_room(self, session: Session) -> None:
        """Detach ``session`` from its room. Leaving twice is a no-op."""
        room = session.room
        session.close()
        if room is None:
            return

        became_idle = room.detach(session)
        self.log.info(
            "Session left session=%s room=%r remaining=%d",
            session.id,
            room.id,
            room.session_count,
        )
        if became_idle:
            self.save_room(room)

    def disconnect(self, session: Session, reason: str) -> None:
        """Force ``session`` out of its room and close its transport."""
        self.log.warning(
            "Disconnecting session=%s room=%r reason=%s",
            session.id,
            session.room_id,
            reason,
        )
        self.leave_room(session)
        try:
            session.transport.close()
        except Exception:
            self.log.debug("Transport close failed session=%s", session.id, exc_info=True)

    def submit(
        self, session: Session, kind: str, payload: str | None = None
    ) -> CharEvent:
        """Relay an event from ``session`` to the rest of its room."""
        room = session.room
        if room is None:
            raise ForeignSession(session.room_id, session.id)

        event, dropped = room.submit(session, kind, payload)

        for slow in dropped:
            # Already detached by the room; only the session and transport remain.
            self.log.warning(
                "Outbound queue overflow session=%s room=%r capacity=%d",
                slow.id,
                room.id,
                slow.capacity,
            )
            slow.close()
            try:
                slow.transport.close()
            except Exception:
                self.log.debug("Transport close failed session=%s", slow.id, exc_info=True)

        return event

    def evict_room(self, room_id: str) -> None:
        """
        Remove an idle, expired room from memory and from the store.

        The idle/expired check and the transition to EVICTING happen
        atomically under the room's lock, so a join that gets there first
        always wins. A store failure rolls the room back to IDLE and is
        re-raised.
        """
        room = self.get_room(room_id)
        if room is None:
            raise EvictionPrecondition(f"unknown room {room_id!r}")

        room.begin_eviction(float(self.clock()), self.idle_threshold_s)

        with room.persist_lock:
            try:
                if self.store is not None:
                    self.store.delete(room.id)
            except PersistenceFailure:
                room.abort_eviction()
                raise
            room.finish_eviction()

        with self._lock:
            if self._rooms.get(room.id) is room:
                del self._rooms[room.id]

        self.log.info("Evicted idle room %r", room.id)

    def save_room(self, room: Room) -> bool:
        """Persist one room. Failures are logged and retried by the next checkpoint."""
        if self.store is None:
            room.mark_saved(room.version)
            return True

        with room.persist_lock:
            with room.lock:
                if room.state in (RoomState.EVICTING, RoomState.EVICTED):
                    return False
                snap, version = room.versioned_snapshot()
            try:
                self.store.save(snap)
            except PersistenceFailure as e:
                self.log.warning("Persist failed room=%r: %s", room.id, e)
                return False
            room.mark_saved(version)
            return True

    def checkpoint(self, *, force: bool = False) -> int:
        """Save rooms with unsaved changes (every room when forced)."""
        saved = 0
        for room in self.rooms():
            if not force and not room.dirty:
                continue
            if self.save_room(room):
                saved += 1
        if saved:
            self.log.debug("Checkpoint saved %d room(s)", saved)
        return saved

    def shutdown(self, *, writer_timeout_s: float = 2.0) -> list[Session]:
        """
        Close every session and flush all rooms to the store.

        Writers get a chance to deliver what is already queued. Returns the
        sessions that were closed so the transport layer can tear down their
        connections.
        """
        sessions = [s for room in self.rooms() for s in room.sessions]
        for s in sessions:
            s.close(drain=True)
        for s in sessions:
            s.join_writer(writer_timeout_s)
        for s in sessions:
            self.leave_room(s)

        saved = self.checkpoint(force=True)
        self.log.info(
            "Registry shut down sessions_closed=%d rooms_saved=%d",
            len(sessions),
            saved,
        )
        return sessions

    def get_stats(self) -> dict[str, Any]:
        rooms = self.rooms()
        by_state: dict[str, int] = {}
        for r in rooms:
            by_state[r.state.value] = by_state.get(r.state.value, 0) + 1
        return {
            "rooms_total": len(rooms),
            "rooms_by_state": by_state,
            "sessions": sum(r.session_count for r in rooms),
            "transcript_events": sum(len(r.transcript) for r in rooms),
        }
