"""Rooms and the per-room relay.

A room is the unit of serialization: every change to its membership,
transcript and timestamps happens while holding ``room.lock``. Rooms never
share a lock, so traffic in one room never waits on another.

State machine::

    EMPTY ──attach──> ACTIVE ──last detach──> IDLE ──begin_eviction──> EVICTING ──> EVICTED
                        ^                       │                          │
                        └────────attach─────────┘<──────abort_eviction─────┘
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from .errors import EvictionPrecondition, ForeignSession, RoomUnavailable
from .events import CharEvent, make_event
from .store import RoomSnapshot

if TYPE_CHECKING:
    from .session import Session


class RoomState(enum.Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    IDLE = "idle"
    EVICTING = "evicting"
    EVICTED = "evicted"


class Room:
    def __init__(
        self,
        room_id: str,
        *,
        created_at: float | None = None,
        transcript: tuple[CharEvent, ...] | list[CharEvent] = (),
        last_activity_at: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = room_id
        self.clock = clock
        self.created_at = float(clock()) if created_at is None else float(created_at)
        self.log = logging.getLogger("talkd.rooms")

        self.lock = threading.RLock()
        # Orders store writes for this room; never held while taking ``lock``
        # from another room.
        self.persist_lock = threading.Lock()

        self._sessions: dict[str, Session] = {}
        self._transcript: list[CharEvent] = list(transcript)
        self._next_seq = self._transcript[-1].sequence + 1 if self._transcript else 1
        self.last_activity_at = last_activity_at
        # Bumped on every mutation; compared with saved_version by checkpoints.
        self.version = 0
        self.saved_version = 0

        if self._transcript or last_activity_at is not None:
            self._state = RoomState.IDLE
            if self.last_activity_at is None:
                self.last_activity_at = self._transcript[-1].timestamp
        else:
            self._state = RoomState.EMPTY

    def __repr__(self) -> str:
        return f"<Room {self.id!r} state={self._state.value} sessions={len(self._sessions)}>"

    @classmethod
    def from_snapshot(
        cls, snap: RoomSnapshot, *, clock: Callable[[], float] = time.time
    ) -> Room:
        """Rebuild a room from its durable record. Loaded rooms start IDLE."""
        last = snap.last_activity_at
        if last is None:
            # The process stopped while the room was occupied.
            last = snap.transcript[-1].timestamp if snap.transcript else snap.created_at
        return cls(
            snap.room_id,
            created_at=snap.created_at,
            transcript=snap.transcript,
            last_activity_at=last,
            clock=clock,
        )

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def sessions(self) -> tuple[Session, ...]:
        with self.lock:
            return tuple(self._sessions.values())

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def transcript(self) -> tuple[CharEvent, ...]:
        with self.lock:
            return tuple(self._transcript)

    def has_session(self, session: Session) -> bool:
        return self._sessions.get(session.id) is session

    def attach(self, session: Session, *, replay_window: int = -1) -> list[CharEvent]:
        """
        Make ``session`` a member and queue the replay for it.

        The replay is queued before the session becomes visible to ``submit``,
        so it always precedes live events and nothing is lost or duplicated
        across the join boundary.
        """
        with self.lock:
            if self._state in (RoomState.EVICTING, RoomState.EVICTED):
                raise RoomUnavailable(self.id)
            if session.id in self._sessions:
                raise ValueError(f"session {session.id} already attached")

            if replay_window < 0:
                replay = list(self._transcript)
            elif replay_window == 0:
                replay = []
            else:
                replay = self._transcript[-replay_window:]

            session.preload(replay)
            session.bind_room(self)
            self._sessions[session.id] = session

            if self._state is not RoomState.ACTIVE:
                self.log.debug("Room %r %s -> active", self.id, self._state.value)
            self._state = RoomState.ACTIVE
            self.last_activity_at = None
            self.version += 1
            return replay

    def detach(self, session: Session) -> bool:
        """
        Remove ``session`` from the room. Idempotent.

        Returns True when this call left the room empty (ACTIVE -> IDLE).
        """
        with self.lock:
            if not self.has_session(session):
                return False
            del self._sessions[session.id]
            session.bind_room(None)

            if self._sessions:
                return False

            self._state = RoomState.IDLE
            self.last_activity_at = float(self.clock())
            self.version += 1
            self.log.debug("Room %r active -> idle", self.id)
            return True

    def submit(
        self, session: Session, kind: str, payload: str | None = None
    ) -> tuple[CharEvent, list[Session]]:
        """
        Append an event from ``session`` and fan it out to the other members.

        Members whose outbound queue overflows are detached here, atomically
        with the fan-out, and returned so the caller can close them outside
        the room lock. The sender never receives its own event.
        """
        with self.lock:
            if not self.has_session(session):
                raise ForeignSession(self.id, session.id)

            event = make_event(
                self._next_seq, session.id, kind, payload, timestamp=self.clock()
            )
            self._next_seq += 1
            self._transcript.append(event)
            self.version += 1

            dropped: list[Session] = []
            for other in list(self._sessions.values()):
                if other is session:
                    continue
                if not other.offer(event):
                    dropped.append(other)

            # The sender is still a member, so the room stays ACTIVE.
            for other in dropped:
                del self._sessions[other.id]
                other.bind_room(None)

            return event, dropped

    def idle_for(self, now: float) -> float | None:
        with self.lock:
            if self._state is not RoomState.IDLE or self.last_activity_at is None:
                return None
            return max(0.0, float(now) - float(self.last_activity_at))

    def is_expired(self, now: float, threshold_s: float) -> bool:
        idle = self.idle_for(now)
        return idle is not None and idle >= float(threshold_s)

    def begin_eviction(self, now: float, threshold_s: float) -> None:
        """Commit to evicting the room if, right now, it is idle and expired."""
        with self.lock:
            if self._sessions:
                raise EvictionPrecondition(
                    f"room {self.id!r} has {len(self._sessions)} session(s)"
                )
            if self._state is not RoomState.IDLE:
                raise EvictionPrecondition(
                    f"room {self.id!r} is {self._state.value}, not idle"
                )
            if not self.is_expired(now, threshold_s):
                raise EvictionPrecondition(f"room {self.id!r} has not expired")
            self._state = RoomState.EVICTING

    def abort_eviction(self) -> None:
        with self.lock:
            if self._state is RoomState.EVICTING:
                self._state = RoomState.IDLE

    def finish_eviction(self) -> None:
        with self.lock:
            self._state = RoomState.EVICTED
            self._transcript.clear()
            self.saved_version = self.version

    @property
    def dirty(self) -> bool:
        return self.version != self.saved_version

    def snapshot(self) -> RoomSnapshot:
        return self.versioned_snapshot()[0]

    def versioned_snapshot(self) -> tuple[RoomSnapshot, int]:
        with self.lock:
            snap = RoomSnapshot(
                room_id=self.id,
                created_at=self.created_at,
                last_activity_at=self.last_activity_at,
                transcript=tuple(self._transcript),
            )
            return snap, self.version

    def mark_saved(self, version: int) -> None:
        with self.lock:
            if version > self.saved_version:
                self.saved_version = version

    def view(self, session: Session) -> dict[str, Any]:
        with self.lock:
            others = [sid for sid in self._sessions if sid != session.id]
            return {
                "id": self.id,
                "participants": len(self._sessions),
                "your_id": session.id,
                "their_id": others[0] if others else None,
                "other_participant_ids": others,
            }
