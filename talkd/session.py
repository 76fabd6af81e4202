from __future__ import annotations

import logging
import threading
import time
import weakref
from collections import deque
from typing import TYPE_CHECKING, Callable, Iterable, Protocol

from .events import CharEvent
from .util import random_hex

if TYPE_CHECKING:
    from .rooms import Room


class Transport(Protocol):
    """Bidirectional connection handle supplied by the transport layer."""

    def send(self, event: CharEvent) -> None: ...

    def close(self) -> None: ...


class Session:
    """
    One live participant inside exactly one room.

    Outbound events are buffered in a bounded queue and written to the
    transport by a per-session writer thread, so a slow consumer never blocks
    the room's relay. Replayed history is queued ahead of live events and does
    not count against the live capacity.
    """

    def __init__(
        self,
        room_id: str,
        transport: Transport,
        *,
        capacity: int,
        clock: Callable[[], float] = time.time,
        session_id: str | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.id = session_id or random_hex(20)
        self.room_id = room_id
        self.transport = transport
        self.capacity = int(capacity)
        self.joined_at = float(clock())
        self.log = logging.getLogger("talkd.session")

        self._room: weakref.ReferenceType[Room] | None = None
        self._pending: deque[CharEvent] = deque()
        self._replay_left = 0
        self._closed = False
        self._drain_on_close = False
        self._cond = threading.Condition()
        self._writer: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"<Session {self.id} room={self.room_id!r}>"

    @property
    def room(self) -> Room | None:
        ref = self._room
        return ref() if ref is not None else None

    def bind_room(self, room: Room | None) -> None:
        self._room = weakref.ref(room) if room is not None else None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def preload(self, events: Iterable[CharEvent]) -> int:
        """Queue replayed history ahead of any live event."""
        batch = list(events)
        with self._cond:
            if self._pending:
                raise RuntimeError("replay must be queued before live events")
            self._pending.extend(batch)
            self._replay_left = len(batch)
            self._cond.notify_all()
        return len(batch)

    def offer(self, event: CharEvent) -> bool:
        """
        Queue a live event for delivery.

        Returns False if the session is closed or its live queue is full; the
        caller is expected to disconnect the session.
        """
        with self._cond:
            if self._closed:
                return False
            if len(self._pending) - self._replay_left >= self.capacity:
                return False
            self._pending.append(event)
            self._cond.notify_all()
            return True

    def _pop_locked(self) -> CharEvent:
        event = self._pending.popleft()
        if self._replay_left:
            self._replay_left -= 1
        return event

    def take(self, timeout: float | None = None) -> CharEvent | None:
        """Block until an event is available; None on timeout or close."""
        with self._cond:
            self._cond.wait_for(
                lambda: bool(self._pending) or self._closed, timeout=timeout
            )
            if not self._pending:
                return None
            if self._closed and not self._drain_on_close:
                return None
            return self._pop_locked()

    def drain_nowait(self) -> list[CharEvent]:
        with self._cond:
            out: list[CharEvent] = []
            while self._pending:
                out.append(self._pop_locked())
            return out

    def close(self, *, drain: bool = False) -> None:
        """
        Mark the session closed and wake the writer.

        With drain=True the writer delivers what is already queued before
        exiting; otherwise pending events are discarded.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._drain_on_close = bool(drain)
            if not drain:
                self._pending.clear()
                self._replay_left = 0
            self._cond.notify_all()

    def start_writer(
        self, on_failure: Callable[[Session], None] | None = None
    ) -> threading.Thread:
        if self._writer is not None:
            return self._writer

        self._writer = threading.Thread(
            target=self._write_loop,
            args=(on_failure,),
            name=f"talkd-session-{self.id[:8]}",
            daemon=True,
        )
        self._writer.start()
        return self._writer

    @property
    def writer_started(self) -> bool:
        return self._writer is not None

    def join_writer(self, timeout: float | None = None) -> None:
        writer = self._writer
        if writer is not None and writer is not threading.current_thread():
            writer.join(timeout)

    def _write_loop(self, on_failure: Callable[[Session], None] | None) -> None:
        while True:
            event = self.take()
            if event is None:
                if self._closed:
                    break
                continue
            try:
                self.transport.send(event)
            except Exception as e:
                self.log.warning("Send failed session=%s err=%s", self.id, e)
                if on_failure is not None:
                    on_failure(self)
                break
        self.log.debug("Writer exited session=%s", self.id)
