from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .errors import EvictionPrecondition, PersistenceFailure
from .registry import RoomRegistry


class ExpiryReaper:
    """Background sweeper that evicts rooms left empty past the idle threshold."""

    def __init__(
        self,
        registry: RoomRegistry,
        *,
        interval_s: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.registry = registry
        self.interval_s = float(interval_s)
        self.clock = clock
        self.log = logging.getLogger("talkd.reaper")
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self) -> list[str]:
        """Run one pass. Returns the ids of the rooms evicted."""
        now = float(self.clock())
        threshold = self.registry.idle_threshold_s
        evicted: list[str] = []

        for room in self.registry.idle_rooms():
            if not room.is_expired(now, threshold):
                continue
            try:
                self.registry.evict_room(room.id)
            except EvictionPrecondition as e:
                # Re-activated (or already gone) since the scan.
                self.log.debug("Skipping eviction of %r: %s", room.id, e)
                continue
            except PersistenceFailure as e:
                self.log.warning("Eviction of %r failed, will retry: %s", room.id, e)
                continue
            evicted.append(room.id)

        if evicted:
            self.log.info("Sweep evicted %d room(s)", len(evicted))
        return evicted

    def start(self) -> None:
        if self._thread is not None:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._loop, name="talkd-reaper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._shutdown.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _loop(self) -> None:
        # First pass runs immediately so rooms restored already expired go now.
        while not self._shutdown.is_set():
            try:
                self.sweep()
            except Exception:
                self.log.exception("Reaper sweep failed")
            if self._shutdown.wait(self.interval_s):
                break
