"""Error taxonomy for the room lifecycle and relay engine."""

from __future__ import annotations


class TalkError(Exception):
    """Base class for talkd errors."""


class RoomUnavailable(TalkError):
    """Join attempted while the room's eviction is in flight; retry."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room {room_id!r} is being evicted")
        self.room_id = room_id


class ForeignSession(TalkError):
    """Event submitted by a session that is not a current member of the room."""

    def __init__(self, room_id: str, session_id: str) -> None:
        super().__init__(f"session {session_id} is not a member of room {room_id!r}")
        self.room_id = room_id
        self.session_id = session_id


class EvictionPrecondition(TalkError):
    """Eviction attempted on a room that is unknown, occupied or not yet expired."""


class PersistenceFailure(TalkError):
    """Room store read or write failed."""


class UnsupportedKey(TalkError, ValueError):
    """Well-formed key name with no character event (arrows, modifiers, F-keys)."""
