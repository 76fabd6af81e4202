from __future__ import annotations

import logging
from typing import Any

from .codec import decode
from .constants import (
    B_JOIN_SESSION,
    B_JOINED_OTHERS,
    B_JOINED_PARTICIPANTS,
    B_JOINED_REPLAY,
    B_JOINED_SESSION,
    B_JOINED_THEIR,
    JOINED_OTHERS_MAX,
    K_BODY,
    K_ROOM,
    K_T,
    T_ERROR,
    T_JOIN,
    T_JOINED,
    T_KEY,
    T_PART,
    T_PARTED,
)
from .envelope import make_envelope, validate_envelope
from .errors import ForeignSession, RoomUnavailable, UnsupportedKey
from .events import event_from_key
from .registry import RoomRegistry
from .session import Session, Transport


class Connection:
    """Per-connection state held by the transport layer."""

    def __init__(self, transport: Transport, label: str = "-") -> None:
        self.transport = transport
        self.label = label
        self.session: Session | None = None
        self.bad_packets = 0


class KeystrokeRouter:
    """
    Decodes inbound packets for one connection and dispatches them.

    This class is responsible for:
    - Decoding and validating envelopes
    - JOIN / PART mapping onto the room registry
    - Translating raw KEY input into character events and relaying them
    - Turning per-session errors into ERROR replies

    Replies are appended to ``outgoing`` as envelopes; the caller encodes and
    sends them. Relayed events reach other participants through their
    session writers, not through ``outgoing``.
    """

    def __init__(
        self, registry: RoomRegistry, *, src: bytes, max_bad_packets: int = 16
    ) -> None:
        self.registry = registry
        self.src = src
        self.max_bad_packets = int(max_bad_packets)
        self.log = logging.getLogger("talkd.router")

    def route_packet(
        self, conn: Connection, data: bytes, outgoing: list[dict]
    ) -> None:
        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self._bad_input(conn, outgoing, f"bad message: {e}")
            return

        t = env.get(K_T)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s t=%s room=%r bytes=%s", conn.label, t, env.get(K_ROOM), len(data)
            )

        if t == T_KEY:
            self._handle_key(conn, env, outgoing)
        elif t == T_JOIN:
            self._handle_join(conn, env, outgoing)
        elif t == T_PART:
            self._handle_part(conn, outgoing)
        else:
            self._emit_error(outgoing, f"unsupported message type {t}")

    def close_connection(self, conn: Connection) -> None:
        """Transport closed: the only cancellation signal, always a leave."""
        sess = conn.session
        conn.session = None
        if sess is not None:
            self.registry.leave_room(sess)

    def _emit_error(
        self, outgoing: list[dict], text: str, room: str | None = None
    ) -> None:
        outgoing.append(make_envelope(T_ERROR, src=self.src, room=room, body=text))

    def _bad_input(self, conn: Connection, outgoing: list[dict], text: str) -> None:
        conn.bad_packets += 1
        self.log.debug("Bad input conn=%s count=%d: %s", conn.label, conn.bad_packets, text)
        self._emit_error(outgoing, text)
        if conn.bad_packets >= self.max_bad_packets and conn.session is not None:
            sess = conn.session
            conn.session = None
            self.registry.disconnect(sess, "too many malformed messages")

    def _join(self, room: Any, transport: Transport, session_id: Any) -> Session:
        if room is None:
            return self.registry.create_room(transport, session_id=session_id)
        try:
            return self.registry.join_room(room, transport, session_id=session_id)
        except RoomUnavailable:
            # The eviction has committed; a second attempt gets a fresh room.
            return self.registry.join_room(room, transport, session_id=session_id)

    def _handle_join(self, conn: Connection, env: dict, outgoing: list[dict]) -> None:
        room = env.get(K_ROOM)
        body = env.get(K_BODY)
        # A reconnecting client may ask to keep its previous session id.
        session_id = body.get(B_JOIN_SESSION) if isinstance(body, dict) else None

        if conn.session is not None:
            old = conn.session
            conn.session = None
            self.registry.leave_room(old)

        try:
            sess = self._join(room, conn.transport, session_id)
        except RoomUnavailable as e:
            self._emit_error(outgoing, f"{e}; retry", room=room)
            return
        except ValueError as e:
            self._emit_error(outgoing, str(e), room=room if isinstance(room, str) else None)
            return

        conn.session = sess
        r = sess.room
        view = r.view(sess) if r is not None else {}
        body = {
            B_JOINED_SESSION: sess.id,
            B_JOINED_PARTICIPANTS: view.get("participants", 1),
            B_JOINED_OTHERS: view.get("other_participant_ids", [])[:JOINED_OTHERS_MAX],
            B_JOINED_REPLAY: sess.pending_count,
            B_JOINED_THEIR: view.get("their_id"),
        }
        outgoing.append(make_envelope(T_JOINED, src=self.src, room=sess.room_id, body=body))

    def _handle_part(self, conn: Connection, outgoing: list[dict]) -> None:
        sess = conn.session
        if sess is None:
            self._emit_error(outgoing, "not in a room")
            return
        conn.session = None
        self.registry.leave_room(sess)
        outgoing.append(make_envelope(T_PARTED, src=self.src, room=sess.room_id))

    def _handle_key(self, conn: Connection, env: dict, outgoing: list[dict]) -> None:
        sess = conn.session
        if sess is None:
            self._emit_error(outgoing, "not in a room")
            return

        try:
            kind, payload = event_from_key(env.get(K_BODY))
        except UnsupportedKey as e:
            # Arrows and modifiers: reported, not counted as malformed.
            self._emit_error(outgoing, str(e), room=sess.room_id)
            return
        except (TypeError, ValueError) as e:
            self._bad_input(conn, outgoing, f"bad key: {e}")
            return

        try:
            self.registry.submit(sess, kind, payload)
        except ForeignSession as e:
            # Dropped by the room (e.g. outbound overflow) since the last packet.
            self.log.debug("Rejected event conn=%s: %s", conn.label, e)
            conn.session = None
            self._emit_error(outgoing, "not in a room", room=sess.room_id)
            return

        conn.bad_packets = 0
