from conftest import FakeTransport

from talkd.codec import encode
from talkd.constants import (
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
from talkd.envelope import make_envelope
from talkd.router import Connection, KeystrokeRouter


def _packet(msg_type: int, **kw) -> bytes:
    return encode(make_envelope(msg_type, src=b"client", **kw))


def _route(router, conn, data) -> list:
    out: list = []
    router.route_packet(conn, data, out)
    return out


def test_join_key_part_flow(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    alice = Connection(FakeTransport(), "alice")
    bob = Connection(FakeTransport(), "bob")

    out = _route(router, alice, _packet(T_JOIN, room="r1"))
    assert out[0][K_T] == T_JOINED
    assert out[0][K_ROOM] == "r1"
    assert out[0][K_BODY][B_JOINED_SESSION] == alice.session.id

    _route(router, alice, _packet(T_KEY, body="h"))

    out = _route(router, bob, _packet(T_JOIN, room="r1"))
    body = out[0][K_BODY]
    assert body[B_JOINED_PARTICIPANTS] == 2
    assert body[B_JOINED_OTHERS] == [alice.session.id]
    assert body[B_JOINED_REPLAY] == 1
    assert body[B_JOINED_THEIR] == alice.session.id

    assert _route(router, alice, _packet(T_KEY, body="Enter")) == []
    events = bob.session.drain_nowait()
    assert [(e.kind, e.payload) for e in events] == [("char", "h"), ("newline", None)]
    assert alice.session.drain_nowait() == []

    out = _route(router, bob, _packet(T_PART))
    assert out[0][K_T] == T_PARTED
    assert bob.session is None


def test_join_without_room_creates_one(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    conn = Connection(FakeTransport())
    out = _route(router, conn, _packet(T_JOIN))
    assert out[0][K_T] == T_JOINED
    assert registry.get_room(out[0][K_ROOM]) is conn.session.room


def test_rejoin_leaves_previous_room(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    conn = Connection(FakeTransport())
    _route(router, conn, _packet(T_JOIN, room="a"))
    _route(router, conn, _packet(T_JOIN, room="b"))
    assert registry.get_room("a").session_count == 0
    assert registry.get_room("b").session_count == 1


def test_errors_are_reported_to_the_sender(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    conn = Connection(FakeTransport())

    out = _route(router, conn, _packet(T_KEY, body="x"))
    assert out[0][K_T] == T_ERROR
    assert out[0][K_BODY] == "not in a room"

    out = _route(router, conn, b"\xff\x00garbage")
    assert out[0][K_T] == T_ERROR

    _route(router, conn, _packet(T_JOIN, room="r1"))
    out = _route(router, conn, _packet(T_KEY, body="ArrowLeft"))
    assert out[0][K_T] == T_ERROR
    assert registry.get_room("r1").transcript == ()

    out = _route(router, conn, _packet(99))
    assert out[0][K_T] == T_ERROR


def test_repeated_bad_input_disconnects(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub", max_bad_packets=3)
    transport = FakeTransport()
    conn = Connection(transport)
    _route(router, conn, _packet(T_JOIN, room="r1"))

    for _ in range(3):
        _route(router, conn, _packet(T_KEY, body="\x1b"))

    assert transport.closed
    assert conn.session is None
    assert registry.get_room("r1").session_count == 0


def test_close_connection_leaves_room(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    conn = Connection(FakeTransport())
    _route(router, conn, _packet(T_JOIN, room="r1"))
    router.close_connection(conn)
    router.close_connection(conn)
    assert registry.get_room("r1").session_count == 0



def test_unsupported_keys_are_reported_but_not_counted(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub", max_bad_packets=3)
    transport = FakeTransport()
    conn = Connection(transport)
    _route(router, conn, _packet(T_JOIN, room="r1"))

    for _ in range(10):
        out = _route(router, conn, _packet(T_KEY, body="ArrowLeft"))
        assert out[0][K_T] == T_ERROR

    assert not transport.closed
    assert conn.bad_packets == 0
    assert conn.session is not None


def test_joined_lists_a_bounded_number_of_others(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    first = Connection(FakeTransport())
    _route(router, first, _packet(T_JOIN, room="big"))
    for _ in range(JOINED_OTHERS_MAX + 5):
        _route(router, Connection(FakeTransport()), _packet(T_JOIN, room="big"))

    out = _route(router, Connection(FakeTransport()), _packet(T_JOIN, room="big"))
    body = out[0][K_BODY]
    assert body[B_JOINED_PARTICIPANTS] == JOINED_OTHERS_MAX + 7
    assert len(body[B_JOINED_OTHERS]) == JOINED_OTHERS_MAX
    assert body[B_JOINED_THEIR] == first.session.id
    assert len(encode(out[0])) < 400


def test_join_can_reuse_a_session_id(registry) -> None:
    router = KeystrokeRouter(registry, src=b"hub")
    conn = Connection(FakeTransport())
    _route(router, conn, _packet(T_JOIN, room="r1", body={B_JOIN_SESSION: "cafe01"}))
    assert conn.session.id == "cafe01"
    router.close_connection(conn)

    again = Connection(FakeTransport())
    out = _route(router, again, _packet(T_JOIN, room="r1", body={B_JOIN_SESSION: "cafe01"}))
    assert out[0][K_T] == T_JOINED
    assert out[0][K_BODY][B_JOINED_SESSION] == "cafe01"

    clash = Connection(FakeTransport())
    out = _route(router, clash, _packet(T_JOIN, room="r1", body={B_JOIN_SESSION: "cafe01"}))
    assert out[0][K_T] == T_ERROR
    assert clash.session is None
