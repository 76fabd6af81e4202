import dataclasses

import pytest

from talkd.errors import UnsupportedKey
from talkd.events import (
    event_from_key,
    event_from_record,
    event_to_record,
    make_event,
    validate_input,
)


def test_make_event_is_immutable() -> None:
    ev = make_event(1, "s1", "char", "h", timestamp=10.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        ev.sequence = 2  # type: ignore[misc]


def test_validate_input_control_kinds_take_no_payload() -> None:
    for kind in ("backspace", "newline", "clear"):
        assert validate_input(kind) == (kind, None)
        with pytest.raises(ValueError):
            validate_input(kind, "x")


def test_validate_input_char_requires_single_printable_character() -> None:
    assert validate_input("char", "h") == ("char", "h")
    assert validate_input("char", " ") == ("char", " ")
    assert validate_input("char", "\t") == ("char", "\t")
    assert validate_input("char", "é") == ("char", "é")

    with pytest.raises(TypeError):
        validate_input("char", None)
    with pytest.raises(ValueError):
        validate_input("char", "hi")
    with pytest.raises(ValueError):
        validate_input("char", "")
    with pytest.raises(ValueError):
        validate_input("char", "\x00")


def test_validate_input_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        validate_input("paste", "abc")
    with pytest.raises(TypeError):
        validate_input(7)


def test_make_event_rejects_bad_sequence() -> None:
    with pytest.raises(ValueError):
        make_event(0, "s1", "clear")
    with pytest.raises(TypeError):
        make_event(True, "s1", "clear")


@pytest.mark.parametrize(
    "key, expected",
    [
        ("a", ("char", "a")),
        ("Backspace", ("backspace", None)),
        ("\x7f", ("backspace", None)),
        ("Enter", ("newline", None)),
        ("\r", ("newline", None)),
        ("Clear", ("clear", None)),
        ("\x0c", ("clear", None)),
        ("Tab", ("char", "\t")),
    ],
)
def test_event_from_key(key, expected) -> None:
    assert event_from_key(key) == expected


def test_event_from_key_rejects_unknown_names() -> None:
    for key in ("Shift", "ArrowLeft", "", "\x1b"):
        with pytest.raises(ValueError):
            event_from_key(key)
    with pytest.raises(ValueError):
        event_from_key(None)


def test_named_keys_without_a_character_are_unsupported() -> None:
    for key in ("Shift", "ArrowLeft", "F5"):
        with pytest.raises(UnsupportedKey):
            event_from_key(key)
    for key in ("", "\x1b"):
        with pytest.raises(ValueError) as exc:
            event_from_key(key)
        assert not isinstance(exc.value, UnsupportedKey)


def test_record_omits_payload_for_control_events() -> None:
    rec = event_to_record(make_event(2, "s1", "backspace", timestamp=5.0))
    assert "payload" not in rec
    assert event_from_record(rec).kind == "backspace"


def test_event_from_record_rejects_incomplete_record() -> None:
    with pytest.raises(ValueError):
        event_from_record({"sequence": 1, "sender": "s1", "kind": "clear"})
    with pytest.raises(TypeError):
        event_from_record({"sequence": 1, "sender": "s1", "kind": "clear", "timestamp": "x"})
