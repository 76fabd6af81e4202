"""Character events: the atomic unit relayed between participants of a room."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from .constants import EV_BACKSPACE, EV_CHAR, EV_CLEAR, EV_NEWLINE, EVENT_KINDS
from .errors import UnsupportedKey

# Raw key names (browser KeyboardEvent.key style) and control bytes that map
# onto control operations.
_KEY_KINDS: dict[str, str] = {
    "Backspace": EV_BACKSPACE,
    "\b": EV_BACKSPACE,
    "\x7f": EV_BACKSPACE,
    "Enter": EV_NEWLINE,
    "\r": EV_NEWLINE,
    "\n": EV_NEWLINE,
    "Clear": EV_CLEAR,
    "\x0c": EV_CLEAR,
    "Tab": EV_CHAR,
}


@dataclass(frozen=True)
class CharEvent:
    sequence: int
    sender: str
    kind: str
    payload: str | None
    timestamp: float


def validate_input(kind: Any, payload: Any = None) -> tuple[str, str | None]:
    """Validate an inbound (kind, payload) draft and return it normalized."""
    if not isinstance(kind, str):
        raise TypeError("event kind must be a string")
    if kind not in EVENT_KINDS:
        raise ValueError(f"unknown event kind {kind!r}")

    if kind != EV_CHAR:
        if payload is not None:
            raise ValueError(f"{kind} events carry no payload")
        return kind, None

    if not isinstance(payload, str):
        raise TypeError("char payload must be a string")
    if len(payload) != 1:
        raise ValueError("char payload must be exactly one character")
    if payload != "\t" and not payload.isprintable():
        raise ValueError("char payload must be printable")
    return kind, payload


def make_event(
    sequence: int,
    sender: str,
    kind: str,
    payload: str | None = None,
    *,
    timestamp: float | None = None,
) -> CharEvent:
    if not isinstance(sequence, int) or isinstance(sequence, bool):
        raise TypeError("sequence must be an integer")
    if sequence < 1:
        raise ValueError("sequence must be positive")
    if not isinstance(sender, str) or not sender:
        raise ValueError("sender must be a non-empty string")
    kind, payload = validate_input(kind, payload)
    ts = float(time.time()) if timestamp is None else float(timestamp)
    return CharEvent(
        sequence=sequence, sender=sender, kind=kind, payload=payload, timestamp=ts
    )


def event_from_key(key: Any) -> tuple[str, str | None]:
    """Translate a raw key from the transport into a (kind, payload) draft."""
    if not isinstance(key, str) or not key:
        raise ValueError("key must be a non-empty string")

    kind = _KEY_KINDS.get(key)
    if kind is not None:
        if kind == EV_CHAR:
            return EV_CHAR, "\t"
        return kind, None

    if len(key) != 1:
        raise UnsupportedKey(f"unsupported key {key!r}")
    return validate_input(EV_CHAR, key)


def event_to_record(event: CharEvent) -> dict[str, Any]:
    rec: dict[str, Any] = {
        "sequence": event.sequence,
        "sender": event.sender,
        "kind": event.kind,
        "timestamp": event.timestamp,
    }
    if event.payload is not None:
        rec["payload"] = event.payload
    return rec


def event_from_record(rec: Any) -> CharEvent:
    if not isinstance(rec, dict):
        raise TypeError("event record must be a table")
    for k in ("sequence", "sender", "kind", "timestamp"):
        if k not in rec:
            raise ValueError(f"event record missing {k!r}")

    ts = rec["timestamp"]
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        raise TypeError("event timestamp must be a number")

    return make_event(
        rec["sequence"],
        rec["sender"],
        rec["kind"],
        rec.get("payload"),
        timestamp=float(ts),
    )
