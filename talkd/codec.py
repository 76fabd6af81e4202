from __future__ import annotations

from typing import Any

import cbor2

from .constants import B_EV_KIND, B_EV_PAYLOAD, B_EV_SENDER, B_EV_SEQ, B_EV_TS
from .events import CharEvent, make_event


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def event_to_body(event: CharEvent) -> dict[int, Any]:
    body: dict[int, Any] = {
        B_EV_SEQ: event.sequence,
        B_EV_SENDER: event.sender,
        B_EV_KIND: event.kind,
        B_EV_TS: event.timestamp,
    }
    if event.payload is not None:
        body[B_EV_PAYLOAD] = event.payload
    return body


def event_from_body(body: Any) -> CharEvent:
    if not isinstance(body, dict):
        raise TypeError("event body must be a CBOR map")
    try:
        return make_event(
            body[B_EV_SEQ],
            body[B_EV_SENDER],
            body[B_EV_KIND],
            body.get(B_EV_PAYLOAD),
            timestamp=body[B_EV_TS],
        )
    except KeyError as e:
        raise ValueError(f"event body missing key {e.args[0]}") from None
