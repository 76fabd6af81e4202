from __future__ import annotations

import os

from .constants import ROOM_ID_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def random_hex(n_chars: int) -> str:
    if n_chars % 2:
        raise ValueError("n_chars must be even")
    return os.urandom(n_chars // 2).hex()


def normalize_room_id(value, max_chars: int = ROOM_ID_MAX_CHARS) -> str:
    """Return the room id with surrounding whitespace removed, or raise ValueError.

    Room ids are matched exactly; "Alpha" and "alpha" are different rooms.
    """
    if not isinstance(value, str):
        raise ValueError("room id must be a string")

    s = value.strip()
    if not s:
        raise ValueError("room id must not be empty")

    if max_chars > 0 and len(s) > int(max_chars):
        raise ValueError("room id too long")

    # Room ids end up in logs and in persisted records; keep them on one line.
    if any(not ch.isprintable() for ch in s):
        raise ValueError("room id must not contain control characters")

    return s


def normalize_session_id(value, max_chars: int = ROOM_ID_MAX_CHARS) -> str:
    """Validate a client-supplied session id (reused across reconnects)."""
    if not isinstance(value, str):
        raise ValueError("session id must be a string")
    s = value.strip()
    if not s:
        raise ValueError("session id must not be empty")
    if len(s) > int(max_chars):
        raise ValueError("session id too long")
    if any(not ch.isprintable() or ch.isspace() for ch in s):
        raise ValueError("session id must not contain spaces or control characters")
    return s
