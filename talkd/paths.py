from __future__ import annotations

import os
from pathlib import Path


def default_talkd_dir() -> Path:
    override = os.environ.get("TALKD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".talkd"


def default_config_path() -> Path:
    return default_talkd_dir() / "talkd.toml"


def default_identity_path() -> Path:
    return default_talkd_dir() / "hub_identity"


def default_room_store_path() -> Path:
    return default_talkd_dir() / "rooms"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
