from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import IDLE_THRESHOLD_S, ROOM_ID_MAX_CHARS


@dataclass(frozen=True)
class TalkRuntimeConfig:
    config_path: str | None = None
    room_store_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "talk.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "talkd"
    idle_threshold_s: float = float(IDLE_THRESHOLD_S)
    reaper_interval_s: float = 300.0
    checkpoint_interval_s: float = 30.0
    outbound_queue_capacity: int = 256
    # Events replayed to a joining session; negative replays the full history.
    replay_window: int = -1
    max_room_id_len: int = ROOM_ID_MAX_CHARS
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_FLOAT_KEYS = (
    "announce_period_s",
    "idle_threshold_s",
    "reaper_interval_s",
    "checkpoint_interval_s",
)
_INT_KEYS = ("outbound_queue_capacity", "replay_window", "max_room_id_len")
_OPTIONAL_STR_KEYS = ("configdir", "room_store_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: TalkRuntimeConfig, data: Any) -> TalkRuntimeConfig:
    """Return cfg updated from a parsed config file.

    A [hub] table is merged into the top level and the [logging] table maps
    onto the log_* settings. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    hub = data.get("hub")
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src, dst in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
        ):
            if src in log_table:
                mapped[dst] = log_table.get(src)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for k in _FLOAT_KEYS:
        if k in updates:
            updates[k] = float(updates[k])
    for k in _INT_KEYS:
        if k in updates:
            updates[k] = int(updates[k])
    for k in _OPTIONAL_STR_KEYS:
        if k in updates and updates[k] == "":
            updates[k] = None

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])

    if not updates:
        return cfg
    out = replace(cfg, **updates)
    validate_config(out)
    return out


def validate_config(cfg: TalkRuntimeConfig) -> None:
    """Raise ValueError for settings the hub cannot run with."""
    if cfg.outbound_queue_capacity < 1:
        raise ValueError("outbound_queue_capacity must be at least 1")
    for name in ("idle_threshold_s", "reaper_interval_s"):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"{name} must be positive")
    # 0 disables these.
    for name in ("checkpoint_interval_s", "announce_period_s"):
        if getattr(cfg, name) < 0:
            raise ValueError(f"{name} must not be negative")
    if cfg.max_room_id_len < 1:
        raise ValueError("max_room_id_len must be at least 1")
