from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import TalkRuntimeConfig, apply_config_data, load_toml, validate_config
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_room_store_path,
    ensure_private_dir,
)
from .service import TalkService


def _write_default_config(config_path: str, identity_path: str, room_store_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    defaults = TalkRuntimeConfig()

    content = f"""# talkd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start talkd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where talkd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Directory holding one TOML record per room (transcript and timestamps).
room_store_path = {room_store_path!r}

# Destination name to host the hub on.
dest_name = {defaults.dest_name!r}

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = {defaults.hub_name!r}

# Room lifecycle.
#
# idle_threshold_s: a room left without participants this long is evicted
# from memory and from the room store.
# reaper_interval_s: how often empty rooms are checked against the threshold.
# checkpoint_interval_s: how often rooms with new keystrokes are saved.
idle_threshold_s = {defaults.idle_threshold_s}
reaper_interval_s = {defaults.reaper_interval_s}
checkpoint_interval_s = {defaults.checkpoint_interval_s}

# Relay.
#
# outbound_queue_capacity: live events buffered per participant. A participant
# that falls this far behind is disconnected.
# replay_window: events replayed to a joining participant (-1 = full history,
# 0 = none).
outbound_queue_capacity = {defaults.outbound_queue_capacity}
replay_window = {defaults.replay_window}
max_room_id_len = {defaults.max_room_id_len}

[logging]

# Log level for talkd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

format = {defaults.log_format!r}
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(
    config_path: str, identity_path: str, room_store_path: str
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, room_store_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    if room_store_path and not os.path.exists(room_store_path):
        ensure_private_dir(Path(room_store_path))

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="talkd", description="Run a keystroke relay hub for shared talk rooms"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--room-store",
        default=str(default_room_store_path()),
        help="Directory of persisted room records",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: talk.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )

    p.add_argument(
        "--idle-threshold",
        type=float,
        default=None,
        help="Seconds an empty room is kept before eviction (default 43200)",
    )
    p.add_argument(
        "--reaper-interval",
        type=float,
        default=None,
        help="Seconds between idle-room sweeps",
    )
    p.add_argument(
        "--queue-capacity",
        type=int,
        default=None,
        help="Outbound events buffered per participant before disconnect",
    )
    p.add_argument(
        "--replay-window",
        type=int,
        default=None,
        help="Events replayed on join (-1 = full history)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> TalkRuntimeConfig:
    cfg = TalkRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
        room_store_path=str(args.room_store),
    )

    if args.config and os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(args.config))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)

    if args.idle_threshold is not None:
        cfg = replace(cfg, idle_threshold_s=float(args.idle_threshold))
    if args.reaper_interval is not None:
        cfg = replace(cfg, reaper_interval_s=float(args.reaper_interval))
    if args.queue_capacity is not None:
        cfg = replace(cfg, outbound_queue_capacity=int(args.queue_capacity))
    if args.replay_window is not None:
        cfg = replace(cfg, replay_window=int(args.replay_window))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    validate_config(cfg)
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    room_store_path = str(args.room_store)

    if _ensure_first_run_files(config_path, identity_path, room_store_path):
        print(
            "Created default talkd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Rooms:    {room_store_path}\n"
            "\nThen re-run talkd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = TalkService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
