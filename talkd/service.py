from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .codec import encode, event_to_body
from .config import TalkRuntimeConfig
from .constants import T_EVENT
from .envelope import make_envelope
from .events import CharEvent
from .reaper import ExpiryReaper
from .registry import RoomRegistry
from .router import Connection, KeystrokeRouter
from .session import Session
from .store import RoomStore
from .util import expand_path


def _fmt_link_id(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class LinkTransport:
    """Transport adapter that writes relayed events onto a Reticulum link."""

    def __init__(self, link: RNS.Link, src: bytes) -> None:
        self.link = link
        self.src = src

    def send(self, event: CharEvent) -> None:
        env = make_envelope(T_EVENT, src=self.src, body=event_to_body(event))
        RNS.Packet(self.link, encode(env)).send()

    def send_envelope(self, env: dict) -> None:
        RNS.Packet(self.link, encode(env)).send()

    def close(self) -> None:
        self.link.teardown()


class TalkService:
    def __init__(self, config: TalkRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("talkd.hub")

        # Guards the link -> connection map only. Room state has its own locks.
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()

        self.store: RoomStore | None = (
            RoomStore(config.room_store_path) if config.room_store_path else None
        )
        self.registry = RoomRegistry(config, self.store)
        self.reaper = ExpiryReaper(self.registry, interval_s=config.reaper_interval_s)
        self.router: KeystrokeRouter | None = None

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._conns: dict[RNS.Link, Connection] = {}

        self._announce_thread: threading.Thread | None = None
        self._checkpoint_thread: threading.Thread | None = None
        self._stopped = False

    def start(self) -> None:
        self.log.info("Starting talkd %s", __version__)

        if self.store is not None:
            self.store.ensure_dir()
        self.registry.load()

        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)
        self.router = KeystrokeRouter(self.registry, src=self.identity.hash)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="talkd-announce", daemon=True
            )
            self._announce_thread.start()

        self.reaper.start()

        if self.config.checkpoint_interval_s and self.config.checkpoint_interval_s > 0:
            self._checkpoint_thread = threading.Thread(
                target=self._checkpoint_loop, name="talkd-checkpoint", daemon=True
            )
            self._checkpoint_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy idle_threshold_s=%s reaper_interval_s=%s queue_capacity=%s replay_window=%s",
            self.config.idle_threshold_s,
            self.config.reaper_interval_s,
            self.config.outbound_queue_capacity,
            self.config.replay_window,
        )

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "talk", "v": 1, "hub": self.config.hub_name})
            )
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _checkpoint_loop(self) -> None:
        interval = float(self.config.checkpoint_interval_s)
        while not self._shutdown.wait(interval):
            try:
                self.registry.checkpoint()
            except Exception:
                self.log.exception("Checkpoint failed")

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
        self._shutdown.set()
        self.reaper.stop()

        with self._state_lock:
            links = list(self._conns.keys())
            self._conns.clear()

        self.registry.shutdown()
        self.log.info("Registry stats at shutdown: %s", self.registry.get_stats())

        for link in links:
            try:
                link.teardown()
            except Exception:
                pass

    def _on_link(self, link: RNS.Link) -> None:
        if self.identity is None:
            return
        conn = Connection(LinkTransport(link, self.identity.hash), label=_fmt_link_id(link))
        with self._state_lock:
            self._conns[link] = conn

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", conn.label)

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            conn = self._conns.pop(link, None)
        if conn is None or self.router is None:
            return
        self.router.close_connection(conn)
        self.log.info("Link closed link_id=%s", conn.label)

    def _on_session_failure(self, session: Session) -> None:
        self.registry.disconnect(session, "send failed")

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        with self._state_lock:
            conn = self._conns.get(link)
        if conn is None or self.router is None:
            return

        outgoing: list[dict[Any, Any]] = []
        self.router.route_packet(conn, data, outgoing)

        transport = conn.transport
        send_failed = False
        for env in outgoing:
            try:
                transport.send_envelope(env)  # type: ignore[attr-defined]
            except OSError as e:
                send_failed = True
                self.log.warning("Send failed link_id=%s err=%s", conn.label, e)
            except Exception:
                send_failed = True
                self.log.warning("Send failed link_id=%s", conn.label, exc_info=True)

        sess = conn.session
        if sess is None or sess.writer_started:
            return
        if send_failed:
            # JOINED never reached the client.
            conn.session = None
            self.registry.disconnect(sess, "join reply not delivered")
            return
        # Start delivery only after JOINED has gone out, so the replay follows it.
        sess.start_writer(on_failure=self._on_session_failure)
