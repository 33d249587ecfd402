from __future__ import annotations

import logging
import os
import signal
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import RNS

from .broadcast import BroadcastHub
from .codec import encode
from .config import HubRuntimeConfig
from .errors import PersistenceFailure
from .moderation import ModerationGate, ModerationResult
from .permissions import PermissionResolver, TomlPermissionResolver
from .registry import ConnectionRegistry
from .router import ProtocolRouter
from .stats import StatsManager
from .store import BlockStore, MemoryBlockStore, TomlBlockStore
from .transport import RnsTransport
from .util import expand_path


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: BlockStore | None = None,
        resolver: PermissionResolver | None = None,
        transport: Any | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("lobbyd.hub")

        # Registry, block mirror and router sessions are touched from
        # Reticulum callbacks, the moderation worker and background loops.
        # Guard them with a single re-entrant lock; never send while holding it.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.transport = transport if transport is not None else RnsTransport()
        self.stats_manager = StatsManager(self)
        self.registry = ConnectionRegistry()
        self.broadcast = BroadcastHub(self)
        self.resolver = resolver if resolver is not None else self._build_resolver()
        self.gate = ModerationGate(
            self, store if store is not None else self._build_store()
        )
        self.router = ProtocolRouter(self)

        # Moderation commands run one at a time off the transport thread.
        self._moderation = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="lobbyd-moderation"
        )

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._prune_thread: threading.Thread | None = None
        self._resync_thread: threading.Thread | None = None

    def _build_store(self) -> BlockStore:
        path = self.config.block_store_path
        if not path:
            self.log.warning(
                "block_store_path not set; blocks are kept in memory only"
            )
            return MemoryBlockStore()
        return TomlBlockStore(
            expand_path(str(path)), timeout_s=self.config.store_timeout_s
        )

    def _build_resolver(self) -> PermissionResolver:
        path = self.config.principals_path
        if not path:
            self.log.warning("principals_path not set; moderation is disabled")
            return PermissionResolver()
        return TomlPermissionResolver(expand_path(str(path)))

    def submit_moderation(self, fn: Callable[..., Any], *args: Any) -> Future:
        return self._moderation.submit(fn, *args)

    def evict_handle(self, handle: Any) -> None:
        """Drop a connection whose transport failed and announce the departure."""
        with self._state_lock:
            self.router.mark_closed(handle)
            removed = self.registry.unregister_handle(handle)

        self.transport.close(handle)
        if removed is None:
            return

        client_id, name = removed
        self.stats_manager.inc("evictions")
        self.log.warning(
            "Evicted unreachable client name=%r client_id=%s link_id=%s",
            name,
            client_id,
            self.transport.describe(handle),
        )
        self.broadcast.announce_listener_count()
        self.broadcast.announce_leave(name)

    def listener_stats(self) -> dict[str, int]:
        """Counts for the admin surface."""
        with self._state_lock:
            connected = self.registry.count()
        blocked = self.gate.blocked_count()
        return {
            "connected_clients": connected,
            "blocked_clients": blocked,
            "total_clients": connected + blocked,
        }

    def force_unblock(
        self, client_id: str, actor_id: str | None = None
    ) -> ModerationResult:
        return self.gate.force_unblock(client_id, actor_id)

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()

        try:
            active = self.gate.reload_from_store()
        except PersistenceFailure as e:
            raise RuntimeError(f"cannot load block list: {e}") from e
        self.log.info("Loaded %d blocked client(s)", active)

        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

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

        self._start_worker_threads()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy frame_encoding=%s trust_display_names=%s rate_limit_msgs_per_minute=%s",
            self.config.frame_encoding,
            self.config.trust_display_names,
            self.config.rate_limit_msgs_per_minute,
        )

    def _start_worker_threads(self) -> None:
        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="lobbyd-announce", daemon=True
            )
            self._announce_thread.start()

        if (
            self.config.block_prune_interval_s
            and self.config.block_prune_interval_s > 0
            and self.config.block_retention_s
            and self.config.block_retention_s > 0
        ):
            self._prune_thread = threading.Thread(
                target=self._prune_loop, name="lobbyd-block-prune", daemon=True
            )
            self._prune_thread.start()

        if self.config.block_resync_interval_s and self.config.block_resync_interval_s > 0:
            self._resync_thread = threading.Thread(
                target=self._resync_loop, name="lobbyd-block-resync", daemon=True
            )
            self._resync_thread.start()

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "lobby", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.announce_period_s)):
            self._announce_once()

    def _prune_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.block_prune_interval_s)):
            try:
                self.gate.prune_inactive(float(self.config.block_retention_s))
            except PersistenceFailure as e:
                self.log.warning("Block prune failed: %s", e)

    def _resync_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.block_resync_interval_s)):
            try:
                self.gate.reload_from_store()
            except PersistenceFailure as e:
                self.log.warning("Block resync failed: %s", e)

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self._moderation.shutdown(wait=False)

        with self._state_lock:
            handles = set(self.registry.clear_all())
            handles.update(self.router.sessions.keys())
            self.router.sessions.clear()

        for handle in handles:
            self.transport.close(handle)

        self.log.info("%s", self.stats_manager.format_stats())

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        self.router.on_open(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self.router.on_close(closed_link))
        link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_remote_identified(
                identified_link, ident
            )
        )

    def _on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> None:
        if identity is None:
            return
        peer = identity.hash.hex()
        with self._state_lock:
            bound = self.registry.bind_identity(link, peer)
        self.log.info(
            "Remote identified peer=%s link_id=%s bound=%s",
            peer[:12],
            self.transport.describe(link),
            bound,
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        self.router.route_frame(link, data)
