"""Block-list enforcement for the lobby hub."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .constants import CAP_CHAT_MODERATE, DEFAULT_BLOCK_REASON, N_BLOCKED_BY_MODERATOR
from .errors import Blocked, Forbidden, PersistenceFailure
from .registry import ConnectionEntry

if TYPE_CHECKING:
    from .permissions import Principal
    from .service import HubService
    from .store import BlockRecord, BlockStore


class ModerationResult(enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"


@dataclass(frozen=True)
class Admission:
    accepted: bool
    reason: str | None = None


ACCEPTED = Admission(True)
REJECTED_BLOCKED = Admission(False, "blocked")


class ModerationGate:
    """
    In-memory mirror of the active block list, backed by a BlockStore.

    Handles:
    - O(1) admission checks for REGISTER and CHAT
    - Capability checks for block/unblock commands
    - Write-through mutations: the store is written first, the mirror is
      updated only after the store confirms
    - Forced disconnect of a client that is blocked while connected
    - Full resync from the store

    Mutations are serialized by a dedicated lock that is held across the
    durable write. The hub state lock is only taken for the short in-memory
    swap, so chat traffic keeps flowing while the store is busy.
    """

    def __init__(self, hub: HubService, store: BlockStore) -> None:
        self.hub = hub
        self.store = store
        self.log = logging.getLogger("lobbyd.moderation")

        self._active: set[str] = set()
        self._mutation_lock = threading.Lock()

    def admit(self, client_id: str) -> Admission:
        with self.hub._state_lock:
            blocked = client_id in self._active
        return REJECTED_BLOCKED if blocked else ACCEPTED

    def is_blocked(self, client_id: str) -> bool:
        return not self.admit(client_id).accepted

    def require_admitted(self, client_id: str) -> None:
        if self.is_blocked(client_id):
            raise Blocked(f"client {client_id!r} is blocked")

    def blocked_count(self) -> int:
        with self.hub._state_lock:
            return len(self._active)

    def active_ids(self) -> list[str]:
        with self.hub._state_lock:
            return sorted(self._active)

    def _require_moderator(self, principal: Principal | None) -> Principal:
        if principal is None or not self.hub.resolver.has_capability(
            principal, CAP_CHAT_MODERATE
        ):
            self.hub.stats_manager.inc("forbidden")
            who = principal.id if principal is not None else None
            raise Forbidden(f"principal {who!r} lacks {CAP_CHAT_MODERATE}")
        return principal

    def _store_call(self, what: str, fn, *args):
        try:
            return fn(*args)
        except PersistenceFailure as e:
            self.log.error("Block store %s failed: %s", what, e)
            raise
        except Exception as e:
            self.log.exception("Block store %s failed", what)
            raise PersistenceFailure(f"{what} failed: {e}") from e

    def apply_block(
        self,
        principal: Principal | None,
        target_client_id: str,
        reason: str | None = None,
    ) -> ModerationResult:
        actor = self._require_moderator(principal)
        reason = reason or DEFAULT_BLOCK_REASON

        with self._mutation_lock:
            self._store_call(
                "add_block", self.store.add_block, target_client_id, actor.id, reason
            )
            with self.hub._state_lock:
                self._active.add(target_client_id)
                evicted = self._evict_locked([target_client_id])

        self.hub.stats_manager.inc("blocks")
        self.log.info(
            "Blocked client_id=%s by=%s connected=%s",
            target_client_id,
            actor.id,
            bool(evicted),
        )
        self._disconnect(evicted)
        return ModerationResult.APPLIED

    def apply_unblock(
        self, principal: Principal | None, target_client_id: str
    ) -> ModerationResult:
        actor = self._require_moderator(principal)
        return self._unblock(target_client_id, actor.id)

    def force_unblock(
        self, target_client_id: str, actor_id: str | None = None
    ) -> ModerationResult:
        """Unblock on behalf of the admin surface, which authenticates its caller."""
        return self._unblock(target_client_id, actor_id)

    def _unblock(self, target_client_id: str, actor_id: str | None) -> ModerationResult:
        with self._mutation_lock:
            removed = self._store_call(
                "remove_block", self.store.remove_block, target_client_id, actor_id
            )
            with self.hub._state_lock:
                stale = target_client_id in self._active
                self._active.discard(target_client_id)

        if not removed:
            if stale:
                self.log.warning(
                    "Dropped stale cached block client_id=%s (no active record)",
                    target_client_id,
                )
            self.log.info(
                "Unblock no-op client_id=%s by=%s", target_client_id, actor_id
            )
            return ModerationResult.NOOP

        self.hub.stats_manager.inc("unblocks")
        self.log.info("Unblocked client_id=%s by=%s", target_client_id, actor_id)
        return ModerationResult.APPLIED

    def reload_from_store(self) -> int:
        """Replace the mirror with the store's active set.

        Connected clients that became blocked since the last load are
        disconnected. Returns the number of active blocks.
        """
        with self._mutation_lock:
            records = self._store_call("list_active", self.store.list_active)
            fresh = {r.client_id for r in records}
            with self.hub._state_lock:
                added = fresh - self._active
                removed = len(self._active - fresh)
                self._active = fresh
                evicted = self._evict_locked(sorted(added))

        if added or removed:
            self.log.info(
                "Block list resynced active=%s added=%s removed=%s",
                len(fresh),
                len(added),
                removed,
            )
        self._disconnect(evicted)
        return len(fresh)

    def _evict_locked(self, client_ids: list[str]) -> list[ConnectionEntry]:
        """Drop registry entries for blocked ids. Caller holds the state lock."""
        evicted: list[ConnectionEntry] = []
        for client_id in client_ids:
            entry = self.hub.registry.get(client_id)
            if entry is None:
                continue
            self.hub.registry.unregister(client_id)
            self.hub.router.mark_closed(entry.handle)
            evicted.append(entry)
        return evicted

    def _disconnect(self, evicted: list[ConnectionEntry]) -> None:
        if not evicted:
            return
        for entry in evicted:
            self.hub.broadcast.notice(entry.handle, N_BLOCKED_BY_MODERATOR)
            self.hub.transport.close(entry.handle)
            self.hub.stats_manager.inc("evictions")
        self.hub.broadcast.announce_listener_count()

    def prune_inactive(self, older_than_s: float) -> int:
        """Delete inactive block records older than older_than_s seconds."""
        with self._mutation_lock:
            removed = self._store_call(
                "cleanup_inactive", self.store.cleanup_inactive, older_than_s
            )
        if removed:
            self.log.info("Pruned %s inactive block record(s)", removed)
        return removed

    def list_active_records(self) -> list[BlockRecord]:
        return self._store_call("list_active", self.store.list_active)

    def history(self, limit: int = 100) -> list[BlockRecord]:
        return self._store_call("history", self.store.history, limit)
