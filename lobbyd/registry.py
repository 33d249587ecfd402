from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Hashable, Iterator


@dataclass(frozen=True)
class ConnectionEntry:
    client_id: str
    display_name: str
    handle: Any
    identity: str | None = None


class ConnectionRegistry:
    """
    Live, identified connections keyed by client id.

    This class is responsible for:
    - One entry per client id; re-registering replaces the entry
    - Reverse index (handle -> client id) for O(1) lookups from transport events
    - Listener counts and broadcast target snapshots

    Not thread-safe on its own; callers hold the hub state lock.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("lobbyd.registry")
        self._entries: dict[str, ConnectionEntry] = {}
        self._index_by_handle: dict[Hashable, str] = {}  # handle -> client id

    def register(
        self,
        client_id: str,
        display_name: str,
        handle: Any,
        identity: str | None = None,
    ) -> Any | None:
        """
        Insert or replace the entry for client_id.

        Returns the evicted handle when a different handle was registered for
        the same client id. The caller must close it.
        """
        previous = self._entries.get(client_id)
        prior_id = self._index_by_handle.get(handle)
        if prior_id is not None and prior_id != client_id:
            # One handle identifies one client id.
            self._entries.pop(prior_id, None)

        self._entries[client_id] = ConnectionEntry(
            client_id=client_id,
            display_name=display_name,
            handle=handle,
            identity=identity,
        )
        self._index_by_handle[handle] = client_id

        if previous is None or previous.handle is handle:
            return None

        self._index_by_handle.pop(previous.handle, None)
        self.log.info(
            "Replaced connection client_id=%s old_name=%r new_name=%r",
            client_id,
            previous.display_name,
            display_name,
        )
        return previous.handle

    def unregister(self, client_id: str) -> str | None:
        """Remove the entry for client_id; returns its display name if present."""
        entry = self._entries.pop(client_id, None)
        if entry is None:
            return None
        self._index_by_handle.pop(entry.handle, None)
        return entry.display_name

    def unregister_handle(self, handle: Any) -> tuple[str, str] | None:
        """Remove whatever entry a closing handle owns.

        Returns (client_id, display_name), or None when the handle was never
        identified or was already replaced or evicted.
        """
        client_id = self._index_by_handle.get(handle)
        if client_id is None:
            return None
        name = self.unregister(client_id)
        if name is None:
            return None
        return client_id, name

    def bind_identity(self, handle: Any, identity: str) -> bool:
        """Attach a verified identity that arrived after REGISTER."""
        entry = self.entry_for_handle(handle)
        if entry is None or entry.identity == identity:
            return False
        self._entries[entry.client_id] = replace(entry, identity=identity)
        return True

    def resolve_by_handle(self, handle: Any) -> str | None:
        """Look up client id by transport handle (O(1))."""
        return self._index_by_handle.get(handle)

    def get(self, client_id: str) -> ConnectionEntry | None:
        return self._entries.get(client_id)

    def entry_for_handle(self, handle: Any) -> ConnectionEntry | None:
        client_id = self._index_by_handle.get(handle)
        if client_id is None:
            return None
        return self._entries.get(client_id)

    def count(self) -> int:
        return len(self._entries)

    def broadcast_targets(self) -> Iterator[Any]:
        return iter([e.handle for e in self._entries.values()])

    def clear_all(self) -> list[Any]:
        """Drop every entry and return the handles for teardown."""
        handles = [e.handle for e in self._entries.values()]
        self._entries.clear()
        self._index_by_handle.clear()
        return handles

    def get_stats(self) -> dict[str, Any]:
        identified = sum(1 for e in self._entries.values() if e.identity is not None)
        return {
            "total": len(self._entries),
            "verified": identified,
            "indexed_by_handle": len(self._index_by_handle),
        }
