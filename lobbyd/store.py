"""Durable block records for the lobby hub."""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Iterator

from .errors import PersistenceFailure


@dataclass(frozen=True)
class BlockRecord:
    client_id: str
    active: bool
    blocked_by: str | None = None
    reason: str | None = None
    blocked_at: float = 0.0
    unblocked_at: float | None = None
    unblocked_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        # TOML has no null; absent keys mean None.
        out: dict[str, Any] = {"client_id": self.client_id, "active": self.active}
        if self.blocked_by is not None:
            out["blocked_by"] = self.blocked_by
        if self.reason is not None:
            out["reason"] = self.reason
        out["blocked_at"] = float(self.blocked_at)
        if self.unblocked_at is not None:
            out["unblocked_at"] = float(self.unblocked_at)
        if self.unblocked_by is not None:
            out["unblocked_by"] = self.unblocked_by
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BlockRecord | None:
        client_id = raw.get("client_id")
        if not isinstance(client_id, str) or not client_id.strip():
            return None

        def _opt_str(key: str) -> str | None:
            v = raw.get(key)
            return str(v) if v is not None and str(v) != "" else None

        def _opt_float(key: str) -> float | None:
            try:
                return float(raw[key]) if raw.get(key) is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            client_id=client_id,
            active=bool(raw.get("active", False)),
            blocked_by=_opt_str("blocked_by"),
            reason=_opt_str("reason"),
            blocked_at=_opt_float("blocked_at") or 0.0,
            unblocked_at=_opt_float("unblocked_at"),
            unblocked_by=_opt_str("unblocked_by"),
        )


class BlockStore:
    """
    Durable store of block records.

    A client id has at most one active record. Unblocking deactivates records
    rather than deleting them; only retention cleanup deletes, and only
    inactive records.
    """

    def is_blocked(self, client_id: str) -> bool:
        raise NotImplementedError

    def add_block(
        self, client_id: str, actor_id: str | None, reason: str | None = None
    ) -> None:
        raise NotImplementedError

    def remove_block(self, client_id: str, actor_id: str | None) -> bool:
        raise NotImplementedError

    def list_active(self) -> list[BlockRecord]:
        raise NotImplementedError

    def history(self, limit: int = 100) -> list[BlockRecord]:
        raise NotImplementedError

    def cleanup_inactive(self, older_than_s: float) -> int:
        raise NotImplementedError


def _apply_block(
    records: list[BlockRecord],
    client_id: str,
    actor_id: str | None,
    reason: str | None,
    now: float,
) -> list[BlockRecord]:
    out = [
        replace(r, active=False) if r.client_id == client_id and r.active else r
        for r in records
    ]
    out.append(
        BlockRecord(
            client_id=client_id,
            active=True,
            blocked_by=actor_id,
            reason=reason,
            blocked_at=now,
        )
    )
    return out


def _apply_unblock(
    records: list[BlockRecord], client_id: str, actor_id: str | None, now: float
) -> tuple[list[BlockRecord], bool]:
    changed = False
    out: list[BlockRecord] = []
    for r in records:
        if r.client_id == client_id and r.active:
            out.append(
                replace(r, active=False, unblocked_at=now, unblocked_by=actor_id)
            )
            changed = True
        else:
            out.append(r)
    return out, changed


def _apply_cleanup(
    records: list[BlockRecord], older_than_s: float, now: float
) -> tuple[list[BlockRecord], int]:
    cutoff = now - float(older_than_s)
    kept = [r for r in records if r.active or r.blocked_at >= cutoff]
    return kept, len(records) - len(kept)


def _history(records: list[BlockRecord], limit: int) -> list[BlockRecord]:
    ordered = sorted(records, key=lambda r: r.blocked_at, reverse=True)
    return ordered[: max(0, int(limit))]


class MemoryBlockStore(BlockStore):
    """Process-local store; used when no block_store_path is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[BlockRecord] = []

    def is_blocked(self, client_id: str) -> bool:
        with self._lock:
            return any(r.client_id == client_id and r.active for r in self._records)

    def add_block(
        self, client_id: str, actor_id: str | None, reason: str | None = None
    ) -> None:
        with self._lock:
            self._records = _apply_block(
                self._records, client_id, actor_id, reason, time.time()
            )

    def remove_block(self, client_id: str, actor_id: str | None) -> bool:
        with self._lock:
            self._records, changed = _apply_unblock(
                self._records, client_id, actor_id, time.time()
            )
            return changed

    def list_active(self) -> list[BlockRecord]:
        with self._lock:
            return [r for r in self._records if r.active]

    def history(self, limit: int = 100) -> list[BlockRecord]:
        with self._lock:
            return _history(self._records, limit)

    def cleanup_inactive(self, older_than_s: float) -> int:
        with self._lock:
            self._records, removed = _apply_cleanup(
                self._records, older_than_s, time.time()
            )
            return removed


_HEADER = """lobbyd block list (TOML)

Maintained by lobbyd. Each [[blocks]] entry is one block record; unblocking
sets active = false instead of removing the entry. Inactive entries older
than block_retention_s are pruned. Times are unix timestamps in seconds."""


class TomlBlockStore(BlockStore):
    """
    Block records kept as an array of tables in a TOML file.

    Every call re-reads the file under a write lock, so edits made by the
    offline admin commands are picked up. The lock is acquired with
    ``timeout_s``; a busy store or any IO/parse error surfaces as
    PersistenceFailure.
    """

    def __init__(self, path: str, *, timeout_s: float = 5.0) -> None:
        self.path = path
        self.timeout_s = float(timeout_s)
        self.log = logging.getLogger("lobbyd.store")
        self._write_lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        timeout = self.timeout_s if self.timeout_s > 0 else -1
        if not self._write_lock.acquire(timeout=timeout):
            raise PersistenceFailure(
                f"block store busy (timeout after {self.timeout_s}s)"
            )
        try:
            yield
        finally:
            self._write_lock.release()

    def _read(self) -> list[BlockRecord]:
        import tomllib

        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise PersistenceFailure(f"failed to read block store: {e}") from e

        raw = data.get("blocks", [])
        if not isinstance(raw, list):
            raise PersistenceFailure("block store: blocks must be an array of tables")

        records: list[BlockRecord] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            rec = BlockRecord.from_dict(item)
            if rec is None:
                self.log.warning("Skipping block record without client_id")
                continue
            records.append(rec)
        return records

    def _write(self, records: list[BlockRecord]) -> None:
        from tomlkit import aot, array, comment, document, dumps, nl, table

        doc = document()
        for line in _HEADER.splitlines():
            doc.add(comment(line) if line else nl())
        doc.add(nl())

        if records:
            entries = aot()
            for r in records:
                t = table()
                for k, v in r.to_dict().items():
                    t.add(k, v)
                entries.append(t)
            doc["blocks"] = entries
        else:
            doc["blocks"] = array()

        tmp = f"{self.path}.tmp"
        try:
            file_stat = None
            try:
                file_stat = os.stat(self.path)
            except OSError:
                file_stat = None

            replaced = False
            try:
                with open(tmp, "w", encoding="utf-8") as f:
                    f.write(dumps(doc))
                os.replace(tmp, self.path)
                replaced = True
            finally:
                if not replaced:
                    try:
                        os.unlink(tmp)
                    except FileNotFoundError:
                        pass

            mode = file_stat.st_mode if file_stat is not None else 0o600
            try:
                os.chmod(self.path, mode)
            except OSError:
                pass
        except OSError as e:
            raise PersistenceFailure(f"failed to write block store: {e}") from e

    def is_blocked(self, client_id: str) -> bool:
        with self._locked():
            return any(r.client_id == client_id and r.active for r in self._read())

    def add_block(
        self, client_id: str, actor_id: str | None, reason: str | None = None
    ) -> None:
        with self._locked():
            records = _apply_block(
                self._read(), client_id, actor_id, reason, time.time()
            )
            self._write(records)
        self.log.debug("Stored block client_id=%s actor=%s", client_id, actor_id)

    def remove_block(self, client_id: str, actor_id: str | None) -> bool:
        with self._locked():
            records, changed = _apply_unblock(
                self._read(), client_id, actor_id, time.time()
            )
            if changed:
                self._write(records)
        return changed

    def list_active(self) -> list[BlockRecord]:
        with self._locked():
            return [r for r in self._read() if r.active]

    def history(self, limit: int = 100) -> list[BlockRecord]:
        with self._locked():
            return _history(self._read(), limit)

    def cleanup_inactive(self, older_than_s: float) -> int:
        with self._locked():
            records, removed = _apply_cleanup(self._read(), older_than_s, time.time())
            if removed:
                self._write(records)
        return removed
