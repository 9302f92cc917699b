"""
Per-owner note ledger with a pending-transfer reservation API.

Every read goes to storage, so several NoteStore instances (or processes)
sharing one database see each other's writes; `sync_external()` pushes
those writes to local listeners.

Storage failures never propagate: they are logged and the operation
degrades to an empty read or a skipped write.
"""
from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from notewallet.api.logging_config import get_logger
from notewallet.database.models import PendingTransfer, StoredNote
from notewallet.database.storage import Storage, StorageError
from notewallet.errors import PendingConflict

logger = get_logger("database.note_store")

STORED_NOTES_PREFIX = "storedNotes:"
LEGACY_STORAGE_KEY = "storedNotes"
PENDING_TRANSFERS_PREFIX = "pendingTransfers:"
LAST_FETCH_PREFIX = "encryptedNotes:lastFetch:"
PENDING_TRANSFER_TIMEOUT_MS = 5 * 60 * 1000

Listener = Callable[[List[StoredNote]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_owner(owner: Optional[str]) -> Optional[str]:
    trimmed = (owner or "").strip()
    return trimmed.lower() if trimmed else None


class ReservationState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


class Reservation:
    """Handle on one PendingTransfer entry. Finishing it twice is a no-op."""

    def __init__(self, store: "NoteStore", owner: str, hashes: List[str], timestamp: int):
        self._store = store
        self.owner = owner
        self.hashes = list(hashes)
        self.timestamp = timestamp
        self._final: Optional[ReservationState] = None

    @property
    def state(self) -> ReservationState:
        if self._final is not None:
            return self._final
        if self._store.clock() - self.timestamp >= PENDING_TRANSFER_TIMEOUT_MS:
            return ReservationState.EXPIRED
        return ReservationState.RESERVED

    @property
    def active(self) -> bool:
        return self.state == ReservationState.RESERVED

    def _finish(self, state: ReservationState) -> None:
        if self._final is not None:
            return
        self._final = state
        self._store.clear_pending(self.owner, self.hashes)

    def commit(self) -> None:
        self._finish(ReservationState.COMMITTED)

    def release(self) -> None:
        self._finish(ReservationState.RELEASED)

    def __repr__(self) -> str:
        return f"Reservation(owner={self.owner!r}, hashes={len(self.hashes)}, state={self.state.value})"


class NoteStore:
    def __init__(self, storage: Storage, clock: Callable[[], int] = _now_ms):
        self.storage = storage
        self.clock = clock
        self._listeners: Dict[str, List[Listener]] = {}
        self._seen_token = self._change_token()

    # ---------- raw storage ----------
    def _get(self, key: str) -> Optional[str]:
        try:
            return self.storage.get(key)
        except StorageError as e:
            logger.warning(f"Storage read failed for {key}: {e}")
            return None

    def _set(self, key: str, value: str) -> None:
        try:
            self.storage.set(key, value)
        except StorageError as e:
            logger.warning(f"Storage write failed for {key}: {e}")

    def _change_token(self) -> Optional[int]:
        try:
            return self.storage.change_token()
        except StorageError as e:
            logger.warning(f"Storage change check failed: {e}")
            return None

    @staticmethod
    def _parse_list(raw: Optional[str], what: str) -> List[Any]:
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse {what}: {e}")
            return []
        return parsed if isinstance(parsed, list) else []

    @staticmethod
    def _parse_notes(entries: Iterable[Any]) -> List[StoredNote]:
        out = []
        for e in entries:
            if not isinstance(e, dict):
                continue
            try:
                out.append(StoredNote.from_dict(e))
            except (TypeError, ValueError) as ex:
                logger.warning(f"Skipping unreadable stored note: {ex}")
        return out

    # ---------- notes ----------
    def _read(self, key: str) -> List[StoredNote]:
        raw = self._get(STORED_NOTES_PREFIX + key)
        if raw is not None:
            return self._parse_notes(self._parse_list(raw, "stored notes"))
        return self._migrate_legacy(key)

    def _migrate_legacy(self, key: str) -> List[StoredNote]:
        legacy = self._parse_list(self._get(LEGACY_STORAGE_KEY), "legacy stored notes")
        mine = [
            e for e in legacy
            if isinstance(e, dict) and isinstance(e.get("player"), str) and normalize_owner(e["player"]) == key
        ]
        if not mine:
            return []
        notes = self._parse_notes(mine)
        logger.info(f"Migrated {len(notes)} legacy notes for {key}")
        self._write(key, notes)
        return notes

    def _write(self, key: str, notes: List[StoredNote]) -> None:
        self._set(STORED_NOTES_PREFIX + key, json.dumps([n.to_dict() for n in notes]))

    def _notify(self, key: str, snapshot: List[StoredNote]) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(list(snapshot))
            except Exception as e:
                logger.warning(f"Stored notes listener failed: {e}")

    def _commit(self, key: str, notes: List[StoredNote]) -> None:
        self._write(key, notes)
        self._notify(key, notes)

    def list(self, owner: Optional[str]) -> List[StoredNote]:
        key = normalize_owner(owner)
        return self._read(key) if key else []

    def read_bucket(self, owner: Optional[str]) -> List[StoredNote]:
        """Notes under the owner's own key only, skipping the legacy read-repair. Storage errors propagate."""
        key = normalize_owner(owner)
        if not key:
            return []
        raw = self.storage.get(STORED_NOTES_PREFIX + key)
        return self._parse_notes(self._parse_list(raw, "stored notes"))

    def add(self, owner: Optional[str], entry: StoredNote) -> bool:
        """Prepend `entry`. Returns False when its txHash is already stored."""
        key = normalize_owner(owner)
        if not key:
            return False
        existing = self._read(key)
        if any(n.tx_hash == entry.tx_hash for n in existing):
            return False
        self._commit(key, [entry] + existing)
        return True

    def replace(self, owner: Optional[str], old_tx_hash: str, entry: StoredNote) -> bool:
        key = normalize_owner(owner)
        if not key:
            return False
        existing = self._read(key)
        for i, n in enumerate(existing):
            if n.tx_hash == old_tx_hash:
                nxt = list(existing)
                nxt[i] = entry
                self._commit(key, nxt)
                return True
        return False

    def remove(self, owner: Optional[str], tx_hashes: Iterable[str]) -> int:
        key = normalize_owner(owner)
        if not key:
            return 0
        drop = set(tx_hashes)
        existing = self._read(key)
        kept = [n for n in existing if n.tx_hash not in drop]
        removed = len(existing) - len(kept)
        if removed:
            self._commit(key, kept)
        return removed

    def set_all(self, owner: Optional[str], entries: List[StoredNote]) -> None:
        key = normalize_owner(owner)
        if key:
            self._commit(key, list(entries))

    def clear(self, owner: Optional[str]) -> None:
        self.set_all(owner, [])

    # ---------- listeners ----------
    def subscribe(self, owner: Optional[str], listener: Listener) -> Callable[[], None]:
        key = normalize_owner(owner)
        if not key:
            listener([])
            return lambda: None

        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            bucket = self._listeners.get(key)
            if not bucket or listener not in bucket:
                return
            bucket.remove(listener)
            if not bucket:
                del self._listeners[key]

        return unsubscribe

    def sync_external(self) -> bool:
        """Re-notify subscribers if another writer touched the storage. True when it did."""
        token = self._change_token()
        if token is None or token == self._seen_token:
            return False
        self._seen_token = token
        for key in list(self._listeners):
            self._notify(key, self._read(key))
        return True

    # ---------- pending transfers ----------
    def _read_pending(self, key: str) -> List[PendingTransfer]:
        now = self.clock()
        entries = self._parse_list(self._get(PENDING_TRANSFERS_PREFIX + key), "pending transfers")
        active = []
        for e in entries:
            p = PendingTransfer.from_dict(e) if isinstance(e, dict) else None
            if p is not None and now - p.timestamp < PENDING_TRANSFER_TIMEOUT_MS:
                active.append(p)
        return active

    def _write_pending(self, key: str, pending: List[PendingTransfer]) -> None:
        self._set(PENDING_TRANSFERS_PREFIX + key, json.dumps([p.to_dict() for p in pending]))

    def mark_pending(self, owner: Optional[str], hashes: Iterable[str]) -> Reservation:
        key = normalize_owner(owner) or ""
        hashes = list(hashes)
        ts = self.clock()
        if key:
            pending = self._read_pending(key)
            taken = {h for p in pending for h in p.spent_note_hashes}
            clash = taken.intersection(hashes)
            if clash:
                raise PendingConflict(clash)
            pending.append(PendingTransfer(spent_note_hashes=hashes, timestamp=ts))
            self._write_pending(key, pending)
        return Reservation(self, key, hashes, ts)

    def clear_pending(self, owner: Optional[str], hashes: Iterable[str]) -> None:
        key = normalize_owner(owner)
        if not key:
            return
        drop = set(hashes)
        pending = self._read_pending(key)
        kept = [p for p in pending if not drop.intersection(p.spent_note_hashes)]
        self._write_pending(key, kept)

    def pending_hashes(self, owner: Optional[str]) -> Set[str]:
        """Union of active reservations; expired entries are dropped and persisted."""
        key = normalize_owner(owner)
        if not key:
            return set()
        pending = self._read_pending(key)
        self._write_pending(key, pending)
        return {h for p in pending for h in p.spent_note_hashes}

    # ---------- inbox watermark ----------
    def get_last_fetch(self, pubkey: str) -> int:
        raw = self._get(LAST_FETCH_PREFIX + pubkey.lower())
        try:
            return int(raw) if raw else 0
        except ValueError:
            logger.warning(f"Ignoring unreadable inbox watermark: {raw!r}")
            return 0

    def set_last_fetch(self, pubkey: str, stored_at: int) -> None:
        self._set(LAST_FETCH_PREFIX + pubkey.lower(), str(int(stored_at)))


__all__ = [
    "STORED_NOTES_PREFIX",
    "LEGACY_STORAGE_KEY",
    "PENDING_TRANSFERS_PREFIX",
    "LAST_FETCH_PREFIX",
    "PENDING_TRANSFER_TIMEOUT_MS",
    "normalize_owner",
    "ReservationState",
    "Reservation",
    "NoteStore",
]
