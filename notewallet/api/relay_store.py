from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from notewallet.api.logging_config import get_logger

logger = get_logger("api.relay_store")

MAX_NOTES_PER_TAG = 1000
DEFAULT_LIMIT = 100


class RelayStore:
    """
    Per-recipient-tag FIFO of opaque encrypted notes.

    The oldest entry is evicted once a tag holds MAX_NOTES_PER_TAG. With a
    `state_path` the mailboxes survive restarts (rewritten on every change).
    """

    def __init__(
        self,
        state_path: Optional[Path] = None,
        max_per_tag: int = MAX_NOTES_PER_TAG,
        clock: Callable[[], float] = time.time,
        clock_ns: Callable[[], int] = time.time_ns,
    ):
        self.state_path = Path(state_path) if state_path else None
        self.max_per_tag = max_per_tag
        self._clock = clock
        self._clock_ns = clock_ns
        self._counter = 0
        self._lock = threading.Lock()
        self._boxes: Dict[str, List[dict]] = self._load()

    def _load(self) -> Dict[str, List[dict]]:
        if self.state_path and self.state_path.exists():
            try:
                st = json.loads(self.state_path.read_text())
                return {k: list(v) for k, v in st.get("mailboxes", {}).items()}
            except (OSError, ValueError) as e:
                logger.error(f"Relay state unreadable, starting empty: {e}")
        return {}

    def _save(self) -> None:
        if not self.state_path:
            return
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps({"mailboxes": self._boxes}))
        except OSError as e:
            logger.error(f"Failed to persist relay state: {e}")

    def _next_id(self) -> str:
        self._counter = (self._counter + 1) & 0xFFFFFFFF
        return f"{self._clock_ns() & 0xFFFFFFFFFFFFFFFF:016x}{self._counter:08x}"

    def put(
        self,
        recipient_tag: str,
        encrypted_payload: str,
        ephemeral_pubkey: str,
        sender_tag: Optional[str] = None,
    ) -> Tuple[str, int]:
        tag = recipient_tag.lower()
        with self._lock:
            rec = {
                "id": self._next_id(),
                "encrypted_payload": encrypted_payload,
                "ephemeral_pubkey": ephemeral_pubkey,
                "sender_tag": sender_tag,
                "stored_at": int(self._clock()),
            }
            box = self._boxes.setdefault(tag, [])
            box.append(rec)
            if len(box) > self.max_per_tag:
                dropped = len(box) - self.max_per_tag
                del box[:dropped]
                logger.info(f"Mailbox {tag[:12]}… full, evicted {dropped} oldest")
            self._save()
            return rec["id"], rec["stored_at"]

    def list(self, recipient_tag: str, since: Optional[int] = None, limit: int = DEFAULT_LIMIT) -> Tuple[List[dict], bool]:
        """Entries with stored_at strictly after `since`, oldest first."""
        with self._lock:
            box = self._boxes.get(recipient_tag.lower(), [])
            items = [r for r in box if since is None or r["stored_at"] > since]
        return [dict(r) for r in items[:limit]], len(items) > limit

    def delete(self, recipient_tag: str, note_id: str) -> bool:
        tag = recipient_tag.lower()
        with self._lock:
            box = self._boxes.get(tag, [])
            kept = [r for r in box if r["id"] != note_id]
            if len(kept) == len(box):
                return False
            if kept:
                self._boxes[tag] = kept
            else:
                self._boxes.pop(tag, None)
            self._save()
            return True

    def count(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._boxes.values())


__all__ = ["MAX_NOTES_PER_TAG", "DEFAULT_LIMIT", "RelayStore"]
