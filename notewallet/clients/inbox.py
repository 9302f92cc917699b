"""
Encrypted inbox poller: pulls notes addressed to our recipient tag from the
relay, decrypts them and files them in the NoteStore.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from notewallet.api.logging_config import get_logger
from notewallet.api.relay_client import DecryptedNoteRecord, RelayClient
from notewallet.crypto_core.keys import DerivedKeyPair
from notewallet.database.models import Note, StoredNote
from notewallet.database.note_store import NoteStore

logger = get_logger("clients.inbox")

PAGE_LIMIT = 100


@dataclass
class PollResult:
    received: int = 0
    failed: int = 0
    deleted: int = 0
    watermark: int = 0


def note_from_payload(data: Any) -> Optional[Dict[str, Any]]:
    """Transfers wrap the note as {"note": {...}, "txHash": ...}; bare notes are accepted too."""
    if not isinstance(data, dict):
        return None
    inner = data.get("note")
    return inner if isinstance(inner, dict) else data


class InboxPoller:
    def __init__(
        self,
        store: NoteStore,
        relay: RelayClient,
        keypair: DerivedKeyPair,
        owner: str,
        interval_sec: float = 30.0,
        page_limit: int = PAGE_LIMIT,
        on_notes: Optional[Callable[[List[DecryptedNoteRecord]], None]] = None,
    ):
        self.store = store
        self.relay = relay
        self.keypair = keypair
        self.owner = owner
        self.interval_sec = interval_sec
        self.page_limit = page_limit
        self.on_notes = on_notes
        self.received_count = 0
        self.last_error: Optional[Exception] = None
        self._tick = asyncio.Lock()
        self._stop = asyncio.Event()

    @property
    def is_polling(self) -> bool:
        return self._tick.locked()

    def _ingest(self, rec: DecryptedNoteRecord) -> bool:
        raw = note_from_payload(rec.note_data)
        if raw is None:
            logger.warning(f"Note {rec.id} decrypted to an unexpected payload, skipping")
            return False
        stored = StoredNote(
            note=Note.from_dict(raw),
            tx_hash=f"encrypted:{rec.id}",
            stored_at=rec.stored_at * 1000,
            player=self.owner,
        )
        self.store.add(self.owner, stored)
        return True

    async def _delete(self, note_id: str) -> bool:
        try:
            await self.relay.delete_note(self.keypair, note_id)
            return True
        except Exception as e:
            logger.warning(f"Failed to delete note {note_id}: {e}")
            return False

    async def _poll(self) -> PollResult:
        pubkey = self.keypair.public_key
        prev = self.store.get_last_fetch(pubkey)
        cursor: Optional[int] = prev or None
        result = PollResult(watermark=prev)
        newest = 0
        seen: Set[str] = set()

        while True:
            page = await self.relay.fetch_notes(self.keypair, since=cursor, limit=self.page_limit)
            fresh = [r for r in page.notes if r.id not in seen]
            if not fresh:
                # a full page we already saw (left on the relay: unreadable or not deleted)
                # within one second; step past that second or the tag never drains
                stuck = max((r.stored_at for r in page.notes), default=0)
                if not page.has_more or cursor is not None and stuck <= cursor:
                    break
                logger.warning(f"Skipping past {len(page.notes)} unreadable notes stored at {stuck}")
                cursor = stuck
                continue
            seen.update(r.id for r in fresh)

            batch = self.relay.decrypt_records(self.keypair, fresh)
            newest = max(newest, batch.max_stored_at)
            result.failed += batch.failed_count

            ingested = []
            for rec in batch.notes:
                if self._ingest(rec):
                    ingested.append(rec)
                else:
                    result.failed += 1
            for rec in ingested:
                if await self._delete(rec.id):
                    result.deleted += 1
            result.received += len(ingested)
            if ingested and self.on_notes:
                self.on_notes(ingested)

            if not page.has_more:
                break
            # strict `since` at second granularity: step back one so same-second stragglers are refetched
            cursor = batch.max_stored_at - 1

        if newest:
            # same rule as paging; re-ingesting is a no-op
            result.watermark = max(prev, newest - 1)
            self.store.set_last_fetch(pubkey, result.watermark)
        if result.failed:
            logger.warning(f"Failed to decrypt or ingest {result.failed} notes")
        self.received_count += result.received
        return result

    async def poll_once(self) -> PollResult:
        async with self._tick:
            try:
                res = await self._poll()
            except Exception as e:
                self.last_error = e
                raise
            self.last_error = None
            return res

    async def fetch_now(self) -> Optional[PollResult]:
        """Run a tick unless one is already in progress (then returns None)."""
        if self._tick.locked():
            return None
        return await self.poll_once()

    async def run(self) -> None:
        self._stop.clear()
        logger.info(f"Polling inbox every {self.interval_sec}s")
        while not self._stop.is_set():
            try:
                res = await self.poll_once()
                if res.received:
                    logger.info(f"Received {res.received} notes")
            except Exception as e:
                logger.error(f"Failed to fetch encrypted notes: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()


__all__ = ["PAGE_LIMIT", "PollResult", "note_from_payload", "InboxPoller"]
