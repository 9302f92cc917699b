# api/relay_client.py
# Client for the encrypted-note relay (mailbox keyed by recipient tag).
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from notewallet.api.config import WalletConfig
from notewallet.api.logging_config import get_logger
from notewallet.api.node_client import parse_json, raise_for_backend, transport_errors
from notewallet.api.schemas_api import EncryptedNoteRecord, NoteListRes, NoteUploadReq, NoteUploadRes
from notewallet.crypto_core.fields import strip_hex
from notewallet.crypto_core.keys import DerivedKeyPair
from notewallet.crypto_core.messages import decrypt_note, derive_recipient_tag, encrypt_note
from notewallet.errors import DecryptionFailed, ValidationError

logger = get_logger("api.relay_client")


@dataclass
class DecryptedNoteRecord:
    id: str
    note_data: Any
    stored_at: int  # unix seconds, as the relay reports it
    sender_tag: Optional[str] = None


@dataclass
class DecryptedBatch:
    notes: List[DecryptedNoteRecord] = field(default_factory=list)
    has_more: bool = False
    failed_count: int = 0
    # highest stored_at seen in the page, decryptable or not
    max_stored_at: int = 0


class RelayClient:
    def __init__(self, config: WalletConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=config.relay_url.rstrip("/"),
            timeout=config.http_timeout_sec,
            headers=config.extra_headers,
        )

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def upload_note(
        self,
        recipient_pubkey: str,
        note_data: Any,
        sender: Optional[DerivedKeyPair] = None,
    ) -> NoteUploadRes:
        recipient = strip_hex(recipient_pubkey)
        if len(recipient) != 64:
            raise ValidationError("Recipient public key must be a 64-character hex string")

        encrypted = encrypt_note(recipient, note_data)
        req = NoteUploadReq(
            recipient_tag=derive_recipient_tag(recipient),
            encrypted_payload=encrypted.encrypted_payload,
            ephemeral_pubkey=encrypted.ephemeral_pubkey,
            sender_tag=derive_recipient_tag(sender.public_key) if sender else None,
        )
        async with transport_errors("Note upload"):
            resp = await self.client.post("/api/notes", json=req.model_dump(exclude_none=True))
        raise_for_backend(resp, "Note upload")
        return parse_json(resp, NoteUploadRes, "note upload")

    async def fetch_notes(
        self,
        keypair: DerivedKeyPair,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> NoteListRes:
        params: Dict[str, int] = {}
        if since is not None:
            params["since"] = since
        if limit is not None:
            params["limit"] = limit
        tag = derive_recipient_tag(keypair.public_key)
        async with transport_errors("Note fetch"):
            resp = await self.client.get(f"/api/notes/{tag}", params=params)
        raise_for_backend(resp, "Note fetch")
        if resp.status_code == 204 or not resp.content:
            return NoteListRes()
        return parse_json(resp, NoteListRes, "note fetch")

    @staticmethod
    def decrypt_records(keypair: DerivedKeyPair, records: List[EncryptedNoteRecord]) -> DecryptedBatch:
        batch = DecryptedBatch()
        for rec in records:
            batch.max_stored_at = max(batch.max_stored_at, rec.stored_at)
            try:
                data = decrypt_note(keypair.private_key, rec.encrypted_payload, rec.ephemeral_pubkey)
            except DecryptionFailed as e:
                logger.warning(f"Failed to decrypt note {rec.id}: {e}")
                batch.failed_count += 1
                continue
            batch.notes.append(
                DecryptedNoteRecord(id=rec.id, note_data=data, stored_at=rec.stored_at, sender_tag=rec.sender_tag)
            )
        return batch

    async def fetch_and_decrypt_notes(
        self,
        keypair: DerivedKeyPair,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> DecryptedBatch:
        page = await self.fetch_notes(keypair, since, limit)
        batch = self.decrypt_records(keypair, page.notes)
        batch.has_more = page.has_more
        return batch

    async def delete_note(self, keypair: DerivedKeyPair, note_id: str) -> None:
        tag = derive_recipient_tag(keypair.public_key)
        async with transport_errors("Note delete"):
            resp = await self.client.delete(f"/api/notes/{tag}/{note_id}")
        raise_for_backend(resp, "Note delete")


__all__ = ["DecryptedNoteRecord", "DecryptedBatch", "RelayClient"]
