# api/relay_app.py
# Reference encrypted-note relay for local development and tests.
#
#   uvicorn notewallet.api.relay_app:app --port 4001
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Path as PathParam, Query

from notewallet.api.logging_config import get_logger
from notewallet.api.relay_store import DEFAULT_LIMIT, MAX_NOTES_PER_TAG, RelayStore
from notewallet.api.schemas_api import EncryptedNoteRecord, NoteListRes, NoteUploadReq, NoteUploadRes, Ok

logger = get_logger("api.relay_app")

TAG_PATTERN = r"^[0-9a-fA-F]{64}$"


def build_router(store: RelayStore) -> APIRouter:
    router = APIRouter()

    @router.post("/api/notes", response_model=NoteUploadRes)
    def upload_note(req: NoteUploadReq):
        note_id, stored_at = store.put(
            req.recipient_tag, req.encrypted_payload, req.ephemeral_pubkey, req.sender_tag
        )
        logger.debug(f"Stored note {note_id} for {req.recipient_tag[:12]}…")
        return NoteUploadRes(id=note_id, stored_at=stored_at)

    @router.get("/api/notes/{recipient_tag}", response_model=NoteListRes)
    def fetch_notes(
        recipient_tag: str = PathParam(..., pattern=TAG_PATTERN, description="Recipient tag (hex)"),
        since: Optional[int] = Query(None, ge=0, description="Only notes stored strictly after this (unix s)"),
        limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_NOTES_PER_TAG),
    ):
        items, has_more = store.list(recipient_tag, since, limit)
        return NoteListRes(notes=[EncryptedNoteRecord(**r) for r in items], has_more=has_more)

    @router.delete("/api/notes/{recipient_tag}/{note_id}", response_model=Ok)
    def delete_note(
        recipient_tag: str = PathParam(..., pattern=TAG_PATTERN),
        note_id: str = PathParam(..., min_length=1),
    ):
        if not store.delete(recipient_tag, note_id):
            raise HTTPException(status_code=404, detail="Note not found")
        return Ok()

    @router.get("/_health", response_model=Ok)
    def health():
        return Ok()

    return router


def create_app(store: Optional[RelayStore] = None) -> FastAPI:
    app = FastAPI(title="notewallet relay", version="0.1.0")
    app.state.store = store or RelayStore()
    app.include_router(build_router(app.state.store))
    return app


def _default_app() -> FastAPI:
    state = os.getenv("NOTEWALLET_RELAY_STATE")
    return create_app(RelayStore(Path(state) if state else None))


app = _default_app()
