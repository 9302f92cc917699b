"""
Note archive export/import.

An archive is a zip holding a single `notes.json`:

    {"player": "<owner>", "exportedAt": <ms>, "notes": [StoredNote, ...]}

Older exports may hold a bare list of StoredNote; those are accepted with an
empty declared owner. Every record is validated before anything is imported.
"""
from __future__ import annotations

import io
import json
import re
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from pydantic import TypeAdapter, ValidationError as SchemaError

from notewallet.api.logging_config import get_logger
from notewallet.api.schemas_api import NotesArchivePayload, StoredNoteRecord
from notewallet.database.models import StoredNote
from notewallet.database.note_store import NoteStore, normalize_owner
from notewallet.errors import ArchiveFormatError, ArchiveOwnerMismatch

logger = get_logger("database.backup")

ARCHIVE_DATA_FILENAME = "notes.json"

_legacy_list = TypeAdapter(List[StoredNoteRecord])


@dataclass
class NotesArchive:
    filename: str
    data: bytes


@dataclass
class ArchivePayload:
    player: str
    exported_at: int
    notes: List[StoredNote]


def _now_ms() -> int:
    return int(time.time() * 1000)


def archive_filename(owner: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", owner.strip().lower()).strip("-")
    return f"notes-{slug}.zip" if slug else "notes.zip"


def export_notes(owner: str, notes: List[StoredNote], now_ms: Optional[int] = None) -> NotesArchive:
    payload = {
        "player": owner,
        "exportedAt": now_ms if now_ms is not None else _now_ms(),
        "notes": [n.to_dict() for n in notes],
    }
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(ARCHIVE_DATA_FILENAME, json.dumps(payload, indent=2))
    logger.info(f"Exported {len(notes)} notes for {owner or '<anonymous>'}")
    return NotesArchive(filename=archive_filename(owner), data=buf.getvalue())


def _records_to_notes(records: List[StoredNoteRecord]) -> List[StoredNote]:
    return [StoredNote.from_dict(r.model_dump()) for r in records]


def read_archive(data: bytes) -> ArchivePayload:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            try:
                content = zf.read(ARCHIVE_DATA_FILENAME).decode("utf-8")
            except KeyError:
                raise ArchiveFormatError(f"Archive missing {ARCHIVE_DATA_FILENAME}")
    except (zipfile.BadZipFile, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read notes archive: {e}")
        raise ArchiveFormatError("Unable to read notes archive") from e

    try:
        parsed = json.loads(content)
    except ValueError as e:
        raise ArchiveFormatError(f"{ARCHIVE_DATA_FILENAME} is not valid JSON") from e

    if isinstance(parsed, list):
        try:
            records = _legacy_list.validate_python(parsed)
        except SchemaError as e:
            raise ArchiveFormatError(f"{ARCHIVE_DATA_FILENAME} does not contain valid notes") from e
        return ArchivePayload(player="", exported_at=_now_ms(), notes=_records_to_notes(records))

    if not isinstance(parsed, dict):
        raise ArchiveFormatError(f"{ARCHIVE_DATA_FILENAME} payload is invalid")
    if not isinstance(parsed.get("player"), str) or not isinstance(parsed.get("notes"), list):
        raise ArchiveFormatError(f"{ARCHIVE_DATA_FILENAME} missing player or notes")

    try:
        payload = NotesArchivePayload.model_validate(parsed)
    except SchemaError as e:
        raise ArchiveFormatError(f"{ARCHIVE_DATA_FILENAME} contains malformed notes") from e

    return ArchivePayload(
        player=payload.player,
        exported_at=payload.exportedAt if payload.exportedAt is not None else _now_ms(),
        notes=_records_to_notes(payload.notes),
    )


def _note_key(n: StoredNote) -> str:
    return n.tx_hash if n.tx_hash else f"{n.player}-{n.stored_at}"


def merge_notes(existing: List[StoredNote], incoming: List[StoredNote]) -> List[StoredNote]:
    """Existing entries win on key clashes; result is newest-first by storedAt."""
    seen = {_note_key(n) for n in existing}
    fresh = []
    for n in incoming:
        k = _note_key(n)
        if k in seen:
            continue
        seen.add(k)
        fresh.append(n)
    return sorted(fresh + existing, key=lambda n: n.stored_at, reverse=True)


def import_archive(store: NoteStore, owner: str, data: bytes, overwrite_owner: bool = False) -> int:
    """
    Merge an archive into `owner`'s notes. Returns how many notes were new.

    A different declared owner aborts with ArchiveOwnerMismatch before any
    write, unless `overwrite_owner` is set.
    """
    payload = read_archive(data)
    declared = normalize_owner(payload.player)
    if declared and declared != normalize_owner(owner) and not overwrite_owner:
        raise ArchiveOwnerMismatch(payload.player, owner)

    existing = store.list(owner)
    merged = merge_notes(existing, payload.notes)
    store.set_all(owner, merged)
    added = len(merged) - len(existing)
    logger.info(f"Imported {added} new notes for {owner} ({len(payload.notes)} in archive)")
    return added


# ---------- file helpers ----------
def save_archive(archive: NotesArchive, directory: Union[str, Path] = ".") -> Path:
    path = Path(directory) / archive.filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(archive.data)
    return path


def load_archive(path: Union[str, Path]) -> bytes:
    p = Path(path)
    if p.suffix.lower() != ".zip":
        raise ArchiveFormatError("Upload a .zip archive containing notes.json")
    return p.read_bytes()


__all__ = [
    "ARCHIVE_DATA_FILENAME",
    "NotesArchive",
    "ArchivePayload",
    "archive_filename",
    "export_notes",
    "read_archive",
    "merge_notes",
    "import_archive",
    "save_archive",
    "load_archive",
]
