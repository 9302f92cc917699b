"""
Migration utility for wallet data written by older clients.

Two sources are understood:
- a key/value dump of the browser wallet's storage (a JSON object mapping
  storage keys to their string values), and
- the legacy single `storedNotes` bucket already sitting in the local
  database, which older versions wrote for every player at once.

Per-player buckets and inbox watermarks are copied as-is; the legacy bucket
is split per player. Existing notes are never overwritten (matching txHash
is skipped), so running the migration twice is harmless.

Usage:
    # Preview
    python -m notewallet.database.migrate_legacy --dump wallet-storage.json --dry-run

    # Split the legacy bucket already in the local database
    python -m notewallet.database.migrate_legacy --legacy-bucket --verify
"""
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from notewallet.api.config import DB_PATH
from notewallet.api.logging_config import configure_logging, get_logger
from notewallet.database.backup import merge_notes
from notewallet.database.models import StoredNote
from notewallet.database.note_store import (
    LAST_FETCH_PREFIX,
    LEGACY_STORAGE_KEY,
    STORED_NOTES_PREFIX,
    NoteStore,
    normalize_owner,
)
from notewallet.database.storage import SqliteStorage, Storage

logger = get_logger("database.migrate_legacy")


@dataclass
class MigrationReport:
    migrated: Dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    errors: int = 0
    watermarks: int = 0

    @property
    def total(self) -> int:
        return sum(self.migrated.values())


# ============================================================================
# LOADING
# ============================================================================

def load_storage_dump(path: Path) -> Dict[str, str]:
    """Read a storage dump; non-string values are re-serialized to JSON text."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object of storage keys")
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in data.items()}


def _entries(raw: Optional[str]) -> List[Dict[str, Any]]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Unparsable note bucket skipped: {e}")
        return []
    return [e for e in parsed if isinstance(e, dict)] if isinstance(parsed, list) else []


# ============================================================================
# MIGRATION
# ============================================================================

def _migrate_entries(
    store: NoteStore,
    owner: str,
    entries: List[Dict[str, Any]],
    report: MigrationReport,
    dry_run: bool,
) -> None:
    # store.list() would read-repair from the legacy bucket first
    existing = store.read_bucket(owner)
    seen = {n.tx_hash for n in existing}
    fresh: List[StoredNote] = []
    for e in entries:
        try:
            note = StoredNote.from_dict(e)
        except (TypeError, ValueError) as ex:
            logger.warning(f"Error migrating note for {owner}: {ex}")
            report.errors += 1
            continue
        if note.tx_hash in seen:
            report.skipped += 1
            continue
        if not note.player:
            note.player = owner
        seen.add(note.tx_hash)
        fresh.append(note)

    if fresh:
        report.migrated[owner] = report.migrated.get(owner, 0) + len(fresh)
        if not dry_run:
            store.set_all(owner, merge_notes(existing, fresh))


def split_legacy_bucket(store: NoteStore, raw: Optional[str], report: MigrationReport, dry_run: bool = False) -> None:
    by_owner: Dict[str, List[Dict[str, Any]]] = {}
    for e in _entries(raw):
        owner = normalize_owner(e.get("player") if isinstance(e.get("player"), str) else None)
        if not owner:
            report.skipped += 1
            continue
        by_owner.setdefault(owner, []).append(e)
    for owner, entries in by_owner.items():
        _migrate_entries(store, owner, entries, report, dry_run)


def migrate_dump(store: NoteStore, dump: Dict[str, str], dry_run: bool = False) -> MigrationReport:
    report = MigrationReport()
    for key, raw in sorted(dump.items()):
        if key.startswith(STORED_NOTES_PREFIX):
            owner = normalize_owner(key[len(STORED_NOTES_PREFIX):])
            if owner:
                _migrate_entries(store, owner, _entries(raw), report, dry_run)
        elif key == LEGACY_STORAGE_KEY:
            split_legacy_bucket(store, raw, report, dry_run)
        elif key.startswith(LAST_FETCH_PREFIX):
            pubkey = key[len(LAST_FETCH_PREFIX):]
            try:
                value = int(raw)
            except ValueError:
                report.errors += 1
                continue
            # keep whichever watermark is further along
            if value > store.get_last_fetch(pubkey):
                if not dry_run:
                    store.set_last_fetch(pubkey, value)
                report.watermarks += 1
        # pending reservations are short-lived and not carried over
    return report


def migrate_local_legacy(store: NoteStore, storage: Storage, dry_run: bool = False) -> MigrationReport:
    report = MigrationReport()
    split_legacy_bucket(store, storage.get(LEGACY_STORAGE_KEY), report, dry_run)
    return report


def verify_migration(store: NoteStore, report: MigrationReport) -> bool:
    ok = True
    for owner, count in sorted(report.migrated.items()):
        have = len(store.list(owner))
        print(f"   {owner}: {have} notes stored ({count} migrated)")
        ok = ok and have >= count
    return ok


# ============================================================================
# MAIN
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate wallet notes written by older clients")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Target wallet database")
    parser.add_argument("--dump", type=Path, help="Storage dump (JSON object of key -> value)")
    parser.add_argument("--legacy-bucket", action="store_true",
                        help="Split the legacy 'storedNotes' bucket already in the database")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing")
    parser.add_argument("--verify", action="store_true", help="Verify counts after migrating")
    args = parser.parse_args(argv)

    configure_logging()
    if not args.dump and not args.legacy_bucket:
        parser.error("nothing to do: pass --dump and/or --legacy-bucket")

    storage = SqliteStorage(args.db)
    store = NoteStore(storage)
    print("=" * 60)
    print(f"notewallet legacy migration -> {args.db}")
    print("=" * 60)
    if args.dry_run:
        print("DRY RUN: nothing will be written")

    try:
        return _run(args, store, storage)
    finally:
        storage.close()


def _run(args: argparse.Namespace, store: NoteStore, storage: SqliteStorage) -> int:
    reports = []
    if args.dump:
        reports.append(migrate_dump(store, load_storage_dump(args.dump), args.dry_run))
    if args.legacy_bucket:
        reports.append(migrate_local_legacy(store, storage, args.dry_run))

    merged = MigrationReport()
    for r in reports:
        for owner, n in r.migrated.items():
            merged.migrated[owner] = merged.migrated.get(owner, 0) + n
        merged.skipped += r.skipped
        merged.errors += r.errors
        merged.watermarks += r.watermarks

    for owner, n in sorted(merged.migrated.items()):
        print(f"   {owner}: {n} notes")
    print(f"Migrated {merged.total} notes, skipped {merged.skipped}, errors {merged.errors}, "
          f"watermarks {merged.watermarks}")

    if args.verify and not args.dry_run:
        ok = verify_migration(store, merged)
        print("Migration verified" if ok else "Migration incomplete")
        return 0 if ok else 1
    return 0 if merged.errors == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
