"""
Notes archive export/import tests
"""

import io
import json
import zipfile

import pytest

from notewallet.database.backup import (
    ARCHIVE_DATA_FILENAME,
    archive_filename,
    export_notes,
    import_archive,
    load_archive,
    merge_notes,
    read_archive,
    save_archive,
)
from notewallet.errors import ArchiveFormatError, ArchiveOwnerMismatch

from conftest import make_stored


def _zip(content) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(ARCHIVE_DATA_FILENAME, content if isinstance(content, str) else json.dumps(content))
    return buf.getvalue()


class TestExport:
    """Tests for archive creation."""

    def test_roundtrip(self, alice):
        notes = [make_stored(5, "t1", "alice", alice.public_key), make_stored(7, "t2", "alice", alice.public_key)]
        archive = export_notes("alice", notes, now_ms=99)
        payload = read_archive(archive.data)
        assert payload.player == "alice"
        assert payload.exported_at == 99
        assert [n.tx_hash for n in payload.notes] == ["t1", "t2"]
        assert payload.notes[0].note == notes[0].note

    def test_zip_contents(self, alice):
        archive = export_notes("alice", [make_stored(5, "t1", "alice", alice.public_key)], now_ms=1)
        with zipfile.ZipFile(io.BytesIO(archive.data)) as zf:
            assert zf.namelist() == [ARCHIVE_DATA_FILENAME]
            data = json.loads(zf.read(ARCHIVE_DATA_FILENAME))
        assert set(data) == {"player", "exportedAt", "notes"}

    @pytest.mark.parametrize(
        "owner,expected",
        [("Alice", "notes-alice.zip"), ("Bob Smith!", "notes-bob-smith.zip"), ("  ", "notes.zip")],
    )
    def test_filename(self, owner, expected):
        assert archive_filename(owner) == expected

    def test_save_and_load(self, tmp_path, alice):
        archive = export_notes("alice", [make_stored(5, "t1", "alice", alice.public_key)])
        path = save_archive(archive, tmp_path / "out")
        assert path.name == "notes-alice.zip"
        assert load_archive(path) == archive.data

    def test_load_requires_zip(self, tmp_path):
        p = tmp_path / "notes.json"
        p.write_text("[]")
        with pytest.raises(ArchiveFormatError):
            load_archive(p)


class TestRead:
    """Tests for archive validation."""

    def test_legacy_list_form(self, alice):
        data = _zip([make_stored(5, "t1", "alice", alice.public_key).to_dict()])
        payload = read_archive(data)
        assert payload.player == ""
        assert [n.tx_hash for n in payload.notes] == ["t1"]

    def test_not_a_zip(self):
        with pytest.raises(ArchiveFormatError):
            read_archive(b"plain bytes")

    def test_missing_data_file(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("other.json", "{}")
        with pytest.raises(ArchiveFormatError) as exc:
            read_archive(buf.getvalue())
        assert ARCHIVE_DATA_FILENAME in exc.value.message

    @pytest.mark.parametrize(
        "content",
        [
            "{broken",
            "42",
            {"notes": []},
            {"player": "alice"},
            {"player": "alice", "notes": [{"note": {}, "txHash": 5, "storedAt": 1, "player": "alice"}]},
            {"player": "alice", "notes": [{"note": {}, "txHash": "a", "storedAt": "1", "player": "alice"}]},
            [{"txHash": "a"}],
        ],
    )
    def test_malformed(self, content):
        with pytest.raises(ArchiveFormatError):
            read_archive(_zip(content))


class TestMerge:
    """Tests for merge order and dedup."""

    def test_existing_wins_and_sorted(self, alice):
        existing = [make_stored(5, "t1", "alice", alice.public_key, stored_at=10)]
        incoming = [
            make_stored(9, "t1", "alice", alice.public_key, stored_at=50),
            make_stored(6, "t2", "alice", alice.public_key, stored_at=30),
            make_stored(6, "t2", "alice", alice.public_key, stored_at=31),
        ]
        merged = merge_notes(existing, incoming)
        assert [(n.tx_hash, n.stored_at) for n in merged] == [("t2", 30), ("t1", 10)]

    def test_missing_hash_keys_on_player_and_time(self, alice):
        a = make_stored(5, "", "alice", alice.public_key, stored_at=10)
        b = make_stored(6, "", "alice", alice.public_key, stored_at=11)
        merged = merge_notes([a], [a, b])
        assert len(merged) == 2


class TestImport:
    """Tests for importing into the store."""

    def test_merges_into_store(self, store, alice):
        store.add("alice", make_stored(5, "t1", "alice", alice.public_key, stored_at=10))
        archive = export_notes(
            "Alice",
            [
                make_stored(5, "t1", "alice", alice.public_key, stored_at=10),
                make_stored(7, "t2", "alice", alice.public_key, stored_at=20),
            ],
        )
        assert import_archive(store, "alice", archive.data) == 1
        assert [n.tx_hash for n in store.list("alice")] == ["t2", "t1"]
        assert import_archive(store, "alice", archive.data) == 0

    def test_owner_mismatch_leaves_store(self, store, bob, alice):
        store.add("alice", make_stored(5, "t1", "alice", alice.public_key))
        archive = export_notes("bob", [make_stored(7, "b1", "bob", bob.public_key)])
        with pytest.raises(ArchiveOwnerMismatch) as exc:
            import_archive(store, "alice", archive.data)
        assert exc.value.archive_owner == "bob"
        assert [n.tx_hash for n in store.list("alice")] == ["t1"]

    def test_overwrite_owner(self, store, bob):
        archive = export_notes("bob", [make_stored(7, "b1", "bob", bob.public_key)])
        assert import_archive(store, "alice", archive.data, overwrite_owner=True) == 1
        assert [n.tx_hash for n in store.list("alice")] == ["b1"]

    def test_legacy_archive_has_no_owner_check(self, store, bob):
        data = _zip([make_stored(7, "b1", "bob", bob.public_key).to_dict()])
        assert import_archive(store, "alice", data) == 1
