# crypto_core/proof_inputs.py
# Packs a 2-in/2-out transfer into the circuit's input map.
#
# Field names, padding widths and constants mirror the settlement backend's
# circuit ABI. Any drift makes the proof invalid.

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Sequence, Tuple

from notewallet.crypto_core.commitments import make_commitment, make_nullifier, note_commitments
from notewallet.crypto_core.fields import ZERO_HEX, FieldHasher, hex_to_bytes, to_field_hex
from notewallet.database.models import Note, SpendableNote
from notewallet.errors import FieldOverflow, ProofAssemblyError, UnsupportedKind

BLOB_LENGTH_BYTES = 128
IDENTITY_MAX_LEN = 256
CONTRACT_NAME_MAX_LEN = 256
TX_HASH_LEN = 64
STATE_LEN = 4
MESSAGE_COUNT = 5


class UtxoKind(IntEnum):
    NULL = 0
    SEND = 1
    MINT = 2
    BURN = 3


@dataclass(frozen=True)
class InputNoteData:
    note: Note
    secret_key: str

    @classmethod
    def from_spendable(cls, sn: SpendableNote) -> "InputNoteData":
        return cls(note=sn.note, secret_key=sn.secret_key)

    def to_dict(self) -> Dict[str, Any]:
        return {"note": self.note.to_dict(), "secret_key": self.secret_key}


@dataclass(frozen=True)
class BlobData:
    blob: bytes  # c0 | c1 | n0 | n1, 32 bytes each
    contract_name: str
    identity: str
    tx_hash: str  # placeholder until the blob transaction is sequenced
    blob_count: int
    blob_index: int


@dataclass(frozen=True)
class ProverInput:
    input_notes: Tuple[InputNoteData, InputNoteData]
    output_notes: Tuple[Note, Note]
    blob_data: BlobData
    kind: UtxoKind = UtxoKind.SEND


def pad_string(value: str, target_len: int) -> str:
    if len(value) > target_len:
        raise FieldOverflow(value, target_len)
    return value.ljust(target_len, "\0")


def compute_messages(kind: UtxoKind) -> List[str]:
    if kind == UtxoKind.SEND:
        return ["0" * 63 + "1"] + [ZERO_HEX] * (MESSAGE_COUNT - 1)
    raise UnsupportedKind(kind)


def _two(items: Sequence[Any], what: str) -> None:
    if len(items) != 2:
        raise ProofAssemblyError(f"Transfer needs exactly 2 {what}, got {len(items)}")


def build_blob_data(
    input_notes: Sequence[InputNoteData],
    contract_name: str,
    hasher: FieldHasher,
    blob_index: int = 1,
    blob_count: int = 2,
) -> BlobData:
    """
    128-byte blob: both input commitments, then both nullifiers.

    The settlement service rebuilds the same bytes from the proof's public
    inputs, so the order is fixed.
    """
    _two(input_notes, "input notes")
    parts = [make_commitment(n.note, hasher) for n in input_notes]
    parts += [make_nullifier(n.note.psi, n.secret_key, hasher) for n in input_notes]
    blob = b"".join(hex_to_bytes(p) for p in parts)
    if len(blob) != BLOB_LENGTH_BYTES:
        raise ProofAssemblyError(f"Blob must be {BLOB_LENGTH_BYTES} bytes, got {len(blob)}")

    return BlobData(
        blob=blob,
        contract_name=contract_name,
        identity=f"transfer@{contract_name}",
        tx_hash=ZERO_HEX,
        blob_count=blob_count,
        blob_index=blob_index,
    )


def _note_struct(note: Note) -> Dict[str, str]:
    # the circuit's note has no separate contract field; kind carries it
    return {
        "kind": to_field_hex(note.kind),
        "value": to_field_hex(note.value),
        "address": to_field_hex(note.address),
        "psi": to_field_hex(note.psi),
    }


def _input_note_struct(data: InputNoteData) -> Dict[str, Any]:
    return {"note": _note_struct(data.note), "secret_key": to_field_hex(data.secret_key)}


def build_input_map(inp: ProverInput, hasher: FieldHasher) -> Dict[str, Any]:
    _two(inp.input_notes, "input notes")
    _two(inp.output_notes, "output notes")
    bd = inp.blob_data
    if len(bd.blob) != BLOB_LENGTH_BYTES:
        raise ProofAssemblyError(f"Blob must be {BLOB_LENGTH_BYTES} bytes, got {len(bd.blob)}")

    messages = compute_messages(inp.kind)
    commitments = note_commitments(
        [inp.input_notes[0].note, inp.input_notes[1].note, *inp.output_notes], hasher
    )

    return {
        # ---------- circuit metadata ----------
        "version": 1,
        "initial_state_len": STATE_LEN,
        "initial_state": [0] * STATE_LEN,
        "next_state_len": STATE_LEN,
        "next_state": [0] * STATE_LEN,
        # ---------- identity / tx ----------
        "identity_len": len(bd.identity),
        "identity": pad_string(bd.identity, IDENTITY_MAX_LEN),
        "tx_hash": pad_string(bd.tx_hash, TX_HASH_LEN),
        "index": bd.blob_index,
        "blob_number": 1,
        "blob_index": bd.blob_index,
        # ---------- blob ----------
        "blob_contract_name_len": len(bd.contract_name),
        "blob_contract_name": pad_string(bd.contract_name, CONTRACT_NAME_MAX_LEN),
        "blob_capacity": BLOB_LENGTH_BYTES,
        "blob_len": BLOB_LENGTH_BYTES,
        "blob": list(bd.blob),
        "tx_blob_count": bd.blob_count,
        "success": True,
        # ---------- notes ----------
        "input_notes": [_input_note_struct(n) for n in inp.input_notes],
        "output_notes": [_note_struct(n) for n in inp.output_notes],
        "pmessage4": to_field_hex(messages[4]),
        "commitments": [to_field_hex(c) for c in commitments],
        "messages": [to_field_hex(m) for m in messages],
    }


__all__ = [
    "BLOB_LENGTH_BYTES",
    "UtxoKind",
    "InputNoteData",
    "BlobData",
    "ProverInput",
    "pad_string",
    "compute_messages",
    "build_blob_data",
    "build_input_map",
]
