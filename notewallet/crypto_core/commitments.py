# crypto_core/commitments.py
# Note commitments, nullifiers and recipient tags.
#
# The hash input layout is a wire contract with the circuit:
#   commitment = H([0x2, kind, value, address, psi, 0, 0])
#   nullifier  = H([psi, secret_key])
# Changing the tag, the order or the slot count yields proofs the backend rejects.

from __future__ import annotations

import hashlib
from typing import List, Sequence

from notewallet.crypto_core.fields import (
    ZERO_HEX,
    FieldHasher,
    is_zero,
    parse_field,
    strip_hex,
    to_hex64,
)
from notewallet.database.models import Note
from notewallet.errors import ValidationError

COMMITMENT_FORMAT_TAG = 2
COMMITMENT_ARITY = 7


def commitment_inputs(note: Note) -> List[int]:
    return [
        COMMITMENT_FORMAT_TAG,
        parse_field(note.kind),
        parse_field(note.value),
        parse_field(note.address),
        parse_field(note.psi),
        0,
        0,
    ]


def make_commitment(note: Note, hasher: FieldHasher) -> str:
    # Empty slots are committed as zero by the circuit, not hashed.
    if is_zero(note.kind) or is_zero(note.value):
        return ZERO_HEX
    return to_hex64(hasher.hash(commitment_inputs(note)))


def make_nullifier(psi: str, secret_key: str, hasher: FieldHasher) -> str:
    return to_hex64(hasher.hash([parse_field(psi), parse_field(secret_key)]))


def note_commitments(notes: Sequence[Note], hasher: FieldHasher) -> List[str]:
    return [make_commitment(n, hasher) for n in notes]


def recipient_tag_hex(public_key_hex: str) -> str:
    """One-way relay lookup key; the relay cannot map it back without the public key."""
    normalized = strip_hex(public_key_hex)
    if len(normalized) != 64:
        raise ValidationError("Public key must be a 64-character hex string (32 bytes)")
    return hashlib.sha256((normalized + ":recipient_tag").encode("utf-8")).hexdigest()


__all__ = [
    "COMMITMENT_FORMAT_TAG",
    "COMMITMENT_ARITY",
    "commitment_inputs",
    "make_commitment",
    "make_nullifier",
    "note_commitments",
    "recipient_tag_hex",
]
