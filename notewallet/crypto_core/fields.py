# crypto_core/fields.py
from __future__ import annotations

import re
from typing import Protocol, Sequence, Union

from notewallet.errors import MalformedField

# BN254 scalar field (the circuit's native field)
BN254_R = 21888242871839275222246405745257275088548364400416034343698204186575808495617

FIELD_BYTES = 32
FIELD_HEX_LEN = 64
ZERO_HEX = "0" * FIELD_HEX_LEN

_HEX_RE = re.compile(r"^[0-9a-f]*$")


class FieldHasher(Protocol):
    """Fixed-arity hash over field elements (Poseidon2 in the circuit)."""

    def hash(self, fields: Sequence[int]) -> int: ...


def strip_hex(s: str) -> str:
    s = s.strip().lower()
    return s[2:] if s.startswith("0x") else s


def parse_field(value: Union[str, int]) -> int:
    """
    Parse a 32-byte field element.

    Strings must be exactly 64 hex digits (optional 0x). Values >= BN254_R
    are rejected, never reduced.
    """
    if isinstance(value, bool):
        raise MalformedField(value, "expected hex string or int")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        s = strip_hex(value)
        if len(s) != FIELD_HEX_LEN:
            raise MalformedField(value, f"expected {FIELD_HEX_LEN} hex chars, got {len(s)}")
        if not _HEX_RE.match(s):
            raise MalformedField(value, "not hex")
        n = int(s, 16)
    else:
        raise MalformedField(value, "expected hex string or int")
    if n < 0 or n >= BN254_R:
        raise MalformedField(value, "not below the field modulus")
    return n


def to_hex64(n: int) -> str:
    """Encode a non-negative int as 32-byte big-endian hex."""
    if n < 0 or n >= 1 << 256:
        raise MalformedField(n, "does not fit in 32 bytes")
    return format(n, "064x")


def to_field_hex(value: Union[str, int]) -> str:
    """0x-prefixed rendering used in the circuit input map."""
    if isinstance(value, int):
        return "0x" + to_hex64(value)
    return "0x" + strip_hex(value)


def is_zero(value: str) -> bool:
    s = strip_hex(value)
    return not s or set(s) == {"0"}


def hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(strip_hex(value))


__all__ = [
    "BN254_R",
    "FIELD_BYTES",
    "FIELD_HEX_LEN",
    "ZERO_HEX",
    "FieldHasher",
    "strip_hex",
    "parse_field",
    "to_hex64",
    "to_field_hex",
    "is_zero",
    "hex_to_bytes",
]
