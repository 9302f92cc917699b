"""
Local data model: notes, stored-note ownership records and pending transfers.

JSON field names (camelCase for stored records, circuit names for notes) are
the persisted/exported format and must stay stable.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from notewallet.crypto_core.fields import ZERO_HEX, is_zero, strip_hex, to_hex64

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

OPTIMISTIC = "optimistic"


def parse_note_value(raw: Any) -> int:
    """
    Notes from the faucet carry hex strings, older payloads decimal strings or
    ints. Valid hex wins, same as the settlement server's encoding.
    """
    if isinstance(raw, bool) or raw is None:
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    if isinstance(raw, str):
        s = strip_hex(raw)
        if not s:
            return 0
        if _HEX_RE.match(s):
            return int(s, 16)
        try:
            return int(s, 10)
        except ValueError:
            return 0
    return 0


def _field(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip():
        return strip_hex(raw).rjust(64, "0")
    return ZERO_HEX


@dataclass(frozen=True)
class Note:
    kind: str = ZERO_HEX
    contract: str = ZERO_HEX
    address: str = ZERO_HEX
    psi: str = ZERO_HEX
    value: str = ZERO_HEX

    @classmethod
    def padding(cls) -> "Note":
        return cls()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Note":
        d = d or {}
        contract = d.get("contract")
        kind = d.get("kind") or contract
        return cls(
            kind=_field(kind),
            contract=_field(contract),
            address=_field(d.get("address")),
            psi=_field(d.get("psi")),
            value=to_hex64(parse_note_value(d.get("value"))),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind,
            "contract": self.contract,
            "address": self.address,
            "psi": self.psi,
            "value": self.value,
        }

    @property
    def amount(self) -> int:
        return int(self.value, 16)

    @property
    def is_padding(self) -> bool:
        return is_zero(self.kind) or is_zero(self.value)


@dataclass
class StoredNote:
    note: Note
    tx_hash: str
    stored_at: int  # ms since epoch
    player: str
    status: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StoredNote":
        raw_note = d.get("note") or {}
        status = raw_note.get("status") if isinstance(raw_note, dict) else None
        return cls(
            note=Note.from_dict(raw_note if isinstance(raw_note, dict) else {}),
            tx_hash=str(d.get("txHash", "")),
            stored_at=int(d.get("storedAt", 0)),
            player=str(d.get("player", "")),
            status=status if isinstance(status, str) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        note = self.note.to_dict()
        if self.status:
            note["status"] = self.status
        return {
            "note": note,
            "txHash": self.tx_hash,
            "storedAt": self.stored_at,
            "player": self.player,
        }

    @property
    def is_optimistic(self) -> bool:
        return self.status == OPTIMISTIC


@dataclass
class PendingTransfer:
    spent_note_hashes: List[str]
    timestamp: int  # ms since epoch

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["PendingTransfer"]:
        ts = d.get("timestamp")
        hashes = d.get("spentNoteHashes")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not isinstance(hashes, list):
            return None
        return cls(spent_note_hashes=[str(h) for h in hashes], timestamp=int(ts))

    def to_dict(self) -> Dict[str, Any]:
        return {"spentNoteHashes": list(self.spent_note_hashes), "timestamp": self.timestamp}


@dataclass
class SpendableNote:
    note: Note
    secret_key: str
    value: int
    tx_hash: str

    @classmethod
    def padding(cls) -> "SpendableNote":
        return cls(note=Note.padding(), secret_key=ZERO_HEX, value=0, tx_hash="")


@dataclass
class NoteSelection:
    selected_notes: List[SpendableNote] = field(default_factory=list)
    change_amount: int = 0
    total_input: int = 0


__all__ = [
    "OPTIMISTIC",
    "parse_note_value",
    "Note",
    "StoredNote",
    "PendingTransfer",
    "SpendableNote",
    "NoteSelection",
]
