from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, conint, constr, model_validator

Hex64 = constr(pattern=r"^[0-9a-f]{64}$")
Tag = constr(pattern=r"^[0-9a-fA-F]{64}$")


class _Wire(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_Wire):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


# ===== Notes =====
class NoteWire(_Wire):
    kind: Hex64 = Field(..., description="Token identifier (equals contract for transfers).")
    contract: Hex64 = Field(..., description="Contract field element (hex).")
    address: Hex64 = Field(..., description="Owner address field element (hex).")
    psi: Hex64 = Field(..., description="Per-note randomness (hex).")
    value: Hex64 = Field(..., description="Amount, 32-byte big-endian hex.")


class InputNoteWire(_Wire):
    note: NoteWire
    secret_key: Hex64 = Field(..., description="Spending key for this note (hex).")


# ===== Settlement =====
class FaucetReq(_Wire):
    pubkey_hex: Hex64 = Field(..., description="Recipient public key (x-coordinate, hex).")
    amount: Optional[conint(gt=0)] = Field(None, description="Requested amount; server default when omitted.")


class FaucetRes(_Wire):
    model_config = ConfigDict(extra="allow")

    tx_hash: Optional[str] = Field(None, description="Settlement transaction hash.")
    note: Optional[Dict[str, Any]] = Field(None, description="Minted note, loosely shaped.")
    contract_name: Optional[str] = None
    amount: Optional[int] = None

    @model_validator(mode="after")
    def _needs_hash_or_note(self):
        if not self.tx_hash and self.note is None:
            raise ValueError("Unexpected faucet response")
        return self


class TransferReq(_Wire):
    """Legacy server-proved transfer: secret keys are sent to the server."""
    recipient_pubkey: Hex64
    amount: conint(gt=0)
    input_notes: List[InputNoteWire] = Field(..., min_length=2, max_length=2)
    output_notes: List[NoteWire] = Field(..., min_length=2, max_length=2)


class ProvedTransferReq(_Wire):
    proof: str = Field(..., min_length=1, description="Base64 proof bytes (no public inputs).")
    public_inputs: List[str] = Field(..., description="Public inputs as hex without 0x.")
    blob_data: List[conint(ge=0, le=255)] = Field(..., min_length=128, max_length=128)
    output_notes: List[NoteWire] = Field(..., min_length=2, max_length=2)


class TransferRes(_Wire):
    tx_hash: str = Field(..., min_length=1, description="Settlement transaction hash.")
    change_note: Optional[Dict[str, Any]] = Field(None, description="Change note echoed by the server.")


# ===== Relay =====
class NoteUploadReq(_Wire):
    recipient_tag: Tag = Field(..., description="sha256(pubkey + ':recipient_tag'), hex.")
    encrypted_payload: str = Field(..., min_length=1, description="base64(nonce || ciphertext).")
    ephemeral_pubkey: Tag = Field(..., description="Sender's ephemeral x-coordinate, hex.")
    sender_tag: Optional[Tag] = Field(None, description="Optional tag of the sender.")


class NoteUploadRes(_Wire):
    id: str
    stored_at: int = Field(..., description="Unix seconds.")


class EncryptedNoteRecord(_Wire):
    id: str
    encrypted_payload: str
    ephemeral_pubkey: str
    sender_tag: Optional[str] = None
    stored_at: int = Field(..., description="Unix seconds.")


class NoteListRes(_Wire):
    notes: List[EncryptedNoteRecord] = Field(default_factory=list)
    has_more: bool = False


# ===== Archive =====
class StoredNoteRecord(BaseModel):
    """Archive/storage entry. `note` stays loose: faucet and inbox notes differ in shape."""
    model_config = ConfigDict(extra="ignore")

    note: Dict[str, Any]
    txHash: StrictStr
    storedAt: StrictInt
    player: StrictStr


class NotesArchivePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    player: StrictStr
    exportedAt: Optional[StrictInt] = None
    notes: List[StoredNoteRecord]


__all__ = [
    "Ok",
    "NoteWire",
    "InputNoteWire",
    "FaucetReq",
    "FaucetRes",
    "TransferReq",
    "ProvedTransferReq",
    "TransferRes",
    "NoteUploadReq",
    "NoteUploadRes",
    "EncryptedNoteRecord",
    "NoteListRes",
    "StoredNoteRecord",
    "NotesArchivePayload",
]
