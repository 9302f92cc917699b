from __future__ import annotations

from typing import Iterable, Optional


class NoteWalletError(Exception):
    """Base class for every failure surfaced by the wallet core."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


# ===== Validation =====
class ValidationError(NoteWalletError):
    """Malformed label, key or amount. Raised before any side effect."""


class EmptyLabel(ValidationError):
    def __init__(self) -> None:
        super().__init__("Cannot derive key pair from empty name")


# ===== Selection / reservation =====
class InsufficientBalance(NoteWalletError):
    def __init__(self, available: int, required: int, reason: str = ""):
        msg = f"Insufficient balance. You have {available} but need {required}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.available = available
        self.required = required


class PendingConflict(NoteWalletError):
    """Selected notes are already reserved by an in-flight transfer."""

    retryable = True

    def __init__(self, hashes: Iterable[str]):
        self.hashes = sorted(set(hashes))
        super().__init__(
            "Notes already reserved by a pending transfer: " + ", ".join(h[:16] for h in self.hashes)
        )


# ===== Proof assembly =====
class ProofAssemblyError(NoteWalletError):
    """Inputs cannot be packed for the circuit. Nothing is submitted."""


class FieldOverflow(ProofAssemblyError):
    def __init__(self, value: str, max_len: int):
        super().__init__(f"String '{value}' exceeds maximum length {max_len}")
        self.max_len = max_len


class UnsupportedKind(ProofAssemblyError):
    def __init__(self, kind: object):
        super().__init__(f"Unsupported UTXO kind: {kind}")
        self.kind = kind


class MalformedField(ProofAssemblyError):
    def __init__(self, value: object, reason: str):
        super().__init__(f"Malformed field element {value!r}: {reason}")
        self.reason = reason


# ===== External collaborators =====
class ExternalBackendError(NoteWalletError):
    """Settlement/relay/prover failure. `retryable` separates transport from rejection."""

    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.status = status


# ===== Inbox =====
class DecryptionFailed(NoteWalletError):
    def __init__(self, reason: str = "invalid key or corrupted data"):
        super().__init__(f"Decryption failed - {reason}")


# ===== Archive =====
class ArchiveFormatError(NoteWalletError):
    pass


class ArchiveOwnerMismatch(ArchiveFormatError):
    def __init__(self, archive_owner: str, session_owner: str):
        super().__init__(
            f"Archive belongs to '{archive_owner}' but the current session is '{session_owner}'"
        )
        self.archive_owner = archive_owner
        self.session_owner = session_owner


__all__ = [
    "NoteWalletError",
    "ValidationError",
    "EmptyLabel",
    "InsufficientBalance",
    "PendingConflict",
    "ProofAssemblyError",
    "FieldOverflow",
    "UnsupportedKind",
    "MalformedField",
    "ExternalBackendError",
    "DecryptionFailed",
    "ArchiveFormatError",
    "ArchiveOwnerMismatch",
]
