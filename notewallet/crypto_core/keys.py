# crypto_core/keys.py
# Deterministic key derivation from a user label.
#
# WARNING: keys are a pure function of the label (no entropy, no forward
# secrecy). Anyone who guesses the label can spend the notes.

from __future__ import annotations

import hashlib
import unicodedata
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric import ec

from notewallet.api.logging_config import get_logger
from notewallet.crypto_core.fields import BN254_R, strip_hex, to_hex64
from notewallet.errors import EmptyLabel, ValidationError

logger = get_logger("crypto_core.keys")

CURVE = ec.SECP256K1()
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_warned = False


@dataclass(frozen=True)
class DerivedKeyPair:
    private_key: str  # 64 hex, below BN254_R
    public_key: str   # 64 hex, secp256k1 x-coordinate

    @property
    def address(self) -> str:
        """Note owner field for this key (what the circuit checks against the secret key)."""
        return address_from_public_key(self.public_key)


def normalize_label(label: str) -> str:
    return unicodedata.normalize("NFKC", label.strip().casefold())


def _public_x(k: int) -> int:
    sk = ec.derive_private_key(k, CURVE)
    return sk.public_key().public_numbers().x


def derive(label: str) -> DerivedKeyPair:
    """
    privateKey = SHA-256(normalized label) reduced into the BN254 scalar field,
    publicKey  = x(privateKey * G) on secp256k1.
    """
    global _warned
    normalized = normalize_label(label)
    if not normalized:
        raise EmptyLabel()

    k = int.from_bytes(hashlib.sha256(normalized.encode("utf-8")).digest(), "big") % BN254_R
    if k == 0:
        # SHA-256 hitting a multiple of r is not a realistic event
        raise ValidationError("Label hashes to the zero scalar")

    if not _warned:
        logger.warning("Keys derived from a label are deterministic and have no forward secrecy")
        _warned = True

    return DerivedKeyPair(private_key=to_hex64(k), public_key=to_hex64(_public_x(k)))


def _parse_key_hex(value: str, what: str) -> int:
    s = strip_hex(value)
    if len(s) != 64:
        raise ValidationError(f"{what} must be a 64-character hex string (32 bytes)")
    try:
        return int(s, 16)
    except ValueError:
        raise ValidationError(f"{what} is not valid hex")


def address_from_public_key(public_key: str) -> str:
    """x-coordinate reduced into the circuit field."""
    return to_hex64(_parse_key_hex(public_key, "Public key") % BN254_R)


def public_key_from_private(private_key: str) -> str:
    k = _parse_key_hex(private_key, "Private key")
    if not 0 < k < SECP256K1_N:
        raise ValidationError("Private key is not a valid secp256k1 scalar")
    return to_hex64(_public_x(k))


def verify_key_pair(private_key: str, public_key: str) -> bool:
    try:
        return public_key_from_private(private_key) == strip_hex(public_key)
    except ValidationError:
        return False


__all__ = [
    "DerivedKeyPair",
    "normalize_label",
    "derive",
    "address_from_public_key",
    "public_key_from_private",
    "verify_key_pair",
]
