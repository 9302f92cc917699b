# crypto_core/messages.py
# Note encryption for the relay inbox: ephemeral secp256k1 ECDH + SecretBox.
from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.asymmetric import ec
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from notewallet.crypto_core.commitments import recipient_tag_hex
from notewallet.crypto_core.fields import strip_hex
from notewallet.errors import DecryptionFailed, ValidationError

CURVE = ec.SECP256K1()


@dataclass(frozen=True)
class EncryptedNote:
    encrypted_payload: str  # base64(nonce24 || ciphertext)
    ephemeral_pubkey: str   # x-coordinate, 64 hex


def derive_recipient_tag(public_key_hex: str) -> str:
    return recipient_tag_hex(public_key_hex)


def _x_only_hex(value: str, what: str) -> str:
    s = strip_hex(value)
    if len(s) != 64:
        raise ValidationError(f"{what} must be a 64-character hex string")
    return s


def reconstruct_public_key(x_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Only the x-coordinate travels on the wire; try the even-y point first,
    then the odd one.
    """
    x = bytes.fromhex(_x_only_hex(x_hex, "Public key"))
    for prefix in (b"\x02", b"\x03"):
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, prefix + x)
        except ValueError:
            continue
    raise ValidationError("Public key is not an x-coordinate on secp256k1")


def _private_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    k = int(_x_only_hex(private_key_hex, "Private key"), 16)
    try:
        return ec.derive_private_key(k, CURVE)
    except ValueError as e:
        raise ValidationError("Private key is not a valid secp256k1 scalar") from e


def shared_key(my_sk: ec.EllipticCurvePrivateKey, peer_pk: ec.EllipticCurvePublicKey) -> bytes:
    # ECDH x-coordinate, hashed as hex text so both sides agree on the encoding
    shared_x = my_sk.exchange(ec.ECDH(), peer_pk)
    return hashlib.sha256(shared_x.hex().encode("ascii")).digest()


def secretbox_encrypt(key32: bytes, plaintext: bytes) -> bytes:
    nonce = nacl_random(SecretBox.NONCE_SIZE)
    return bytes(SecretBox(key32).encrypt(plaintext, nonce))  # nonce || ciphertext


def secretbox_decrypt(key32: bytes, blob: bytes) -> bytes:
    return SecretBox(key32).decrypt(blob)


def encrypt_note(recipient_pubkey_hex: str, note_data: Any) -> EncryptedNote:
    recipient = reconstruct_public_key(recipient_pubkey_hex)
    ephemeral = ec.generate_private_key(CURVE)
    eph_x = format(ephemeral.public_key().public_numbers().x, "064x")

    plaintext = json.dumps(note_data, separators=(",", ":")).encode("utf-8")
    blob = secretbox_encrypt(shared_key(ephemeral, recipient), plaintext)
    return EncryptedNote(
        encrypted_payload=base64.b64encode(blob).decode("ascii"),
        ephemeral_pubkey=eph_x,
    )


def decrypt_note(private_key_hex: str, encrypted_payload: str, ephemeral_pubkey_hex: str) -> Any:
    try:
        sk = _private_key(private_key_hex)
        eph = reconstruct_public_key(ephemeral_pubkey_hex)
        blob = base64.b64decode(encrypted_payload, validate=True)
        plaintext = secretbox_decrypt(shared_key(sk, eph), blob)
        return json.loads(plaintext.decode("utf-8"))
    except ValidationError as e:
        raise DecryptionFailed(e.message) from e
    except (CryptoError, binascii.Error, ValueError, TypeError) as e:
        # JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise DecryptionFailed() from e


__all__ = [
    "EncryptedNote",
    "derive_recipient_tag",
    "reconstruct_public_key",
    "shared_key",
    "encrypt_note",
    "decrypt_note",
]
