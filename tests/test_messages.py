"""
Note encryption tests
"""

import base64

import pytest

from notewallet.crypto_core import messages
from notewallet.crypto_core.commitments import recipient_tag_hex
from notewallet.errors import DecryptionFailed, ValidationError


NOTE_DATA = {"note": {"kind": "aa", "value": "05"}, "txHash": "abc", "amount": 5}


class TestEncryptDecrypt:
    """Tests for the ECDH + SecretBox envelope."""

    def test_roundtrip(self, alice):
        enc = messages.encrypt_note(alice.public_key, NOTE_DATA)
        assert len(enc.ephemeral_pubkey) == 64
        out = messages.decrypt_note(alice.private_key, enc.encrypted_payload, enc.ephemeral_pubkey)
        assert out == NOTE_DATA

    def test_fresh_ephemeral_each_time(self, alice):
        a = messages.encrypt_note(alice.public_key, NOTE_DATA)
        b = messages.encrypt_note(alice.public_key, NOTE_DATA)
        assert a.ephemeral_pubkey != b.ephemeral_pubkey
        assert a.encrypted_payload != b.encrypted_payload

    def test_wrong_key(self, alice, bob):
        enc = messages.encrypt_note(alice.public_key, NOTE_DATA)
        with pytest.raises(DecryptionFailed):
            messages.decrypt_note(bob.private_key, enc.encrypted_payload, enc.ephemeral_pubkey)

    def test_tampered_ciphertext(self, alice):
        enc = messages.encrypt_note(alice.public_key, NOTE_DATA)
        blob = bytearray(base64.b64decode(enc.encrypted_payload))
        blob[-1] ^= 0x01
        with pytest.raises(DecryptionFailed):
            messages.decrypt_note(alice.private_key, base64.b64encode(bytes(blob)).decode(), enc.ephemeral_pubkey)

    @pytest.mark.parametrize("payload", ["not base64!!", "", base64.b64encode(b"short").decode()])
    def test_garbage_payload(self, alice, payload):
        enc = messages.encrypt_note(alice.public_key, NOTE_DATA)
        with pytest.raises(DecryptionFailed):
            messages.decrypt_note(alice.private_key, payload, enc.ephemeral_pubkey)

    def test_bad_ephemeral_key(self, alice):
        enc = messages.encrypt_note(alice.public_key, NOTE_DATA)
        with pytest.raises(DecryptionFailed):
            messages.decrypt_note(alice.private_key, enc.encrypted_payload, "abcd")

    def test_encrypt_to_bad_key(self):
        with pytest.raises(ValidationError):
            messages.encrypt_note("12", NOTE_DATA)


class TestPublicKeyReconstruction:
    """x-only keys map back onto the curve."""

    def test_roundtrip_x(self, alice):
        pk = messages.reconstruct_public_key(alice.public_key)
        assert format(pk.public_numbers().x, "064x") == alice.public_key

    def test_shared_key_symmetric(self, alice, bob):
        # even-y reconstruction gives the same x-coordinate secret
        a_sk = messages._private_key(alice.private_key)
        b_sk = messages._private_key(bob.private_key)
        k1 = messages.shared_key(a_sk, messages.reconstruct_public_key(bob.public_key))
        k2 = messages.shared_key(b_sk, messages.reconstruct_public_key(alice.public_key))
        assert k1 == k2
        assert len(k1) == 32


class TestRecipientTag:
    def test_alias(self, alice):
        tag = messages.derive_recipient_tag(alice.public_key)
        assert tag == recipient_tag_hex(alice.public_key)
        assert len(tag) == 64
