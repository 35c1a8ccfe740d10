"""Tests for the envelope cipher -- AES-256-GCM under a PBKDF2 scope key."""

from __future__ import annotations

import base64
import json

import pytest

from conftest import PEPPER
from envkit.errors import ConfigError, DecryptionError
from envkit.sync.envelope import (
    ENVELOPE_VERSION,
    Envelope,
    EnvelopeCipher,
    KDF_ITERATIONS,
    NONCE_LENGTH,
    TAG_LENGTH,
    _derive_key,
)
from envkit.sync.keys import generate_salt


@pytest.fixture
def salt() -> str:
    return generate_salt()


def _rewrite(encoded: str, **changes) -> str:
    payload = json.loads(base64.b64decode(encoded))
    payload.update(changes)
    return base64.b64encode(json.dumps(payload).encode()).decode()


class TestKeyDerivation:
    def test_deterministic(self):
        assert _derive_key(b"pepper", b"salt") == _derive_key(b"pepper", b"salt")

    def test_salt_matters(self):
        assert _derive_key(b"pepper", b"salt-a") != _derive_key(b"pepper", b"salt-b")

    def test_length(self):
        assert len(_derive_key(b"pepper", b"salt")) == 32


class TestEnvelopeFormat:
    def test_wire_form(self, cipher, salt):
        encoded = cipher.encrypt("hello", salt)
        payload = json.loads(base64.b64decode(encoded))
        assert payload["v"] == ENVELOPE_VERSION
        assert len(bytes.fromhex(payload["iv"])) == NONCE_LENGTH
        assert len(bytes.fromhex(payload["tag"])) == TAG_LENGTH
        assert len(bytes.fromhex(payload["ct"])) == len("hello")

    def test_fresh_nonce_per_encryption(self, cipher, salt):
        first = Envelope.decode(cipher.encrypt("same", salt))
        second = Envelope.decode(cipher.encrypt("same", salt))
        assert first.iv != second.iv
        assert first.ct != second.ct

    def test_unknown_version_rejected(self, cipher, salt):
        encoded = _rewrite(cipher.encrypt("x", salt), v="v2")
        with pytest.raises(DecryptionError, match="Unsupported envelope version"):
            cipher.decrypt(encoded, salt)

    def test_not_base64(self, cipher, salt):
        with pytest.raises(DecryptionError, match="Malformed"):
            cipher.decrypt("not base64 at all!", salt)

    def test_missing_field(self, cipher, salt):
        encoded = base64.b64encode(json.dumps({"v": "v1", "iv": "00"}).encode()).decode()
        with pytest.raises(DecryptionError, match="missing"):
            cipher.decrypt(encoded, salt)

    def test_bad_nonce_length(self, cipher, salt):
        encoded = _rewrite(cipher.encrypt("x", salt), iv="0011")
        with pytest.raises(DecryptionError, match="length"):
            cipher.decrypt(encoded, salt)


class TestEnvelopeCipher:
    def test_roundtrip(self, cipher, salt):
        assert cipher.decrypt(cipher.encrypt("s3cret=value", salt), salt) == "s3cret=value"

    def test_unicode_and_newlines(self, cipher, salt):
        value = "línea uno\nzweite Zeile ✓"
        assert cipher.decrypt(cipher.encrypt(value, salt), salt) == value

    def test_empty_envelope_is_empty_value(self, cipher, salt):
        assert cipher.decrypt("", salt) == ""

    def test_empty_plaintext_roundtrip(self, cipher, salt):
        assert cipher.decrypt(cipher.encrypt("", salt), salt) == ""

    def test_wrong_salt_fails(self, cipher, salt):
        encoded = cipher.encrypt("value", salt)
        with pytest.raises(DecryptionError, match="Authentication failed"):
            cipher.decrypt(encoded, generate_salt())

    def test_wrong_pepper_fails(self, cipher, salt):
        encoded = cipher.encrypt("value", salt)
        with pytest.raises(DecryptionError):
            EnvelopeCipher("another-pepper").decrypt(encoded, salt)

    def test_tampered_ciphertext_fails(self, cipher, salt):
        encoded = cipher.encrypt("value", salt)
        ct = Envelope.decode(encoded).ct
        flipped = ("1" if ct[0] == "0" else "0") + ct[1:]
        with pytest.raises(DecryptionError):
            cipher.decrypt(_rewrite(encoded, ct=flipped), salt)

    def test_other_round_count_does_not_open(self, cipher, salt):
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        from cryptography.hazmat.primitives.hashes import SHA256
        from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

        key = PBKDF2HMAC(
            algorithm=SHA256(), length=32, salt=salt.encode(), iterations=10_000
        ).derive(PEPPER.encode())
        nonce = bytes(NONCE_LENGTH)
        sealed = AESGCM(key).encrypt(nonce, b"legacy", None)
        encoded = Envelope(
            v=ENVELOPE_VERSION,
            iv=nonce.hex(),
            ct=sealed[:-TAG_LENGTH].hex(),
            tag=sealed[-TAG_LENGTH:].hex(),
        ).encode()
        assert KDF_ITERATIONS == 100_000
        with pytest.raises(DecryptionError):
            cipher.decrypt(encoded, salt)

    def test_empty_pepper_rejected(self):
        with pytest.raises(ConfigError):
            EnvelopeCipher("")

    def test_encrypt_many_preserves_order(self, cipher, salt):
        values = [f"value-{i}" for i in range(20)]
        sealed = cipher.encrypt_many(values, salt)
        assert [cipher.decrypt(e, salt) for e in sealed] == values

    def test_decrypt_many(self, cipher, salt):
        pairs = [("A", cipher.encrypt("1", salt)), ("B", cipher.encrypt("2", salt))]
        assert cipher.decrypt_many(pairs, salt) == {"A": "1", "B": "2"}

    def test_decrypt_many_empty(self, cipher, salt):
        assert cipher.decrypt_many([], salt) == {}

    def test_decrypt_many_names_failing_key(self, cipher, salt):
        pairs = [("GOOD", cipher.encrypt("1", salt)), ("BAD", "garbage")]
        with pytest.raises(DecryptionError) as excinfo:
            cipher.decrypt_many(pairs, salt, stage="production")
        assert excinfo.value.key == "BAD"
        assert excinfo.value.stage == "production"
        assert "key=BAD" in str(excinfo.value)
