"""
Envelope Cipher -- per-value authenticated encryption.

Every variable value is sealed on its own:

    key      = PBKDF2-HMAC-SHA256(pepper, scope salt, 100 000 rounds, 32 bytes)
    payload  = AES-256-GCM(key, fresh 12-byte nonce, plaintext)
    envelope = base64(JSON {"v": "v1", "iv": hex, "ct": hex, "tag": hex})

The envelope names its own version, so a format change can never be
silently misread as the old one. The round count is part of "v1": values
sealed under a key from any other count (10 000 rounds, for instance) do
not open here and fail authentication rather than decrypting to garbage.

The pepper is handed to the cipher by whoever builds it and never stored
next to ciphertext. Lose the pepper and every value encrypted with it is
gone for good.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

from pydantic import BaseModel

from ..errors import ConfigError, DecryptionError

logger = logging.getLogger("envkit.sync.envelope")

ENVELOPE_VERSION = "v1"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class Envelope(BaseModel):
    """The self-describing encrypted payload."""

    v: str
    iv: str
    ct: str
    tag: str

    def encode(self) -> str:
        """Serialize to the stable base64(JSON) wire form."""
        raw = json.dumps(self.model_dump(), separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, encoded: str) -> "Envelope":
        """Parse the wire form, rejecting unknown versions first.

        Args:
            encoded: base64(JSON) envelope string.

        Returns:
            The parsed Envelope.

        Raises:
            DecryptionError: On any malformed input or unsupported version.
        """
        try:
            raw = base64.b64decode(encoded, validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise DecryptionError(f"Malformed envelope: {exc}") from exc

        if not isinstance(payload, dict):
            raise DecryptionError("Malformed envelope: not an object")

        version = payload.get("v")
        if version != ENVELOPE_VERSION:
            raise DecryptionError(f"Unsupported envelope version: {version!r}")

        fields = {}
        for name in ("iv", "ct", "tag"):
            value = payload.get(name)
            if not isinstance(value, str):
                raise DecryptionError(f"Malformed envelope: missing '{name}'")
            fields[name] = value
        return cls(v=version, **fields)

    def parts(self) -> tuple[bytes, bytes, bytes]:
        """Return (nonce, ciphertext, tag) as raw bytes.

        Raises:
            DecryptionError: If a field is not valid hex or has the wrong size.
        """
        try:
            nonce = bytes.fromhex(self.iv)
            ciphertext = bytes.fromhex(self.ct)
            tag = bytes.fromhex(self.tag)
        except ValueError as exc:
            raise DecryptionError(f"Malformed envelope: {exc}") from exc
        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Malformed envelope: bad nonce or tag length")
        return nonce, ciphertext, tag


def _derive_key(pepper: bytes, salt: bytes) -> bytes:
    """Derive the 256-bit scope key with PBKDF2-HMAC-SHA256.

    Args:
        pepper: Process-wide secret.
        salt: Scope salt bytes.

    Returns:
        32-byte key.
    """
    from cryptography.hazmat.primitives.hashes import SHA256
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(pepper)


class EnvelopeCipher:
    """Encrypts and decrypts single values under a scope salt.

    Derived keys are cached per salt for the lifetime of the instance,
    which keeps the slow KDF to one run per scope per invocation.

    Args:
        pepper: The process-wide secret. Must be non-empty.
        max_workers: Thread pool size for batch operations.
    """

    def __init__(self, pepper: str, max_workers: int = 4) -> None:
        if not pepper:
            raise ConfigError("Encryption pepper is not configured")
        self._pepper = pepper.encode("utf-8")
        self._max_workers = max(1, max_workers)
        self._keys: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _key(self, salt: str) -> bytes:
        if not salt:
            raise DecryptionError("Empty scope salt")
        with self._lock:
            key = self._keys.get(salt)
            if key is None:
                key = _derive_key(self._pepper, salt.encode("utf-8"))
                self._keys[salt] = key
            return key

    def encrypt(self, plaintext: str, salt: str) -> str:
        """Seal a plaintext value into an envelope.

        Args:
            plaintext: Value to encrypt.
            salt: Scope salt.

        Returns:
            Encoded envelope string.
        """
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(self._key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        envelope = Envelope(
            v=ENVELOPE_VERSION,
            iv=nonce.hex(),
            ct=sealed[:-TAG_LENGTH].hex(),
            tag=sealed[-TAG_LENGTH:].hex(),
        )
        return envelope.encode()

    def decrypt(self, encoded: str, salt: str) -> str:
        """Open an envelope, verifying its authentication tag.

        An empty string decrypts to an empty string (a cleared variable).

        Args:
            encoded: Envelope string produced by :meth:`encrypt`.
            salt: Scope salt.

        Returns:
            The plaintext value.

        Raises:
            DecryptionError: On tamper, wrong salt, or malformed input.
        """
        from cryptography.exceptions import InvalidTag
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        if encoded == "":
            return ""

        envelope = Envelope.decode(encoded)
        nonce, ciphertext, tag = envelope.parts()
        try:
            plain = AESGCM(self._key(salt)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication failed: tampered value or wrong key") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc

    def encrypt_many(self, plaintexts: Sequence[str], salt: str) -> list[str]:
        """Encrypt a batch in parallel, preserving order."""
        self._key(salt)
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            return list(pool.map(lambda p: self.encrypt(p, salt), plaintexts))

    def decrypt_many(
        self,
        named: Sequence[tuple[str, str]],
        salt: str,
        stage: Optional[str] = None,
    ) -> dict[str, str]:
        """Decrypt ``(name, envelope)`` pairs in parallel.

        Args:
            named: Pairs of variable name and envelope.
            salt: Scope salt.
            stage: Stage, only used to enrich errors.

        Returns:
            Name to plaintext.

        Raises:
            DecryptionError: For the first value that fails, naming it.
        """
        if not named:
            return {}
        self._key(salt)

        def _open(item: tuple[str, str]) -> tuple[str, str]:
            name, encoded = item
            try:
                return name, self.decrypt(encoded, salt)
            except DecryptionError as exc:
                raise DecryptionError(exc.message, key=name, stage=stage) from exc

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            return dict(pool.map(_open, named))
