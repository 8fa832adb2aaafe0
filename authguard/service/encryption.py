"""Symmetric encryption for short sensitive strings.

Ciphertexts are AES-GCM with a random 12-byte nonce prepended, URL-safe
base64 encoded. GCM authenticates the payload, so any tampering is detected on
decrypt rather than yielding garbage plaintext.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authguard.service.errors import EncryptionError

NONCE_BYTES = 12
_VALID_KEY_SIZES = (16, 24, 32)


def _key_bytes(key: str | bytes) -> bytes:
    raw = key.encode("utf-8") if isinstance(key, str) else key
    if len(raw) not in _VALID_KEY_SIZES:
        raise EncryptionError("encryption key must be 16, 24 or 32 bytes")
    return raw


def generate_key() -> str:
    """A fresh 256-bit key, URL-safe base64 encoded (use ``load_key`` to decode)."""
    return base64.urlsafe_b64encode(os.urandom(32)).decode("ascii")


def load_key(encoded: str) -> bytes:
    try:
        return _key_bytes(base64.urlsafe_b64decode(encoded.encode("ascii")))
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError("encryption key is not valid base64") from exc


def encrypt(plaintext: str, key: str | bytes) -> str:
    aead = AESGCM(_key_bytes(key))
    nonce = os.urandom(NONCE_BYTES)
    sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")


def decrypt(ciphertext: str, key: str | bytes) -> str:
    aead = AESGCM(_key_bytes(key))
    try:
        raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError("ciphertext is not valid base64") from exc
    # nonce plus the 16-byte GCM tag is the minimum
    if len(raw) < NONCE_BYTES + 16:
        raise EncryptionError("ciphertext too short")
    try:
        plaintext = aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
    except InvalidTag as exc:
        raise EncryptionError("ciphertext failed authentication") from exc
    return plaintext.decode("utf-8")


class Encryptor:
    """Binds a key so callers can seal and open values without passing it around."""

    def __init__(self, key: str | bytes) -> None:
        self._key = _key_bytes(key)

    @classmethod
    def from_encoded_key(cls, encoded: str) -> "Encryptor":
        return cls(load_key(encoded))

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self._key)

    def decrypt(self, ciphertext: str) -> str:
        return decrypt(ciphertext, self._key)
