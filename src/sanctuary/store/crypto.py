"""Content encryption at the storage boundary."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sanctuary.errors import DecryptionError, EncryptionKeyError

CIPHER_PREFIX = "v1:"
NONCE_BYTES = 12


class ContentCipher:
    """AES-256-GCM cipher producing ``v1:<base64(nonce|ciphertext)>`` tokens."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise EncryptionKeyError("content key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded: str | None) -> ContentCipher:
        if not encoded:
            raise EncryptionKeyError("SANCTUARY_ENCRYPTION_KEY is not set")
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionKeyError("SANCTUARY_ENCRYPTION_KEY is not valid base64") from exc
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, text: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, text.encode("utf-8"), None)
        return CIPHER_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token.startswith(CIPHER_PREFIX):
            raise DecryptionError("unknown content format")
        try:
            raw = base64.b64decode(token.removeprefix(CIPHER_PREFIX), validate=True)
            plain = self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise DecryptionError("content failed authentication") from exc
        return plain.decode("utf-8")
