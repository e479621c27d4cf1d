from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chatjobs.logging import get_logger

logger = get_logger(__name__)

_IV_BYTES = 12
_TAG_BYTES = 16


class DecryptionError(Exception):
    """Ciphertext is malformed or was not produced with the configured key."""


class TokenCipher:
    """AES-256-GCM helper for stored API keys and bridged auth tokens.

    Wire format is ``base64(iv).base64(tag).base64(ciphertext)`` so values written
    by the web app's server-side crypto helper decrypt here unchanged.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("AES-256-GCM requires a 32 byte key")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded: Optional[str]) -> Optional["TokenCipher"]:
        if not encoded:
            return None
        return cls(base64.b64decode(encoded))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ".".join(
            base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
        )

    def decrypt(self, payload: str) -> str:
        parts = payload.split(".")
        if len(parts) != 3:
            raise DecryptionError("invalid ciphertext format")
        try:
            iv, tag, ciphertext = (base64.b64decode(part) for part in parts)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("invalid ciphertext encoding") from exc
        if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
            raise DecryptionError("invalid ciphertext format")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("token_cipher_decrypt_failed")
            raise DecryptionError("ciphertext authentication failed") from exc
        return plaintext.decode("utf-8")
