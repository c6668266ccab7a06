"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  The key is
32 bytes, configured as 64 hex characters in ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).  Ciphertext is stored as
``hex(nonce || ciphertext || tag)``.

A missing or malformed key is a hard error: tokens are never stored in
plaintext.  Generate a key with::

    python -c "import secrets; print(secrets.token_hex(32))"
"""

from __future__ import annotations

import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connectors.errors import EncryptionError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def generate_key() -> str:
    """Return a fresh 256-bit key as hex."""
    return secrets.token_hex(KEY_SIZE)


class TokenCipher:
    """Authenticated symmetric encryption for credential fields."""

    def __init__(self, key_hex: str):
        try:
            key = bytes.fromhex(key_hex or "")
        except ValueError as exc:
            raise EncryptionError(f"failed to decode encryption key: {exc}") from exc
        if len(key) != KEY_SIZE:
            raise EncryptionError(
                f"encryption key must be {KEY_SIZE} bytes ({KEY_SIZE * 2} hex characters), "
                f"got {len(key)} bytes"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return (nonce + sealed).hex()

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = bytes.fromhex(ciphertext)
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"failed to decode ciphertext: {exc}") from exc

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise EncryptionError("ciphertext too short")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise EncryptionError("failed to decrypt: authentication tag mismatch") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EncryptionError(f"decrypted token is not valid UTF-8: {exc}") from exc
