"""
Cryptographic primitives for the secret vault.

Keys are derived from the master password with PBKDF2-HMAC-SHA256 and secrets
are sealed with AES-256-GCM. Each ciphertext carries its own 12-byte nonce
prepended to the sealed payload (nonce + ciphertext + 16-byte tag).
"""

from __future__ import annotations

import hashlib
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from framesync.errors import DecryptionError

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 16
MIN_KDF_ITERATIONS = 100_000
DEFAULT_KDF_ITERATIONS = 600_000


class CryptoService:
    """Key derivation, authenticated encryption and hashing."""

    def derive_key(self, password: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
        """Return a 32-byte key derived from ``password`` and ``salt``."""

        if iterations < MIN_KDF_ITERATIONS:
            raise ValueError(
                f"Key derivation requires at least {MIN_KDF_ITERATIONS} iterations, got {iterations}"
            )
        if not salt:
            raise ValueError("Key derivation requires a non-empty salt")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=bytes(salt),
            iterations=int(iterations),
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        """Encrypt ``plaintext`` with AES-256-GCM. Returns nonce + ciphertext + tag."""

        nonce = secrets.token_bytes(NONCE_LENGTH)
        return nonce + AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), None)

    def decrypt(self, key: bytes, data: bytes) -> bytes:
        """Decrypt nonce + ciphertext + tag.

        Every failure mode raises the same :class:`DecryptionError` so a caller
        cannot distinguish a wrong key from truncated or tampered data.
        """

        try:
            if len(data) < NONCE_LENGTH + TAG_LENGTH:
                raise ValueError("ciphertext too short")
            nonce = bytes(data[:NONCE_LENGTH])
            return AESGCM(bytes(key)).decrypt(nonce, bytes(data[NONCE_LENGTH:]), None)
        except (InvalidTag, ValueError, TypeError):
            raise DecryptionError() from None

    def generate_salt(self) -> bytes:
        return secrets.token_bytes(SALT_LENGTH)

    def hash(self, data: bytes | str) -> str:
        """Return the hex SHA-256 digest of ``data``."""

        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(data).hexdigest()


__all__ = [
    "CryptoService",
    "DEFAULT_KDF_ITERATIONS",
    "KEY_LENGTH",
    "MIN_KDF_ITERATIONS",
    "SALT_LENGTH",
]
