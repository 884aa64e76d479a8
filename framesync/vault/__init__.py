"""Encrypted secret storage: key derivation, sealing and the vault lifecycle."""

from .crypto import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS, CryptoService
from .secure_vault import BLOB_STORAGE_KEY, SALT_STORAGE_KEY, SecureVault, VaultState

__all__ = [
    "BLOB_STORAGE_KEY",
    "CryptoService",
    "DEFAULT_KDF_ITERATIONS",
    "MIN_KDF_ITERATIONS",
    "SALT_STORAGE_KEY",
    "SecureVault",
    "VaultState",
]
