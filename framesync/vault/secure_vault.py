"""Password-gated encrypted key/value store for secrets.

The vault persists exactly two records in its :class:`KeyValueStore`: a salt
record (which also pins the KDF iteration count chosen on first run) and one
encrypted blob holding the whole mapping. Every mutation re-encrypts the full
mapping; there is no per-entry ciphertext.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import copy
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from framesync.errors import (
    DecryptionError,
    VaultKeyNotFoundError,
    VaultLockedError,
    VaultUnlockError,
)
from framesync.storage import KeyValueStore

from .crypto import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS, CryptoService

logger = logging.getLogger(__name__)

SALT_STORAGE_KEY = "framesync.vault.salt.v1"
BLOB_STORAGE_KEY = "framesync.vault.blob.v1"
KDF_NAME = "pbkdf2-sha256"


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass
class VaultSession:
    """Derived key and decrypted entries; lives only between unlock and lock."""

    key: bytearray
    entries: Dict[str, Any] = field(default_factory=dict)

    def wipe(self) -> None:
        for index in range(len(self.key)):
            self.key[index] = 0
        self.entries = {}


@dataclass(frozen=True)
class SaltRecord:
    salt: bytes
    iterations: int

    def dumps(self) -> str:
        return json.dumps(
            {
                "kdf": KDF_NAME,
                "salt": base64.b64encode(self.salt).decode("ascii"),
                "iterations": self.iterations,
            },
            sort_keys=True,
        )

    @classmethod
    def loads(cls, raw: str) -> "SaltRecord":
        payload = json.loads(raw)
        if not isinstance(payload, dict) or payload.get("kdf") != KDF_NAME:
            raise ValueError("Unrecognised vault salt record")
        return cls(
            salt=base64.b64decode(payload["salt"], validate=True),
            iterations=int(payload["iterations"]),
        )


class SecureVault:
    """Owned vault instance with an explicit ``unlock``/``lock`` lifecycle."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        crypto: Optional[CryptoService] = None,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        if kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"Vault KDF iterations must be at least {MIN_KDF_ITERATIONS}")
        self._storage = storage
        self._crypto = crypto or CryptoService()
        self._kdf_iterations = kdf_iterations
        self._session: Optional[VaultSession] = None
        self._mutation_lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> VaultState:
        return VaultState.UNLOCKED if self._session is not None else VaultState.LOCKED

    def is_unlocked(self) -> bool:
        return self._session is not None

    def _lock_guard(self) -> asyncio.Lock:
        lock = self._mutation_lock
        if lock is None:
            lock = asyncio.Lock()
            self._mutation_lock = lock
        return lock

    def _salt_record(self) -> SaltRecord:
        raw = self._storage.get_item(SALT_STORAGE_KEY)
        if raw is None:
            record = SaltRecord(salt=self._crypto.generate_salt(), iterations=self._kdf_iterations)
            self._storage.set_item(SALT_STORAGE_KEY, record.dumps())
            logger.info("Initialised vault salt", extra={"iterations": record.iterations})
            return record
        try:
            return SaltRecord.loads(raw)
        except (ValueError, KeyError, TypeError, binascii.Error):
            logger.error("Vault salt record is unreadable")
            raise VaultUnlockError() from None

    async def unlock(self, password: str) -> None:
        """Derive the master key and decrypt the persisted mapping.

        Any failure leaves the vault locked and raises :class:`VaultUnlockError`.
        """

        async with self._lock_guard():
            self.lock()
            record = self._salt_record()
            try:
                key = await asyncio.to_thread(
                    self._crypto.derive_key, password, record.salt, record.iterations
                )
            except ValueError:
                logger.error("Vault salt record carries invalid KDF parameters")
                raise VaultUnlockError() from None
            blob = self._storage.get_item(BLOB_STORAGE_KEY)
            if blob is None:
                self._session = VaultSession(key=bytearray(key))
                logger.info("Vault unlocked with an empty mapping")
                return
            try:
                plaintext = self._crypto.decrypt(key, base64.b64decode(blob, validate=True))
                entries = json.loads(plaintext.decode("utf-8"))
                if not isinstance(entries, dict):
                    raise ValueError("vault payload is not a mapping")
            except (DecryptionError, ValueError, binascii.Error):
                logger.warning("Vault unlock failed")
                raise VaultUnlockError() from None
            self._session = VaultSession(key=bytearray(key), entries=entries)
            logger.info("Vault unlocked", extra={"entries": len(entries)})

    def lock(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            session.wipe()
            logger.info("Vault locked")

    def _require_session(self) -> VaultSession:
        session = self._session
        if session is None:
            raise VaultLockedError()
        return session

    def get(self, key: str) -> Any:
        session = self._require_session()
        if key not in session.entries:
            raise VaultKeyNotFoundError(key)
        return copy.deepcopy(session.entries[key])

    def keys(self) -> List[str]:
        return sorted(self._require_session().entries)

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` and persist the re-encrypted mapping."""

        async with self._lock_guard():
            session = self._require_session()
            updated = dict(session.entries)
            updated[str(key)] = copy.deepcopy(value)
            self._persist(session, updated)
            session.entries = updated

    async def remove(self, key: str) -> None:
        async with self._lock_guard():
            session = self._require_session()
            if key not in session.entries:
                raise VaultKeyNotFoundError(key)
            updated = dict(session.entries)
            del updated[key]
            self._persist(session, updated)
            session.entries = updated

    def _persist(self, session: VaultSession, entries: Dict[str, Any]) -> None:
        payload = json.dumps(entries, sort_keys=True, separators=(",", ":")).encode("utf-8")
        sealed = self._crypto.encrypt(bytes(session.key), payload)
        self._storage.set_item(BLOB_STORAGE_KEY, base64.b64encode(sealed).decode("ascii"))
        logger.debug("Persisted vault blob", extra={"entries": len(entries)})


__all__ = [
    "BLOB_STORAGE_KEY",
    "SALT_STORAGE_KEY",
    "SecureVault",
    "VaultSession",
    "VaultState",
]
