import asyncio
import json

import pytest

from framesync.errors import VaultKeyNotFoundError, VaultLockedError, VaultUnlockError
from framesync.storage import FileKeyValueStore, InMemoryKeyValueStore
from framesync.vault import BLOB_STORAGE_KEY, MIN_KDF_ITERATIONS, SALT_STORAGE_KEY, SecureVault, VaultState

from conftest import make_vault


def test_first_unlock_creates_salt_and_empty_mapping():
    store = InMemoryKeyValueStore()
    vault = make_vault(store)

    asyncio.run(vault.unlock("any password"))

    assert vault.is_unlocked()
    assert vault.state is VaultState.UNLOCKED
    assert vault.keys() == []
    salt_record = json.loads(store.get_item(SALT_STORAGE_KEY))
    assert salt_record["iterations"] == MIN_KDF_ITERATIONS
    assert store.get_item(BLOB_STORAGE_KEY) is None


def test_set_lock_unlock_round_trip():
    store = InMemoryKeyValueStore()
    vault = make_vault(store)

    async def scenario():
        await vault.unlock("samePassword")
        await vault.set("token", "abc123")
        await vault.set("limits", {"daily": 500})
        vault.lock()
        await vault.unlock("samePassword")
        return vault.get("token"), vault.get("limits")

    token, limits = asyncio.run(scenario())

    assert token == "abc123"
    assert limits == {"daily": 500}
    assert set(store.snapshot()) == {SALT_STORAGE_KEY, BLOB_STORAGE_KEY}
    assert "abc123" not in store.get_item(BLOB_STORAGE_KEY)


def test_wrong_password_after_set_fails_and_stays_locked():
    store = InMemoryKeyValueStore()
    vault = make_vault(store)

    async def scenario():
        await vault.unlock("right")
        await vault.set("token", "abc123")
        vault.lock()
        await vault.unlock("wrong")

    with pytest.raises(VaultUnlockError):
        asyncio.run(scenario())
    assert not vault.is_unlocked()


def test_corrupted_blob_is_reported_like_a_wrong_password():
    store = InMemoryKeyValueStore()
    vault = make_vault(store)

    async def seed():
        await vault.unlock("right")
        await vault.set("token", "abc123")
        vault.lock()

    asyncio.run(seed())
    store.set_item(BLOB_STORAGE_KEY, "bm90LWEtdmFsaWQtYmxvYg==")

    with pytest.raises(VaultUnlockError) as excinfo:
        asyncio.run(vault.unlock("right"))
    assert str(excinfo.value) == str(VaultUnlockError())
    assert vault.state is VaultState.LOCKED


def test_locked_vault_rejects_access():
    vault = make_vault()

    with pytest.raises(VaultLockedError):
        vault.get("token")
    with pytest.raises(VaultLockedError):
        vault.keys()
    with pytest.raises(VaultLockedError):
        asyncio.run(vault.set("token", "abc"))


def test_missing_key_and_remove():
    vault = make_vault()

    async def scenario():
        await vault.unlock("pw")
        await vault.set("a", 1)
        await vault.set("b", 2)
        await vault.remove("a")
        return vault.keys()

    assert asyncio.run(scenario()) == ["b"]
    with pytest.raises(VaultKeyNotFoundError):
        vault.get("a")
    with pytest.raises(VaultKeyNotFoundError):
        asyncio.run(vault.remove("a"))


def test_structured_values_only_change_through_set():
    vault = make_vault()
    limits = {"daily": 500, "accounts": ["checking"]}

    async def scenario():
        await vault.unlock("pw")
        await vault.set("limits", limits)
        limits["daily"] = 1
        fetched = vault.get("limits")
        fetched["accounts"].append("savings")
        in_memory = vault.get("limits")
        vault.lock()
        await vault.unlock("pw")
        return in_memory, vault.get("limits")

    in_memory, reloaded = asyncio.run(scenario())

    assert in_memory == {"daily": 500, "accounts": ["checking"]}
    assert reloaded == in_memory


def test_lock_is_idempotent_and_wipes_key():
    vault = make_vault()
    asyncio.run(vault.unlock("pw"))
    session = vault._session

    vault.lock()
    vault.lock()

    assert not vault.is_unlocked()
    assert session is not None
    assert all(byte == 0 for byte in session.key)
    assert session.entries == {}


def test_concurrent_sets_do_not_lose_updates():
    store = InMemoryKeyValueStore()
    vault = make_vault(store)

    async def scenario():
        await vault.unlock("pw")
        await asyncio.gather(*(vault.set(f"key-{index}", index) for index in range(10)))
        vault.lock()
        await vault.unlock("pw")
        return vault.keys()

    assert asyncio.run(scenario()) == sorted(f"key-{index}" for index in range(10))


def test_failed_persist_leaves_memory_unchanged():
    class FailingStore(InMemoryKeyValueStore):
        fail = False

        def set_item(self, key, value):
            if self.fail and key == BLOB_STORAGE_KEY:
                raise OSError("disk full")
            super().set_item(key, value)

    store = FailingStore()
    vault = make_vault(store)

    async def scenario():
        await vault.unlock("pw")
        await vault.set("token", "old")
        store.fail = True
        await vault.set("token", "new")

    with pytest.raises(OSError):
        asyncio.run(scenario())
    assert vault.get("token") == "old"


def test_independent_instances_share_only_storage(tmp_path):
    path = tmp_path / "vault.json"
    first = SecureVault(FileKeyValueStore(path), kdf_iterations=MIN_KDF_ITERATIONS)

    async def seed():
        await first.unlock("pw")
        await first.set("token", "abc123")

    asyncio.run(seed())

    second = SecureVault(FileKeyValueStore(path), kdf_iterations=MIN_KDF_ITERATIONS)
    assert not second.is_unlocked()
    asyncio.run(second.unlock("pw"))
    assert second.get("token") == "abc123"
    assert first.is_unlocked()


def test_low_iteration_configuration_is_rejected():
    with pytest.raises(ValueError):
        SecureVault(InMemoryKeyValueStore(), kdf_iterations=10)
