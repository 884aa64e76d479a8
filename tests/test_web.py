from pathlib import Path
from typing import Iterator

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from framesync.automation import Rule
from framesync.configuration import validate_config
from framesync.service import FrameSyncService
from framesync.storage import InMemoryKeyValueStore
from framesync.web import AuthManager, create_app

from conftest import ALL_GRANTS


@pytest.fixture
def client(tmp_path: Path) -> Iterator[TestClient]:
    config = validate_config(
        {
            "vault": {"kdf_iterations": 100000},
            "permissions": {"grants": list(ALL_GRANTS)},
            "audit": {"log_path": "audit.jsonl"},
            "auth": {
                "secret_key": "test-secret",
                "users": {"alex": AuthManager.hash_password("correct-horse")},
                "https_only": False,
            },
            "sandbox": {
                "accounts": {"checking": "6000", "savings": "0"},
                "goals": {"car": {"current_amount": "0", "target_amount": "10000"}},
            },
        },
        source_path=tmp_path / "framesync.json",
        env={},
    )
    service = FrameSyncService.from_config(config, storage=InMemoryKeyValueStore())
    with TestClient(create_app(config, service=service)) as test_client:
        yield test_client


def _login(client: TestClient) -> None:
    response = client.post("/login", json={"username": "alex", "password": "correct-horse"})
    assert response.status_code == 200
    assert response.json() == {"user": "alex"}


def _transfer(amount="500"):
    return {
        "action_type": "transfer",
        "payload": {"source_account": "checking", "destination_account": "savings", "amount": amount},
    }


def test_api_requires_session(client: TestClient) -> None:
    assert client.get("/api/vault/status").status_code == 401
    assert client.post("/api/actions", json=_transfer()).status_code == 401
    assert client.get("/health").status_code == 200


def test_login_rejects_bad_credentials(client: TestClient) -> None:
    assert client.post("/login", json={"username": "alex", "password": "wrong"}).status_code == 401
    assert client.post("/login", json={"username": "nobody", "password": "x"}).status_code == 401
    assert client.post("/login", json=["alex"]).status_code == 400


def test_vault_lifecycle_never_returns_values(client: TestClient) -> None:
    _login(client)

    assert client.get("/api/vault/status").json() == {"state": "locked"}
    assert client.get("/api/vault/secrets").status_code == 409
    assert client.put("/api/vault/secrets/bank_api_token", json={"value": "sk-live"}).status_code == 409
    assert client.post("/api/vault/unlock", json={}).status_code == 400

    assert client.post("/api/vault/unlock", json={"password": "vault-pw"}).json() == {"state": "unlocked"}
    stored = client.put("/api/vault/secrets/bank_api_token", json={"value": "sk-live"})
    assert stored.json() == {"key": "bank_api_token", "stored": True}
    listing = client.get("/api/vault/secrets")
    assert listing.json() == {"keys": ["bank_api_token"]}
    assert "sk-live" not in listing.text
    assert client.get("/api/vault/status").json() == {"state": "unlocked", "entries": 1}

    assert client.post("/api/vault/lock").json() == {"state": "locked"}
    assert client.post("/api/vault/unlock", json={"password": "wrong-pw"}).status_code == 401
    assert client.post("/api/vault/unlock", json={"password": "vault-pw"}).status_code == 200
    assert client.delete("/api/vault/secrets/bank_api_token").json() == {"key": "bank_api_token", "removed": True}
    assert client.delete("/api/vault/secrets/bank_api_token").status_code == 404


def test_high_risk_action_denied_until_vault_unlocked(client: TestClient) -> None:
    _login(client)

    denied_id = client.post("/api/actions", json=_transfer()).json()["action_id"]
    records = client.post("/api/actions/process").json()["records"]
    assert records[0]["action_id"] == denied_id
    assert records[0]["status"] == "denied"
    assert records[0]["reason"] == "Vault must be unlocked for high-risk actions"

    client.post("/api/vault/unlock", json={"password": "vault-pw"})
    created = client.post("/api/actions", json=_transfer())
    assert created.status_code == 201
    records = client.post("/api/actions/process").json()["records"]
    assert records[0]["status"] == "executed"
    assert records[0]["real_outcome"]["balances"] == {"checking": "5500.00", "savings": "500.00"}

    history = client.get("/api/history", params={"action_id": created.json()["action_id"]}).json()["records"]
    assert [record["status"] for record in history] == ["pending", "simulated", "authorized", "executed"]
    assert client.get("/api/history", params={"status": "bogus"}).status_code == 400
    assert client.get("/api/history", params={"limit": "0"}).status_code == 400

    stats = client.get("/api/history/stats").json()
    assert stats["by_status"]["executed"] == 1
    assert stats["by_status"]["denied"] == 1
    assert stats["lifecycle_violations"] == []


def test_queue_cancel_and_clear(client: TestClient) -> None:
    _login(client)

    first = client.post("/api/actions", json=_transfer("1")).json()["action_id"]
    client.post("/api/actions", json=_transfer("2"))
    client.post("/api/actions", json={"type": "notification", "payload": {"message": "hello"}})

    queue = client.get("/api/actions/queue").json()
    assert [item["payload"]["amount"] for item in queue["pending"][:2]] == ["1", "2"]
    assert queue["in_flight"] is None

    assert client.delete(f"/api/actions/{first}").json() == {"action_id": first, "cancelled": True}
    assert client.delete(f"/api/actions/{first}").status_code == 404
    assert client.delete("/api/actions/queue").json() == {"removed": 2}
    assert client.get("/api/actions/queue").json()["pending"] == []


def test_invalid_action_payloads(client: TestClient) -> None:
    _login(client)

    assert client.post("/api/actions", json={"payload": {}}).status_code == 400
    assert client.post("/api/actions", json={"action_type": "transfer", "payload": [1]}).status_code == 400

    client.post("/api/actions", json={"action_type": "webhook", "payload": {}})
    records = client.post("/api/actions/process").json()["records"]
    assert records[0]["status"] == "failed"


def test_events_enqueue_rule_candidates(client: TestClient) -> None:
    _login(client)

    assert client.post("/api/events/unknown.event", json={}).status_code == 404
    response = client.post("/api/events/snapshot.updated", json={})
    assert response.json() == {"event_type": "snapshot.updated", "handlers": 1, "pending": 0}


def test_audit_trail_is_exposed_newest_first(client: TestClient) -> None:
    _login(client)
    client.post("/api/vault/unlock", json={"password": "vault-pw"})

    entries = client.get("/api/audit").json()["entries"]
    assert [entry["action"] for entry in entries[:2]] == ["vault.unlock", "auth.login"]
    assert entries[0]["actor"] == "alex"

    filtered = client.get("/api/audit", params={"action": "auth.login"}).json()
    assert filtered["filters"] == {"action": "auth.login", "actor": None, "limit": 200}
    assert len(filtered["entries"]) == 1


def test_rule_triggers_are_listed(client: TestClient) -> None:
    _login(client)
    service = client.app.state.service
    service.set_rules(
        [
            Rule.from_mapping(
                {
                    "id": "sweep",
                    "conditions": {"field": "accounts.checking.balance", "op": ">", "value": 5000},
                    "actions": [_transfer("100")],
                }
            )
        ]
    )

    assert client.post("/api/rules/evaluate").json()["enqueued"] != []
    assert client.post("/api/rules/evaluate").json() == {"enqueued": []}

    listed = client.get("/api/triggers").json()
    assert listed["hours"] == 24
    assert [trigger["rule_id"] for trigger in listed["triggers"]] == ["sweep"]
    assert listed["triggers"][0]["source"] == "manual"
    assert client.get("/api/triggers", params={"hours": "0"}).status_code == 400

    stats = client.get("/api/triggers/stats").json()
    assert stats["total"] == 1
    assert stats["by_rule"] == {"sweep": 1}
    assert client.get("/health").json()["triggers"] == 1
