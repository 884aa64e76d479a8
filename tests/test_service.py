import asyncio
import json
from decimal import Decimal

from framesync.automation import ExecutionStatus, InMemoryAccountBook, Rule
from framesync.configuration import validate_config
from framesync.service import SNAPSHOT_UPDATED, TRANSACTION_POSTED, FrameSyncService
from framesync.storage import InMemoryKeyValueStore

from conftest import ALL_GRANTS

SWEEP_RULE = {
    "id": "sweep",
    "name": "Sweep overflow to savings",
    "conditions": {"field": "accounts.checking.balance", "op": ">", "value": 5000},
    "actions": [
        {
            "action_type": "transfer",
            "payload": {
                "source_account": "checking",
                "destination_account": "savings",
                "amount": {"overflow_of": "accounts.checking.balance", "above": 5000},
            },
        }
    ],
}


def _service(tmp_path, rules=(SWEEP_RULE,), **execution):
    config = validate_config(
        {
            "vault": {"kdf_iterations": 100000},
            "permissions": {"grants": list(ALL_GRANTS), "require_unlocked_vault_for_high_risk": False},
            "execution": execution,
            "audit": {"log_path": "audit.jsonl"},
            "sandbox": {
                "accounts": {"checking": "4800", "savings": "0"},
                "goals": {"car": {"current_amount": "0", "target_amount": "10000"}},
            },
        },
        source_path=tmp_path / "framesync.json",
        env={},
    )
    service = FrameSyncService.from_config(config, storage=InMemoryKeyValueStore())
    if rules:
        service.set_rules([Rule.from_mapping(rule) for rule in rules])
    return service


def test_transaction_event_updates_sandbox_and_enqueues(tmp_path):
    service = _service(tmp_path)
    service.start()

    async def scenario():
        handled = await service.handle_event(TRANSACTION_POSTED, {"account_id": "checking", "amount": "700"})
        return handled, await service.controller.process_queue()

    handled, records = asyncio.run(scenario())

    assert handled == 1
    assert [record.status for record in records] == [ExecutionStatus.EXECUTED]
    assert service.account_book.balances() == {"checking": Decimal("5000.00"), "savings": Decimal("500.00")}


def test_events_are_ignored_until_started(tmp_path):
    service = _service(tmp_path)

    assert asyncio.run(service.handle_event(SNAPSHOT_UPDATED, {})) == 0
    assert service.controller.pending_actions() == []


def test_snapshot_update_without_match_enqueues_nothing(tmp_path):
    service = _service(tmp_path)
    service.start()

    assert asyncio.run(service.handle_event(SNAPSHOT_UPDATED, {})) == 1
    assert service.controller.pending_actions() == []


def test_stop_locks_vault_and_health_reports_state(tmp_path):
    service = _service(tmp_path, dry_run=True)
    service.start()
    asyncio.run(service.vault.unlock("pw"))

    health = service.health()
    assert health["status"] == "healthy"
    assert health["commit"]["status"] == "idle"
    assert health["vault"] == "unlocked"
    assert health["queue"] == {"pending": 0, "dispatcher_running": True}
    assert health["periodic_evaluation"] is False

    service.stop()
    assert service.health()["vault"] == "locked"
    assert service.controller.dry_run is True
    assert service.audit.log_path == (tmp_path / "audit.jsonl").resolve()


def test_rules_file_is_loaded(tmp_path):
    (tmp_path / "rules.json").write_text(json.dumps({"rules": [SWEEP_RULE]}), encoding="utf-8")

    service = _service(tmp_path, rules=(), rules_file="rules.json")

    assert [rule.id for rule in service.rules] == ["sweep"]


def test_repeated_snapshot_updates_enqueue_once(tmp_path):
    service = _service(tmp_path)
    service.account_book.apply_external_change("checking", "700")
    service.start()

    async def scenario():
        await service.handle_event(SNAPSHOT_UPDATED, {})
        await service.handle_event(SNAPSHOT_UPDATED, {})
        return len(service.controller.pending_actions())

    assert asyncio.run(scenario()) == 1
    stats = service.trigger_statistics()
    assert stats["total"] == 1
    assert stats["by_source"] == {"snapshot.updated": 1}
    assert [record.rule_id for record in service.recent_triggers()] == ["sweep"]


def test_periodic_evaluation_runs_until_stopped(tmp_path):
    service = _service(tmp_path, evaluation_interval_s=0.01)
    service.account_book.apply_external_change("checking", "700")

    async def scenario():
        service.start()
        assert service.evaluating
        assert service.start_periodic_evaluation(0.01) is False
        for _ in range(50):
            await asyncio.sleep(0.01)
            if service.controller.execution_log.get_execution_history(status="executed"):
                break
        await asyncio.sleep(0.05)
        service.stop()
        await asyncio.sleep(0)
        return service.evaluating

    assert asyncio.run(scenario()) is False
    executed = service.controller.get_execution_history(status="executed")
    assert len(executed) == 1
    assert service.account_book.balances() == {"checking": Decimal("5000.00"), "savings": Decimal("500.00")}
    assert service.trigger_statistics()["by_source"] == {"periodic": 1}
    assert service.stop_periodic_evaluation() is False


def test_periodic_evaluation_needs_positive_interval(tmp_path):
    service = _service(tmp_path)

    try:
        service.start_periodic_evaluation(0)
    except ValueError as exc:
        assert "positive" in str(exc)
    else:
        raise AssertionError("expected ValueError")


def test_evaluate_now_processes_new_candidates(tmp_path):
    service = _service(tmp_path)
    service.account_book.apply_external_change("checking", "1000")

    first = asyncio.run(service.evaluate_now())
    second = asyncio.run(service.evaluate_now())

    assert len(first) == 1
    assert second == []
    assert service.account_book.balances()["savings"] == Decimal("800.00")


def test_sandbox_book_is_exposed_when_it_is_the_committer(tmp_path):
    config = validate_config(
        {"sandbox": {"accounts": {"checking": "10"}}}, source_path=tmp_path / "framesync.json", env={}
    )
    snapshots = InMemoryAccountBook({"checking": "10"})

    service = FrameSyncService.from_config(config, storage=InMemoryKeyValueStore(), snapshots=snapshots)

    assert service.account_book is not None
    assert service.account_book is not snapshots
    assert service.account_book.balances() == {"checking": Decimal("10.00")}
