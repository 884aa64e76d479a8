import asyncio
from decimal import Decimal

from framesync.audit import AuditLogWriter, FileAuditSink, read_audit_entries
from framesync.automation import (
    DRY_RUN_REASON,
    Action,
    ExecutionStatus,
    InMemoryAccountBook,
    Rule,
)
from framesync.logging_setup import REDACTED
from framesync.metrics import ACTIONS_TOTAL, SIMULATION_DIVERGENCE

from conftest import RecordingCommitter, make_controller, make_vault, transfer


class DriftingBook(InMemoryAccountBook):
    """Posts an external deposit each time the revision is checked, ``drifts`` times."""

    def __init__(self, *args, drifts=1, **kwargs):
        super().__init__(*args, **kwargs)
        self.drifts = drifts

    async def current_revision(self):
        if self.drifts > 0:
            self.drifts -= 1
            self.apply_external_change("checking", "100")
        return await super().current_revision()


def _book(**kwargs):
    return InMemoryAccountBook({"checking": "6000", "savings": "0"}, **kwargs)


def _statuses(controller, action_id):
    return [record.status for record in controller.get_execution_history(action_id=action_id)]


def test_transfer_runs_full_lifecycle():
    book = _book()
    controller = make_controller(book=book)
    action_id = controller.enqueue(transfer(500))

    records = asyncio.run(controller.process_queue())

    assert [record.status for record in records] == [ExecutionStatus.EXECUTED]
    assert _statuses(controller, action_id) == [
        ExecutionStatus.PENDING,
        ExecutionStatus.SIMULATED,
        ExecutionStatus.AUTHORIZED,
        ExecutionStatus.EXECUTED,
    ]
    assert book.balances() == {"checking": Decimal("5500.00"), "savings": Decimal("500.00")}
    assert records[0].real_outcome["balances"]["savings"] == Decimal("500.00")
    assert controller.execution_log.find_lifecycle_violations() == []
    assert controller.metrics.counter(ACTIONS_TOTAL, labels={"status": "executed"}) == 1
    assert controller.metrics.counter(SIMULATION_DIVERGENCE, labels={"action_type": "transfer"}) == 0


def test_denied_action_never_reaches_committer():
    committer = RecordingCommitter()
    controller = make_controller(grants=["accounts:read", "transactions:read"], committer=committer)
    action_id = controller.enqueue(transfer(100))

    records = asyncio.run(controller.process_queue())

    assert committer.calls == []
    assert records[0].status is ExecutionStatus.DENIED
    assert "transfers:execute" in records[0].reason
    assert _statuses(controller, action_id) == [
        ExecutionStatus.PENDING,
        ExecutionStatus.SIMULATED,
        ExecutionStatus.DENIED,
    ]


def test_failed_simulation_skips_authorization_and_commit():
    committer = RecordingCommitter()
    controller = make_controller(committer=committer)
    action_id = controller.enqueue(transfer(7000))

    records = asyncio.run(controller.process_queue())

    assert committer.calls == []
    assert records[0].status is ExecutionStatus.FAILED
    assert "Insufficient funds" in records[0].reason
    assert records[0].simulated_outcome.success is False
    assert _statuses(controller, action_id) == [ExecutionStatus.PENDING, ExecutionStatus.FAILED]


def test_unsupported_action_type_fails():
    committer = RecordingCommitter()
    controller = make_controller(committer=committer)
    controller.enqueue(Action(action_type="webhook", payload={"url": "https://example.invalid"}))

    records = asyncio.run(controller.process_queue())

    assert records[0].status is ExecutionStatus.FAILED
    assert "webhook" in records[0].reason
    assert committer.calls == []


def test_snapshot_moving_once_triggers_one_resimulation():
    book = DriftingBook({"checking": "6000", "savings": "0"}, drifts=1)
    controller = make_controller(book=book)
    action_id = controller.enqueue(transfer(500))

    records = asyncio.run(controller.process_queue())

    assert records[0].status is ExecutionStatus.EXECUTED
    assert _statuses(controller, action_id) == [
        ExecutionStatus.PENDING,
        ExecutionStatus.SIMULATED,
        ExecutionStatus.AUTHORIZED,
        ExecutionStatus.SIMULATED,
        ExecutionStatus.EXECUTED,
    ]
    assert records[0].simulated_outcome.snapshot_revision == 1
    assert book.balances()["checking"] == Decimal("5600.00")
    assert controller.execution_log.find_lifecycle_violations() == []


def test_snapshot_moving_twice_fails_as_stale():
    book = DriftingBook({"checking": "6000", "savings": "0"}, drifts=2)
    committer = RecordingCommitter(book=book)
    controller = make_controller(book=book, committer=committer)

    records = asyncio.run(_enqueue_and_process(controller, transfer(500)))

    assert records[0].status is ExecutionStatus.FAILED
    assert "moved from revision 1 to 2" in records[0].reason
    assert committer.calls == []


def test_commit_error_fails_and_redacts_credential():
    vault = make_vault()

    async def scenario():
        await vault.unlock("pw")
        await vault.set("bank_api_token", "sk-live-123")
        controller = make_controller(
            committer=RecordingCommitter(error=RuntimeError("token sk-live-123 rejected by bank")),
            vault=vault,
            commit_credential_key="bank_api_token",
        )
        return controller, await _enqueue_and_process(controller, transfer(500))

    controller, records = asyncio.run(scenario())

    record = records[0]
    assert record.status is ExecutionStatus.FAILED
    assert record.reason.startswith("External commit failed: RuntimeError:")
    assert "sk-live-123" not in record.reason
    assert REDACTED in record.reason
    assert controller.commit_guard.health()["status"] == "degraded"


def test_credential_is_passed_to_committer():
    vault = make_vault()
    committer = RecordingCommitter()

    async def scenario():
        await vault.unlock("pw")
        await vault.set("bank_api_token", "sk-live-123")
        controller = make_controller(committer=committer, vault=vault, commit_credential_key="bank_api_token")
        return await _enqueue_and_process(controller, transfer(500))

    records = asyncio.run(scenario())

    assert records[0].status is ExecutionStatus.EXECUTED
    assert committer.credentials == ["sk-live-123"]


def test_locked_vault_fails_before_commit():
    committer = RecordingCommitter()
    controller = make_controller(committer=committer, vault=make_vault(), commit_credential_key="bank_api_token")

    records = asyncio.run(_enqueue_and_process(controller, transfer(500)))

    assert records[0].status is ExecutionStatus.FAILED
    assert records[0].reason == "Vault is locked"
    assert committer.calls == []


def test_dry_run_stops_after_authorization():
    book = _book()
    committer = RecordingCommitter(book=book)
    controller = make_controller(book=book, committer=committer, dry_run=True)
    action_id = controller.enqueue(transfer(500))

    records = asyncio.run(controller.process_queue())

    assert committer.calls == []
    assert records[0].status is ExecutionStatus.AUTHORIZED
    assert records[0].reason == DRY_RUN_REASON
    assert _statuses(controller, action_id)[-1] is ExecutionStatus.AUTHORIZED
    assert book.balances()["checking"] == Decimal("6000.00")


def test_divergent_commit_is_counted():
    class SkewedCommitter(RecordingCommitter):
        async def commit(self, action, *, credential=None):
            await super().commit(action, credential=credential)
            return {"balances": {"checking": "5400", "savings": "500"}}

    controller = make_controller(committer=SkewedCommitter())

    records = asyncio.run(_enqueue_and_process(controller, transfer(500)))

    assert records[0].status is ExecutionStatus.EXECUTED
    assert controller.metrics.counter(SIMULATION_DIVERGENCE, labels={"action_type": "transfer"}) == 1


def test_cancel_and_clear_only_touch_pending_actions(tmp_path):
    audit = AuditLogWriter(file_sink=FileAuditSink(tmp_path / "audit.jsonl"))
    book = _book()
    controller = make_controller(book=book, audit=audit)
    executed_id = controller.enqueue(transfer(100))
    asyncio.run(controller.process_queue())

    cancelled_id = controller.enqueue(transfer(200))
    controller.enqueue(transfer(300))
    controller.enqueue(transfer(400))

    assert controller.cancel(cancelled_id) is True
    assert controller.cancel(executed_id) is False
    assert controller.clear_action_queue() == 2
    assert controller.pending_actions() == []
    assert asyncio.run(controller.process_queue()) == []

    assert _statuses(controller, executed_id)[-1] is ExecutionStatus.EXECUTED
    assert book.balances()["checking"] == Decimal("5900.00")
    actions = [entry["action"] for entry in read_audit_entries(audit.log_path)]
    assert actions.count("action.enqueued") == 4
    assert "action.cancelled" in actions
    assert actions[-1] == "queue.cleared"


def test_queue_is_processed_in_fifo_order():
    book = _book()
    controller = make_controller(book=book)
    first = controller.enqueue(transfer(5000))
    second = controller.enqueue(transfer(2000))

    records = asyncio.run(controller.process_queue())

    assert [(record.action_id, record.status) for record in records] == [
        (first, ExecutionStatus.EXECUTED),
        (second, ExecutionStatus.FAILED),
    ]


def test_evaluate_and_enqueue_uses_fresh_snapshot_and_event():
    book = _book()
    controller = make_controller(book=book)
    rule = Rule.from_mapping(
        {
            "id": "round-up",
            "conditions": {"field": "event.merchant", "op": "==", "value": "Grocer"},
            "actions": [
                {
                    "action_type": "transfer",
                    "payload": {"source_account": "checking", "destination_account": "savings", "amount": {"field": "event.amount"}},
                }
            ],
        }
    )

    async def scenario():
        ignored = await controller.evaluate_and_enqueue([rule], {"merchant": "Cafe", "amount": "5"})
        queued = await controller.evaluate_and_enqueue([rule], {"merchant": "Grocer", "amount": "12.34"})
        return ignored, queued, await controller.process_queue()

    ignored, queued, records = asyncio.run(scenario())

    assert ignored == []
    assert len(queued) == 1
    assert records[0].rule_id == "round-up"
    assert book.balances()["savings"] == Decimal("12.34")


async def _enqueue_and_process(controller, action):
    controller.enqueue(action)
    return await controller.process_queue()


class LostResponseCommitter(RecordingCommitter):
    """Applies the transfer to the book, then loses the response on the first call."""

    async def commit(self, action, *, credential=None):
        self.calls.append(action)
        outcome = await self.book.commit(action, credential=credential)
        if len(self.calls) == 1:
            raise ConnectionError("connection reset after commit")
        return outcome


def test_commit_with_lost_response_is_not_resubmitted():
    book = _book()
    committer = LostResponseCommitter(book=book)
    controller = make_controller(book=book, committer=committer)
    action_id = controller.enqueue(transfer(500))

    records = asyncio.run(controller.process_queue())

    assert len(committer.calls) == 1
    assert book.balances() == {"checking": Decimal("5500.00"), "savings": Decimal("500.00")}
    assert records[0].status is ExecutionStatus.FAILED
    assert records[0].reason.startswith("External commit failed: ConnectionError:")
    assert _statuses(controller, action_id)[-1] is ExecutionStatus.FAILED


def test_unreadable_commit_outcome_still_ends_in_executed():
    class PendingBalanceCommitter(RecordingCommitter):
        async def commit(self, action, *, credential=None):
            await super().commit(action, credential=credential)
            return {"balances": {"checking": "pending"}, "goals": {"car": {"current_amount": None}}}

    committer = PendingBalanceCommitter()
    controller = make_controller(committer=committer)
    first = controller.enqueue(transfer(500))
    second = controller.enqueue(transfer(100))

    records = asyncio.run(controller.process_queue())

    assert len(committer.calls) == 2
    assert [record.action_id for record in records] == [first, second]
    assert all(record.status is ExecutionStatus.EXECUTED for record in records)
    assert records[0].real_outcome["balances"] == {"checking": "pending"}
    assert _statuses(controller, first)[-1] is ExecutionStatus.EXECUTED
    assert controller.metrics.counter(SIMULATION_DIVERGENCE, labels={"action_type": "transfer"}) == 2
    assert controller.execution_log.find_lifecycle_violations() == []


def test_non_mapping_commit_outcome_is_recorded():
    class ReceiptCommitter(RecordingCommitter):
        async def commit(self, action, *, credential=None):
            await super().commit(action, credential=credential)
            return "receipt-42"

    controller = make_controller(committer=ReceiptCommitter())

    records = asyncio.run(_enqueue_and_process(controller, transfer(500)))

    assert records[0].status is ExecutionStatus.EXECUTED
    assert records[0].real_outcome == {"result": "receipt-42"}
    assert controller.metrics.counter(SIMULATION_DIVERGENCE, labels={"action_type": "transfer"}) == 0


def _sweep_rule():
    return Rule.from_mapping(
        {
            "id": "sweep",
            "name": "Sweep overflow",
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
    )


def test_rule_fires_once_per_snapshot_revision(tmp_path):
    audit = AuditLogWriter(file_sink=FileAuditSink(tmp_path / "audit.jsonl"))
    book = _book()
    controller = make_controller(book=book, audit=audit)
    rules = [_sweep_rule()]

    async def scenario():
        first = await controller.evaluate_and_enqueue(rules)
        repeated = await controller.evaluate_and_enqueue(rules)
        book.apply_external_change("checking", "2000")
        after_change = await controller.evaluate_and_enqueue(rules, source="snapshot.updated")
        return first, repeated, after_change

    first, repeated, after_change = asyncio.run(scenario())

    assert len(first) == 1
    assert repeated == []
    assert len(after_change) == 1
    history = controller.trigger_history
    assert len(history) == 2
    newest = history.recent()[0]
    assert newest.rule_id == "sweep"
    assert newest.rule_name == "Sweep overflow"
    assert newest.revision == 1
    assert newest.action_ids == tuple(after_change)
    assert history.statistics()["by_source"] == {"evaluation": 1, "snapshot.updated": 1}
    actions = [entry["action"] for entry in read_audit_entries(audit.log_path)]
    assert actions.count("rule.triggered") == 2
