"""Orchestrates simulate, authorize, re-validate, commit and log for queued actions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from framesync.audit import AuditLogWriter
from framesync.errors import (
    ExternalCommitError,
    StaleSnapshotError,
    UnsupportedSimulationError,
    VaultKeyNotFoundError,
    VaultLockedError,
)
from framesync.logging_setup import REDACTED, redact_text
from framesync.metrics import ACTIONS_TOTAL, COMMIT_LATENCY, SIMULATION_DIVERGENCE, MetricRegistry, Timer
from framesync.telemetry import CommitGuard
from framesync.vault import SecureVault

from .collaborators import ActionCommitter, SnapshotProvider
from .dispatcher import TriggerDispatcher
from .execution_log import ExecutionLog, StepOutcome
from .models import (
    Action,
    ExecutionRecord,
    ExecutionStatus,
    FinancialSnapshot,
    QueuedAction,
    SimulationOutcome,
    to_money,
)
from .permissions import PermissionEnforcer
from .rule_engine import Rule, RuleEngine
from .simulation import SimulationService
from .triggers import TriggerHistory, TriggerRecord, trigger_key

logger = logging.getLogger(__name__)

DRY_RUN_REASON = "[DRY-RUN] Commit skipped"


def _money_or_none(value: Any) -> Optional[Decimal]:
    try:
        return to_money(value)
    except (ArithmeticError, TypeError, ValueError):
        return None


class _StepFailed(Exception):
    """Internal signal carrying the terminal record that ended a traversal."""

    def __init__(self, record: ExecutionRecord) -> None:
        super().__init__(record.reason)
        self.record = record


class ExecutionController:
    """Processes one queued action at a time, in FIFO order."""

    def __init__(
        self,
        *,
        snapshots: SnapshotProvider,
        enforcer: PermissionEnforcer,
        committer: ActionCommitter,
        simulator: Optional[SimulationService] = None,
        rule_engine: Optional[RuleEngine] = None,
        dispatcher: Optional[TriggerDispatcher] = None,
        execution_log: Optional[ExecutionLog] = None,
        vault: Optional[SecureVault] = None,
        commit_credential_key: Optional[str] = None,
        dry_run: bool = False,
        commit_guard: Optional[CommitGuard] = None,
        trigger_history: Optional[TriggerHistory] = None,
        metrics: Optional[MetricRegistry] = None,
        audit: Optional[AuditLogWriter] = None,
        actor: str = "framesync",
    ) -> None:
        self._snapshots = snapshots
        self._enforcer = enforcer
        self._committer = committer
        self._simulator = simulator or SimulationService()
        self._rule_engine = rule_engine or RuleEngine()
        self._dispatcher = dispatcher or TriggerDispatcher()
        self._log = execution_log or ExecutionLog(audit=audit, actor=actor)
        self._vault = vault
        self._credential_key = commit_credential_key
        self._dry_run = dry_run
        self._commit_guard = commit_guard or CommitGuard()
        self._triggers = trigger_history or TriggerHistory()
        self._metrics = metrics or MetricRegistry()
        self._audit = audit
        self._actor = actor
        self._processing_lock: Optional[asyncio.Lock] = None

    @property
    def dispatcher(self) -> TriggerDispatcher:
        return self._dispatcher

    @property
    def execution_log(self) -> ExecutionLog:
        return self._log

    @property
    def metrics(self) -> MetricRegistry:
        return self._metrics

    @property
    def commit_guard(self) -> CommitGuard:
        return self._commit_guard

    @property
    def trigger_history(self) -> TriggerHistory:
        return self._triggers

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    # ------------------------------------------------------------------
    # Queue management

    def enqueue(self, action: Action) -> str:
        queued = self._dispatcher.enqueue(action)
        self._audit_event("action.enqueued", {"action_id": queued.action_id, **action.to_payload()})
        return queued.action_id

    def pending_actions(self) -> List[QueuedAction]:
        return self._dispatcher.pending()

    def cancel(self, action_id: str) -> bool:
        cancelled = self._dispatcher.cancel(action_id)
        if cancelled:
            self._audit_event("action.cancelled", {"action_id": action_id})
        return cancelled

    def clear_action_queue(self) -> int:
        removed = self._dispatcher.clear()
        self._audit_event("queue.cleared", {"removed": removed})
        return removed

    async def evaluate_and_enqueue(
        self,
        rules: Iterable[Rule],
        event: Optional[Mapping[str, Any]] = None,
        *,
        source: str = "evaluation",
    ) -> List[str]:
        """Evaluate ``rules`` against a fresh snapshot and enqueue new candidates.

        A rule that already fired for the same snapshot revision and event is
        skipped, so repeated evaluations of an unchanged snapshot enqueue
        nothing.
        """

        snapshot = await self._snapshots.fetch_snapshot()
        if event is not None:
            snapshot = snapshot.with_event(event)
        by_rule: Dict[str, List[Action]] = {}
        for action in self._rule_engine.evaluate_rules(snapshot, list(rules)):
            by_rule.setdefault(action.rule_id or "", []).append(action)

        action_ids: List[str] = []
        repeated = 0
        for rule_id, actions in by_rule.items():
            key = trigger_key(rule_id, snapshot.revision, event)
            if self._triggers.has_fired(key):
                repeated += 1
                logger.debug("Rule already fired for this revision", extra={"rule_id": rule_id, "key": key})
                continue
            ids = tuple(self.enqueue(action) for action in actions)
            record = TriggerRecord(
                key=key,
                rule_id=rule_id,
                rule_name=actions[0].rule_name,
                revision=snapshot.revision,
                action_ids=ids,
                triggered_at=datetime.now(timezone.utc),
                source=source,
            )
            self._triggers.record(record)
            self._audit_event("rule.triggered", record.to_payload())
            action_ids.extend(ids)
        logger.info(
            "Rules evaluated",
            extra={
                "revision": snapshot.revision,
                "source": source,
                "candidates": len(action_ids),
                "already_fired": repeated,
            },
        )
        return action_ids

    def get_execution_history(self, **filters: Any) -> List[ExecutionRecord]:
        return self._log.get_execution_history(**filters)

    # ------------------------------------------------------------------
    # Processing

    def _lock_guard(self) -> asyncio.Lock:
        lock = self._processing_lock
        if lock is None:
            lock = asyncio.Lock()
            self._processing_lock = lock
        return lock

    async def process_queue(self) -> List[ExecutionRecord]:
        """Drain the queue and return the last record written for each action."""

        results: List[ExecutionRecord] = []
        async with self._lock_guard():
            while True:
                queued = self._dispatcher.begin_next()
                if queued is None:
                    break
                try:
                    results.append(await self._traverse(queued))
                finally:
                    self._dispatcher.complete(queued.action_id)
        return results

    async def _traverse(self, queued: QueuedAction) -> ExecutionRecord:
        self._record(queued, StepOutcome(status=ExecutionStatus.PENDING))
        try:
            snapshot, simulation = await self._simulate(queued)
            self._record(queued, StepOutcome(status=ExecutionStatus.SIMULATED, simulated_outcome=simulation))

            decision = self._enforcer.authorize(queued.action)
            if not decision.allowed:
                return self._finish(
                    queued,
                    StepOutcome(
                        status=ExecutionStatus.DENIED,
                        simulated_outcome=simulation,
                        reason=decision.reason,
                    ),
                )
            if self._dry_run:
                logger.warning(
                    "[DRY-RUN] Would commit action",
                    extra={"action_id": queued.action_id, "action_type": queued.action.action_type},
                )
                return self._finish(
                    queued,
                    StepOutcome(status=ExecutionStatus.AUTHORIZED, simulated_outcome=simulation, reason=DRY_RUN_REASON),
                )
            self._record(queued, StepOutcome(status=ExecutionStatus.AUTHORIZED, simulated_outcome=simulation))

            simulation = await self._revalidate(queued, snapshot, simulation)
            credential = self._commit_credential(queued, simulation)
            real_outcome = await self._commit(queued, simulation, credential)
        except _StepFailed as failed:
            return failed.record

        self._check_divergence(queued, simulation, real_outcome)
        return self._finish(
            queued,
            StepOutcome(status=ExecutionStatus.EXECUTED, simulated_outcome=simulation, real_outcome=real_outcome),
        )

    async def _simulate(self, queued: QueuedAction) -> tuple[FinancialSnapshot, SimulationOutcome]:
        try:
            snapshot = await self._snapshots.fetch_snapshot()
        except Exception as exc:
            logger.error("Snapshot fetch failed", extra={"action_id": queued.action_id}, exc_info=True)
            self._fail(queued, f"Financial snapshot unavailable: {type(exc).__name__}")
        try:
            simulation = self._simulator.simulate(queued.action, snapshot)
        except UnsupportedSimulationError as exc:
            self._fail(queued, str(exc), revision=snapshot.revision)
        if not simulation.success:
            self._fail(queued, simulation.reason or "Simulation failed", simulation=simulation)
        return snapshot, simulation

    async def _revalidate(
        self, queued: QueuedAction, snapshot: FinancialSnapshot, simulation: SimulationOutcome
    ) -> SimulationOutcome:
        """Ensure the commit is based on a simulation of the current revision.

        A moved revision earns exactly one re-simulation; moving again fails the
        action with :class:`StaleSnapshotError`.
        """

        try:
            current = await self._snapshots.current_revision()
            if current == snapshot.revision:
                return simulation
            logger.info(
                "Snapshot moved since simulation; re-simulating",
                extra={"action_id": queued.action_id, "simulated": snapshot.revision, "current": current},
            )
            refreshed = await self._snapshots.fetch_snapshot()
        except Exception as exc:
            self._fail(queued, f"Financial snapshot unavailable: {type(exc).__name__}", simulation=simulation)
        try:
            resimulated = self._simulator.simulate(queued.action, refreshed)
        except UnsupportedSimulationError as exc:
            self._fail(queued, str(exc), simulation=simulation)
        self._record(queued, StepOutcome(status=ExecutionStatus.SIMULATED, simulated_outcome=resimulated))
        if not resimulated.success:
            self._fail(queued, resimulated.reason or "Simulation failed", simulation=resimulated)
        try:
            latest = await self._snapshots.current_revision()
        except Exception as exc:
            self._fail(queued, f"Financial snapshot unavailable: {type(exc).__name__}", simulation=resimulated)
        if latest != refreshed.revision:
            error = StaleSnapshotError(refreshed.revision, latest)
            logger.warning("Stale snapshot after re-simulation", extra={"action_id": queued.action_id})
            self._fail(queued, str(error), simulation=resimulated)
        return resimulated

    def _commit_credential(self, queued: QueuedAction, simulation: SimulationOutcome) -> Optional[Any]:
        if not self._credential_key:
            return None
        if self._vault is None:
            self._fail(queued, str(VaultLockedError()), simulation=simulation)
        try:
            return self._vault.get(self._credential_key)
        except (VaultLockedError, VaultKeyNotFoundError) as exc:
            self._fail(queued, str(exc), simulation=simulation)

    async def _commit(
        self, queued: QueuedAction, simulation: SimulationOutcome, credential: Optional[Any]
    ) -> Mapping[str, Any]:
        action = queued.action
        try:
            with Timer(self._metrics, COMMIT_LATENCY, labels={"action_type": action.action_type}):
                outcome = await self._commit_guard.call(
                    lambda: self._committer.commit(action, credential=credential)
                )
        except Exception as exc:
            message = self._safe_message(exc, credential)
            error = ExternalCommitError(f"External commit failed: {message}")
            logger.error(
                "External commit failed",
                extra={"action_id": queued.action_id, "error_type": type(exc).__name__},
            )
            self._fail(queued, str(error), simulation=simulation)
        if outcome is None:
            return {}
        if isinstance(outcome, Mapping):
            return dict(outcome)
        logger.warning(
            "Committer returned a non-mapping outcome",
            extra={"action_id": queued.action_id, "outcome_type": type(outcome).__name__},
        )
        return {"result": redact_text(str(outcome))}

    @staticmethod
    def _safe_message(exc: BaseException, credential: Optional[Any]) -> str:
        detail = str(exc)
        if isinstance(credential, str) and credential:
            detail = detail.replace(credential, REDACTED)
        detail = redact_text(detail)
        return f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__

    def _check_divergence(
        self, queued: QueuedAction, simulation: SimulationOutcome, real_outcome: Mapping[str, Any]
    ) -> None:
        """Count a divergence when the committed outcome disagrees with the projection.

        Runs after money has moved, so an unreadable field is counted as
        diverged rather than raised.
        """

        diverged: List[str] = []
        real_balances = real_outcome.get("balances")
        if isinstance(real_balances, Mapping):
            for account_id, projected in simulation.projected_balances.items():
                if account_id in real_balances and _money_or_none(real_balances[account_id]) != projected:
                    diverged.append(f"accounts.{account_id}.balance")
        real_goals = real_outcome.get("goals")
        if isinstance(real_goals, Mapping):
            for goal_id, projected in simulation.projected_goals.items():
                actual = real_goals.get(goal_id)
                if isinstance(actual, Mapping) and "current_amount" in actual:
                    if _money_or_none(actual["current_amount"]) != projected["current_amount"]:
                        diverged.append(f"goals.{goal_id}.current_amount")
        if diverged:
            self._metrics.inc(SIMULATION_DIVERGENCE, labels={"action_type": queued.action.action_type})
            logger.error(
                "Committed outcome diverged from simulation",
                extra={"action_id": queued.action_id, "fields": diverged},
            )

    # ------------------------------------------------------------------
    # Recording helpers

    def _record(self, queued: QueuedAction, outcome: StepOutcome) -> ExecutionRecord:
        return self._log.log_execution(queued, outcome)

    def _finish(self, queued: QueuedAction, outcome: StepOutcome) -> ExecutionRecord:
        record = self._record(queued, outcome)
        self._metrics.inc(ACTIONS_TOTAL, labels={"status": record.status.value})
        return record

    def _fail(
        self,
        queued: QueuedAction,
        reason: str,
        *,
        simulation: Optional[SimulationOutcome] = None,
        revision: Any = None,
    ) -> None:
        record = self._finish(
            queued,
            StepOutcome(
                status=ExecutionStatus.FAILED,
                simulated_outcome=simulation,
                reason=reason,
                snapshot_revision=revision,
            ),
        )
        raise _StepFailed(record)

    def _audit_event(self, action: str, details: Mapping[str, Any]) -> None:
        if self._audit is not None:
            self._audit.log(action, self._actor, details)


__all__ = ["DRY_RUN_REASON", "ExecutionController"]
