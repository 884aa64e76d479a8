"""Composition root wiring the vault, permission gate and execution pipeline."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from framesync.audit import AuditLogWriter, get_audit_logger
from framesync.automation import (
    ActionCommitter,
    ExecutionController,
    InMemoryAccountBook,
    PermissionEnforcer,
    Rule,
    SnapshotProvider,
    StaticPermissionProvider,
    TriggerDispatcher,
    TriggerHistory,
    TriggerRecord,
    UserContext,
    load_rules,
)
from framesync.automation.collaborators import grants
from framesync.configuration import FrameSyncConfig
from framesync.metrics import MetricRegistry
from framesync.storage import FileKeyValueStore, KeyValueStore
from framesync.telemetry import CommitGuard
from framesync.vault import SecureVault

logger = logging.getLogger(__name__)

SNAPSHOT_UPDATED = "snapshot.updated"
TRANSACTION_POSTED = "transaction.posted"


class FrameSyncService:
    """Owns one vault and one execution pipeline built from configuration."""

    def __init__(
        self,
        *,
        config: FrameSyncConfig,
        vault: SecureVault,
        controller: ExecutionController,
        rules: Sequence[Rule] = (),
        audit: Optional[AuditLogWriter] = None,
        account_book: Optional[InMemoryAccountBook] = None,
    ) -> None:
        self.config = config
        self.vault = vault
        self.controller = controller
        self.audit = audit
        self.account_book = account_book
        self._rules: List[Rule] = list(rules)
        self._evaluation_task: Optional[asyncio.Task] = None
        dispatcher = controller.dispatcher
        dispatcher.register_trigger(SNAPSHOT_UPDATED, self._on_snapshot_updated)
        dispatcher.register_trigger(TRANSACTION_POSTED, self._on_transaction_posted)

    @classmethod
    def from_config(
        cls,
        config: FrameSyncConfig,
        *,
        storage: Optional[KeyValueStore] = None,
        snapshots: Optional[SnapshotProvider] = None,
        committer: Optional[ActionCommitter] = None,
    ) -> "FrameSyncService":
        """Build the service; collaborators default to the sandbox account book."""

        vault = SecureVault(
            storage or FileKeyValueStore(config.vault.path),
            kdf_iterations=config.vault.kdf_iterations,
        )
        audit = get_audit_logger(config.audit)
        book: Optional[InMemoryAccountBook] = None
        if snapshots is None or committer is None:
            book = InMemoryAccountBook(config.sandbox.accounts, config.sandbox.goals)
        permissions = config.permissions
        provider = StaticPermissionProvider(
            UserContext(user_id=permissions.user_id, authenticated=True, grants=grants(permissions.grants))
        )
        enforcer = PermissionEnforcer(
            provider,
            high_value_threshold=permissions.high_value_transfer_threshold,
            vault=vault,
            require_unlocked_vault_for_high_risk=permissions.require_unlocked_vault_for_high_risk,
        )
        controller = ExecutionController(
            snapshots=snapshots or book,
            enforcer=enforcer,
            committer=committer or book,
            dispatcher=TriggerDispatcher(),
            vault=vault,
            commit_credential_key=config.execution.commit_credential_key,
            dry_run=config.execution.dry_run,
            commit_guard=CommitGuard(config.execution.commit),
            trigger_history=TriggerHistory(max_entries=config.execution.trigger_history_limit),
            metrics=MetricRegistry(),
            audit=audit,
            actor=permissions.user_id,
        )
        rules = load_rules(config.execution.rules_file) if config.execution.rules_file else []
        logger.info(
            "FrameSync service configured",
            extra={"rules": len(rules), "dry_run": config.execution.dry_run, "sandbox": book is not None},
        )
        return cls(
            config=config,
            vault=vault,
            controller=controller,
            rules=rules,
            audit=audit,
            account_book=book,
        )

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def set_rules(self, rules: Sequence[Rule]) -> None:
        self._rules = list(rules)

    def start(self) -> None:
        """Start routing events; also start periodic evaluation when configured.

        Periodic evaluation needs a running event loop, so a service with a
        non-zero ``evaluation_interval_s`` must be started from async code.
        """

        self.controller.dispatcher.start()
        interval = self.config.execution.evaluation_interval_s
        if interval > 0:
            self.start_periodic_evaluation(interval)

    def stop(self) -> None:
        self.stop_periodic_evaluation()
        self.controller.dispatcher.stop()
        self.vault.lock()

    @property
    def evaluating(self) -> bool:
        return self._evaluation_task is not None and not self._evaluation_task.done()

    def start_periodic_evaluation(self, interval_s: float) -> bool:
        """Evaluate the rules now and then every ``interval_s`` seconds.

        Returns ``False`` when periodic evaluation is already running.
        """

        if interval_s <= 0:
            raise ValueError("Evaluation interval must be positive.")
        if self.evaluating:
            logger.warning("Periodic evaluation already running")
            return False
        loop = asyncio.get_running_loop()
        self._evaluation_task = loop.create_task(self._evaluation_loop(interval_s))
        self._audit_event("rules.evaluation_started", {"interval_s": interval_s})
        logger.info("Periodic evaluation started", extra={"interval_s": interval_s})
        return True

    def stop_periodic_evaluation(self) -> bool:
        task = self._evaluation_task
        self._evaluation_task = None
        if task is None or task.done():
            return False
        task.cancel()
        self._audit_event("rules.evaluation_stopped", {})
        logger.info("Periodic evaluation stopped")
        return True

    async def evaluate_now(self, *, source: str = "manual") -> List[str]:
        """Evaluate the rules against a fresh snapshot and process what they enqueue."""

        action_ids = await self.controller.evaluate_and_enqueue(self._rules, source=source)
        if action_ids:
            await self.controller.process_queue()
        return action_ids

    async def _evaluation_loop(self, interval_s: float) -> None:
        while True:
            try:
                await self.evaluate_now(source="periodic")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic rule evaluation failed")
            await asyncio.sleep(interval_s)

    def recent_triggers(self, hours: float = 24) -> List[TriggerRecord]:
        return self.controller.trigger_history.recent(hours)

    def trigger_statistics(self) -> Dict[str, Any]:
        return self.controller.trigger_history.statistics()

    async def handle_event(self, event_type: str, payload: Optional[Mapping[str, Any]] = None) -> int:
        return await self.controller.dispatcher.dispatch(event_type, payload)

    async def _on_snapshot_updated(self, payload: Mapping[str, Any]) -> None:
        await self.controller.evaluate_and_enqueue(self._rules, source="snapshot.updated")

    async def _on_transaction_posted(self, payload: Mapping[str, Any]) -> None:
        account_id = payload.get("account_id")
        if self.account_book is not None and account_id and "amount" in payload:
            self.account_book.apply_external_change(str(account_id), payload["amount"])
        await self.controller.evaluate_and_enqueue(self._rules, event=payload, source="transaction.posted")

    def _audit_event(self, action: str, details: Mapping[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log(action, self.config.permissions.user_id, details)

    def health(self) -> Dict[str, Any]:
        commit = self.controller.commit_guard.health()
        return {
            "status": "healthy" if commit["status"] in ("healthy", "idle") else "degraded",
            "commit": commit,
            "vault": self.vault.state.value,
            "queue": {
                "pending": len(self.controller.dispatcher),
                "dispatcher_running": self.controller.dispatcher.is_running,
            },
            "periodic_evaluation": self.evaluating,
            "triggers": len(self.controller.trigger_history),
        }


__all__ = ["FrameSyncService", "SNAPSHOT_UPDATED", "TRANSACTION_POSTED"]
