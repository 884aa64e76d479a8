"""Append-only history of pipeline steps."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from framesync.audit import AuditLogWriter

from .models import ExecutionRecord, ExecutionStatus, QueuedAction, SimulationOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    """What happened to a queued action at one pipeline step."""

    status: ExecutionStatus
    simulated_outcome: Optional[SimulationOutcome] = None
    real_outcome: Optional[Mapping[str, Any]] = None
    reason: Optional[str] = None
    snapshot_revision: Any = None


class ExecutionLog:
    """Records are frozen and never edited; a failure appends a new record."""

    def __init__(self, *, audit: Optional[AuditLogWriter] = None, actor: str = "framesync") -> None:
        self._records: List[ExecutionRecord] = []
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self._audit = audit
        self._actor = actor

    def log_execution(self, queued_action: QueuedAction, outcome: StepOutcome) -> ExecutionRecord:
        action = queued_action.action
        revision = outcome.snapshot_revision
        if revision is None and outcome.simulated_outcome is not None:
            revision = outcome.simulated_outcome.snapshot_revision
        with self._lock:
            record = ExecutionRecord(
                sequence=next(self._sequence),
                action_id=queued_action.action_id,
                rule_id=action.rule_id,
                action_type=action.action_type,
                status=outcome.status,
                timestamp=time.time(),
                simulated_outcome=outcome.simulated_outcome,
                real_outcome=outcome.real_outcome,
                reason=outcome.reason,
                snapshot_revision=revision,
            )
            self._records.append(record)
        logger.info(
            "Execution step recorded",
            extra={"action_id": record.action_id, "status": record.status.value, "rule_id": record.rule_id},
        )
        if self._audit is not None:
            self._audit.log(f"execution.{record.status.value}", self._actor, record.to_payload())
        return record

    def get_execution_history(
        self,
        *,
        action_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus | str] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        status_filter = ExecutionStatus(status) if status is not None else None
        with self._lock:
            records = list(self._records)
        if action_id is not None:
            records = [record for record in records if record.action_id == action_id]
        if rule_id is not None:
            records = [record for record in records if record.rule_id == rule_id]
        if status_filter is not None:
            records = [record for record in records if record.status is status_filter]
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def __len__(self) -> int:
        return len(self._records)

    def find_lifecycle_violations(self, records: Optional[Iterable[ExecutionRecord]] = None) -> List[str]:
        return find_lifecycle_violations(self.get_execution_history() if records is None else records)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._records)
        final: Dict[str, ExecutionStatus] = {}
        for record in records:
            if record.status.terminal:
                final[record.action_id] = record.status
        by_status = Counter(status.value for status in final.values())
        executed = by_status.get(ExecutionStatus.EXECUTED.value, 0)
        return {
            "records": len(records),
            "actions": len({record.action_id for record in records}),
            "completed": len(final),
            "by_status": {status.value: by_status.get(status.value, 0) for status in ExecutionStatus if status.terminal},
            "success_rate": round(executed / len(final), 4) if final else None,
        }


def find_lifecycle_violations(records: Iterable[ExecutionRecord]) -> List[str]:
    """Return ids of actions whose history breaks the lifecycle ordering.

    An ``executed`` record must follow exactly one ``authorized`` record, which
    itself must follow a ``simulated`` record for the same action. Each action
    may have at most one terminal record.
    """

    by_action: Dict[str, List[ExecutionRecord]] = {}
    for record in sorted(records, key=lambda item: item.sequence):
        by_action.setdefault(record.action_id, []).append(record)

    violations: List[str] = []
    for action_id, history in by_action.items():
        seen_simulated = False
        authorizations = 0
        terminals = 0
        broken = False
        for record in history:
            if record.status is ExecutionStatus.SIMULATED:
                seen_simulated = True
            elif record.status is ExecutionStatus.AUTHORIZED:
                if not seen_simulated:
                    broken = True
                authorizations += 1
            elif record.status is ExecutionStatus.EXECUTED:
                if authorizations != 1 or not seen_simulated:
                    broken = True
            if record.status.terminal:
                terminals += 1
        if terminals > 1:
            broken = True
        if broken:
            violations.append(action_id)
    return violations


__all__ = ["ExecutionLog", "StepOutcome", "find_lifecycle_violations"]
