"""Record of rule firings, so one snapshot revision or event fires a rule once."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


def trigger_key(rule_id: str, revision: Any, event: Optional[Mapping[str, Any]] = None) -> str:
    """Identify one firing: the rule, the snapshot revision and the triggering event."""

    digest = "-"
    if event:
        canonical = json.dumps(event, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{rule_id}@{revision}#{digest}"


@dataclass(frozen=True)
class TriggerRecord:
    key: str
    rule_id: str
    rule_name: Optional[str]
    revision: Any
    action_ids: tuple
    triggered_at: datetime
    source: str = "evaluation"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "revision": self.revision,
            "action_ids": list(self.action_ids),
            "triggered_at": self.triggered_at.isoformat(),
            "source": self.source,
        }


class TriggerHistory:
    """Bounded, insertion-ordered history; the oldest firings are evicted first."""

    def __init__(self, *, max_entries: int = 500) -> None:
        if max_entries < 1:
            raise ValueError("Trigger history must hold at least one entry.")
        self._max_entries = max_entries
        self._records: "OrderedDict[str, TriggerRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def has_fired(self, key: str) -> bool:
        with self._lock:
            return key in self._records

    def record(self, record: TriggerRecord) -> bool:
        """Store ``record``; return ``False`` when its key already fired."""

        with self._lock:
            if record.key in self._records:
                return False
            self._records[record.key] = record
            while len(self._records) > self._max_entries:
                self._records.popitem(last=False)
        logger.info(
            "Rule triggered",
            extra={"rule_id": record.rule_id, "revision": record.revision, "actions": len(record.action_ids)},
        )
        return True

    def recent(self, hours: float = 24, *, now: Optional[datetime] = None) -> List[TriggerRecord]:
        """Firings within the last ``hours``, newest first."""

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=hours)
        with self._lock:
            indexed = [
                (record.triggered_at, index, record)
                for index, record in enumerate(self._records.values())
                if record.triggered_at > cutoff
            ]
        indexed.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in indexed]

    def statistics(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)
        with self._lock:
            records = list(self._records.values())
        return {
            "total": len(records),
            "today": sum(1 for record in records if record.triggered_at >= start_of_day),
            "this_week": sum(1 for record in records if record.triggered_at >= week_ago),
            "by_rule": dict(Counter(record.rule_id for record in records)),
            "by_source": dict(Counter(record.source for record in records)),
        }

    def clear(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
        return removed


__all__ = ["TriggerHistory", "TriggerRecord", "trigger_key"]
