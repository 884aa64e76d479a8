"""Domain types shared by the rule engine, simulator and execution pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Return ``value`` as a Decimal rounded to cents.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.10")`` rather than
    its binary expansion. Booleans and non-finite values are rejected.
    """

    if isinstance(value, bool):
        raise ValueError(f"Invalid monetary amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Invalid monetary amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class ActionType(str, Enum):
    TRANSFER = "transfer"
    ADJUST_GOAL = "adjust_goal"
    NOTIFICATION = "notification"

    @classmethod
    def parse(cls, value: Any) -> Optional["ActionType"]:
        """Return the member for ``value`` or ``None`` when it is unknown."""

        if isinstance(value, ActionType):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


def ensure_exhaustive(table: Mapping[ActionType, Any], what: str) -> None:
    """Fail at import time when a handler table does not cover every action type."""

    missing = [member.value for member in ActionType if member not in table]
    if missing:
        raise RuntimeError(f"{what} has no handler for action types: {', '.join(missing)}")


@dataclass(frozen=True)
class Action:
    """A concrete action produced by rule matching or submitted directly.

    ``action_type`` keeps the raw value so unknown types survive until the
    permission gate and simulator can reject them explicitly.
    """

    action_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None

    def __post_init__(self) -> None:
        action_type = self.action_type.value if isinstance(self.action_type, ActionType) else self.action_type
        object.__setattr__(self, "action_type", str(action_type or ""))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload or {})))

    @property
    def kind(self) -> Optional[ActionType]:
        return ActionType.parse(self.action_type)

    @property
    def amount(self) -> Optional[Decimal]:
        raw = self.payload.get("amount")
        if raw is None:
            return None
        try:
            return to_money(raw)
        except ValueError:
            return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type,
            "payload": _jsonable(dict(self.payload)),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Action":
        if not isinstance(data, Mapping):
            raise TypeError("Action definition must be an object")
        action_type = data.get("action_type", data.get("type"))
        payload = data.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise TypeError("Action payload must be an object")
        return cls(
            action_type=str(action_type or ""),
            payload=payload,
            rule_id=data.get("rule_id"),
            rule_name=data.get("rule_name"),
        )


@dataclass(frozen=True)
class QueuedAction:
    """An action accepted by the dispatcher under a fresh identifier."""

    action: Action
    action_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.action.to_payload()
        payload["action_id"] = self.action_id
        payload["enqueued_at"] = self.enqueued_at
        return payload


@dataclass(frozen=True)
class Account:
    id: str
    balance: Decimal
    name: str = ""
    kind: str = "depository"

    def __post_init__(self) -> None:
        object.__setattr__(self, "balance", to_money(self.balance))


@dataclass(frozen=True)
class Goal:
    id: str
    current_amount: Decimal
    target_amount: Decimal
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "current_amount", to_money(self.current_amount))
        object.__setattr__(self, "target_amount", to_money(self.target_amount))

    @property
    def progress(self) -> Decimal:
        from .ledger import goal_progress

        return goal_progress(self.current_amount, self.target_amount)

    @property
    def remaining(self) -> Decimal:
        from .ledger import goal_remaining

        return goal_remaining(self.current_amount, self.target_amount)


@dataclass(frozen=True)
class FinancialSnapshot:
    """Immutable point-in-time view of accounts and goals.

    ``event`` optionally carries the transaction or sync event that triggered
    the evaluation so rule conditions can reference ``event.*`` fields.
    """

    revision: Any
    accounts: Mapping[str, Account] = field(default_factory=dict)
    goals: Mapping[str, Goal] = field(default_factory=dict)
    event: Optional[Mapping[str, Any]] = None
    taken_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "accounts", MappingProxyType(dict(self.accounts)))
        object.__setattr__(self, "goals", MappingProxyType(dict(self.goals)))
        if self.event is not None:
            object.__setattr__(self, "event", MappingProxyType(dict(self.event)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FinancialSnapshot":
        accounts: Dict[str, Account] = {}
        for account_id, raw in (data.get("accounts") or {}).items():
            if isinstance(raw, Mapping):
                accounts[str(account_id)] = Account(
                    id=str(account_id),
                    balance=raw.get("balance", 0),
                    name=str(raw.get("name") or account_id),
                    kind=str(raw.get("kind") or "depository"),
                )
            else:
                accounts[str(account_id)] = Account(id=str(account_id), balance=raw, name=str(account_id))
        goals: Dict[str, Goal] = {}
        for goal_id, raw in (data.get("goals") or {}).items():
            goals[str(goal_id)] = Goal(
                id=str(goal_id),
                current_amount=raw.get("current_amount", 0),
                target_amount=raw.get("target_amount", 0),
                name=str(raw.get("name") or goal_id),
            )
        return cls(
            revision=data.get("revision", 0),
            accounts=accounts,
            goals=goals,
            event=data.get("event"),
        )

    def with_event(self, event: Optional[Mapping[str, Any]]) -> "FinancialSnapshot":
        return FinancialSnapshot(
            revision=self.revision,
            accounts=self.accounts,
            goals=self.goals,
            event=event,
            taken_at=self.taken_at,
        )

    def balance(self, account_id: str) -> Decimal:
        return self.accounts[account_id].balance

    @property
    def total_balance(self) -> Decimal:
        return sum((account.balance for account in self.accounts.values()), Decimal("0.00"))

    def resolve(self, path: str) -> Any:
        """Return the value at a dotted ``path``; raise ``KeyError`` when absent."""

        parts = [part for part in str(path).split(".") if part]
        if not parts:
            raise KeyError(path)
        head, rest = parts[0], parts[1:]
        if head == "total_balance" and not rest:
            return self.total_balance
        if head == "accounts" and len(rest) == 2:
            account = self.accounts.get(rest[0])
            if account is None or rest[1] not in {"balance", "name", "kind"}:
                raise KeyError(path)
            return getattr(account, rest[1])
        if head == "goals" and len(rest) == 2:
            goal = self.goals.get(rest[0])
            if goal is None or rest[1] not in {"current_amount", "target_amount", "progress", "remaining", "name"}:
                raise KeyError(path)
            return getattr(goal, rest[1])
        if head == "event" and rest:
            value: Any = self.event
            for part in rest:
                if not isinstance(value, Mapping) or part not in value:
                    raise KeyError(path)
                value = value[part]
            return value
        raise KeyError(path)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "revision": _jsonable(self.revision),
            "accounts": {
                key: {"balance": str(account.balance), "name": account.name, "kind": account.kind}
                for key, account in self.accounts.items()
            },
            "goals": {
                key: {
                    "current_amount": str(goal.current_amount),
                    "target_amount": str(goal.target_amount),
                    "name": goal.name,
                }
                for key, goal in self.goals.items()
            },
            "event": _jsonable(dict(self.event)) if self.event is not None else None,
            "taken_at": self.taken_at,
        }


@dataclass(frozen=True)
class SimulationOutcome:
    success: bool
    action_type: str
    snapshot_revision: Any
    projected_balances: Mapping[str, Decimal] = field(default_factory=dict)
    projected_goals: Mapping[str, Mapping[str, Decimal]] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action_type": self.action_type,
            "snapshot_revision": _jsonable(self.snapshot_revision),
            "projected_balances": _jsonable(dict(self.projected_balances)),
            "projected_goals": _jsonable(dict(self.projected_goals)),
            "reason": self.reason,
        }


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SIMULATED = "simulated"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXECUTED = "executed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.DENIED, ExecutionStatus.EXECUTED, ExecutionStatus.FAILED)


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only audit entry for one step of an action's pipeline traversal."""

    sequence: int
    action_id: str
    rule_id: Optional[str]
    action_type: str
    status: ExecutionStatus
    timestamp: float
    simulated_outcome: Optional[SimulationOutcome] = None
    real_outcome: Optional[Mapping[str, Any]] = None
    reason: Optional[str] = None
    snapshot_revision: Any = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "action_id": self.action_id,
            "rule_id": self.rule_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "simulated_outcome": self.simulated_outcome.to_payload() if self.simulated_outcome else None,
            "real_outcome": _jsonable(dict(self.real_outcome)) if self.real_outcome is not None else None,
            "reason": self.reason,
            "snapshot_revision": _jsonable(self.snapshot_revision),
        }


PayloadValidator = Callable[[Mapping[str, Any]], Optional[str]]


def _validate_transfer(payload: Mapping[str, Any]) -> Optional[str]:
    source = payload.get("source_account")
    destination = payload.get("destination_account")
    if not isinstance(source, str) or not source:
        return "Transfer requires a source_account"
    if not isinstance(destination, str) or not destination:
        return "Transfer requires a destination_account"
    if source == destination:
        return "Transfer source and destination must differ"
    try:
        amount = to_money(payload.get("amount"))
    except ValueError:
        return "Transfer requires a numeric amount"
    if amount <= 0:
        return "Transfer amount must be greater than zero"
    return None


def _validate_goal_adjustment(payload: Mapping[str, Any]) -> Optional[str]:
    goal_id = payload.get("goal_id")
    if not isinstance(goal_id, str) or not goal_id:
        return "Goal adjustment requires a goal_id"
    try:
        to_money(payload.get("amount"))
    except ValueError:
        return "Goal adjustment requires a numeric amount"
    return None


def _validate_notification(payload: Mapping[str, Any]) -> Optional[str]:
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        return "Notification requires a message"
    if len(message) > 500:
        return "Notification message must be at most 500 characters"
    return None


_PAYLOAD_VALIDATORS: Dict[ActionType, PayloadValidator] = {
    ActionType.TRANSFER: _validate_transfer,
    ActionType.ADJUST_GOAL: _validate_goal_adjustment,
    ActionType.NOTIFICATION: _validate_notification,
}
ensure_exhaustive(_PAYLOAD_VALIDATORS, "payload validation")


def validate_action_payload(action: Action) -> Optional[str]:
    """Return a human-readable problem with ``action``'s payload, or ``None``."""

    kind = action.kind
    if kind is None:
        return f"Unknown action type '{action.action_type}'"
    return _PAYLOAD_VALIDATORS[kind](action.payload)


__all__ = [
    "Account",
    "Action",
    "ActionType",
    "ExecutionRecord",
    "ExecutionStatus",
    "FinancialSnapshot",
    "Goal",
    "QueuedAction",
    "SimulationOutcome",
    "ensure_exhaustive",
    "to_money",
    "validate_action_payload",
]
