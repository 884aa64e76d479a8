"""Interfaces to the external collaborators and an in-memory sandbox ledger."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from . import ledger
from .models import Account, Action, ActionType, FinancialSnapshot, Goal, to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserContext:
    """Identity and capability grants of the user on whose behalf actions run."""

    user_id: Optional[str]
    authenticated: bool = True
    grants: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "grants", frozenset(self.grants))

    def has(self, grant: str) -> bool:
        return grant in self.grants


class SnapshotProvider(abc.ABC):
    """Account/transaction provider supplying read-only financial state."""

    @abc.abstractmethod
    async def fetch_snapshot(self) -> FinancialSnapshot:
        """Return the current immutable snapshot."""

    @abc.abstractmethod
    async def current_revision(self) -> Any:
        """Return the revision token of the current external state."""


class PermissionProvider(abc.ABC):
    """Identity provider exposing the current user's grants."""

    @abc.abstractmethod
    def current_user(self) -> Optional[UserContext]:
        """Return the current user, or ``None`` when nobody is signed in."""


class ActionCommitter(abc.ABC):
    """External API applying the irreversible real-world effect of an action."""

    @abc.abstractmethod
    async def commit(self, action: Action, *, credential: Optional[Any] = None) -> Mapping[str, Any]:
        """Apply ``action`` and return the real outcome.

        Outcomes may carry ``balances`` (account id to balance) and ``goals``
        (goal id to projection) so they can be compared with the simulation.
        """


class StaticPermissionProvider(PermissionProvider):
    def __init__(self, user: Optional[UserContext]) -> None:
        self._user = user

    def current_user(self) -> Optional[UserContext]:
        return self._user

    def set_user(self, user: Optional[UserContext]) -> None:
        self._user = user


class InMemoryAccountBook(SnapshotProvider, ActionCommitter):
    """Sandbox ledger acting as both snapshot provider and committer.

    Every commit and every external change bumps the revision.
    """

    def __init__(
        self,
        accounts: Optional[Mapping[str, Any]] = None,
        goals: Optional[Mapping[str, Any]] = None,
        *,
        revision: int = 0,
        require_credential: bool = False,
    ) -> None:
        self._balances: Dict[str, Decimal] = {}
        self._account_meta: Dict[str, Dict[str, str]] = {}
        for account_id, raw in (accounts or {}).items():
            if isinstance(raw, Account):
                self._balances[account_id] = raw.balance
                self._account_meta[account_id] = {"name": raw.name, "kind": raw.kind}
            elif isinstance(raw, Mapping):
                self._balances[account_id] = to_money(raw.get("balance", 0))
                self._account_meta[account_id] = {
                    "name": str(raw.get("name") or account_id),
                    "kind": str(raw.get("kind") or "depository"),
                }
            else:
                self._balances[account_id] = to_money(raw)
                self._account_meta[account_id] = {"name": account_id, "kind": "depository"}
        self._goals: Dict[str, Goal] = {}
        for goal_id, raw in (goals or {}).items():
            if isinstance(raw, Goal):
                self._goals[goal_id] = raw
            else:
                self._goals[goal_id] = Goal(
                    id=goal_id,
                    current_amount=raw.get("current_amount", 0),
                    target_amount=raw.get("target_amount", 0),
                    name=str(raw.get("name") or goal_id),
                )
        self._revision = int(revision)
        self._require_credential = require_credential
        self.commits: List[Action] = []
        self.notifications: List[Mapping[str, Any]] = []

    @property
    def revision(self) -> int:
        return self._revision

    def balances(self) -> Dict[str, Decimal]:
        return dict(self._balances)

    def goal(self, goal_id: str) -> Goal:
        return self._goals[goal_id]

    async def fetch_snapshot(self) -> FinancialSnapshot:
        accounts = {
            account_id: Account(
                id=account_id,
                balance=balance,
                name=self._account_meta[account_id]["name"],
                kind=self._account_meta[account_id]["kind"],
            )
            for account_id, balance in self._balances.items()
        }
        return FinancialSnapshot(revision=self._revision, accounts=accounts, goals=dict(self._goals))

    async def current_revision(self) -> int:
        return self._revision

    def apply_external_change(self, account_id: str, delta: Any) -> None:
        """Record a balance change made outside the pipeline (e.g. a posted transaction)."""

        self._balances[account_id] = (self._balances.get(account_id, Decimal("0.00")) + to_money(delta))
        self._account_meta.setdefault(account_id, {"name": account_id, "kind": "depository"})
        self._revision += 1

    async def commit(self, action: Action, *, credential: Optional[Any] = None) -> Mapping[str, Any]:
        if self._require_credential and not credential:
            raise PermissionError("Commit credential missing")
        kind = action.kind
        if kind is ActionType.TRANSFER:
            outcome = self._commit_transfer(action)
        elif kind is ActionType.ADJUST_GOAL:
            outcome = self._commit_goal_adjustment(action)
        elif kind is ActionType.NOTIFICATION:
            outcome = self._commit_notification(action)
        else:
            raise ValueError(f"Unsupported action type '{action.action_type}'")
        self.commits.append(action)
        self._revision += 1
        outcome["revision"] = self._revision
        logger.info("Sandbox commit applied", extra={"action_type": action.action_type, "revision": self._revision})
        return outcome

    def _commit_transfer(self, action: Action) -> Dict[str, Any]:
        source_id = action.payload["source_account"]
        destination_id = action.payload["destination_account"]
        amount = to_money(action.payload["amount"])
        if source_id not in self._balances or destination_id not in self._balances:
            raise KeyError("Unknown account in transfer")
        if not ledger.can_cover(self._balances[source_id], amount):
            raise ValueError(f"Insufficient funds in '{source_id}'")
        source_after, destination_after = ledger.transfer_balances(
            self._balances[source_id], self._balances[destination_id], amount
        )
        self._balances[source_id] = source_after
        self._balances[destination_id] = destination_after
        return {"balances": {source_id: source_after, destination_id: destination_after}}

    def _commit_goal_adjustment(self, action: Action) -> Dict[str, Any]:
        goal_id = action.payload["goal_id"]
        goal = self._goals[goal_id]
        new_amount = ledger.adjusted_goal_amount(goal.current_amount, to_money(action.payload["amount"]))
        if new_amount < 0:
            raise ValueError(f"Goal '{goal_id}' cannot drop below zero")
        self._goals[goal_id] = Goal(
            id=goal.id, current_amount=new_amount, target_amount=goal.target_amount, name=goal.name
        )
        return {"goals": {goal_id: ledger.goal_projection(new_amount, goal.target_amount)}}

    def _commit_notification(self, action: Action) -> Dict[str, Any]:
        message = {"message": action.payload["message"], "channel": action.payload.get("channel", "in_app")}
        self.notifications.append(message)
        return {"delivered": True, "channel": message["channel"]}


def grants(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(str(value).strip() for value in values if str(value).strip())


__all__ = [
    "ActionCommitter",
    "InMemoryAccountBook",
    "PermissionProvider",
    "SnapshotProvider",
    "StaticPermissionProvider",
    "UserContext",
    "grants",
]
