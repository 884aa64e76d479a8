"""Side-effect-free projection of an action against a financial snapshot."""

from __future__ import annotations

import logging
from typing import Callable, Dict

from framesync.errors import UnsupportedSimulationError

from . import ledger
from .models import (
    Action,
    ActionType,
    FinancialSnapshot,
    SimulationOutcome,
    ensure_exhaustive,
    to_money,
    validate_action_payload,
)

logger = logging.getLogger(__name__)

Simulator = Callable[[Action, FinancialSnapshot], SimulationOutcome]


def _failed(action: Action, snapshot: FinancialSnapshot, reason: str) -> SimulationOutcome:
    return SimulationOutcome(
        success=False,
        action_type=action.action_type,
        snapshot_revision=snapshot.revision,
        reason=reason,
    )


def _simulate_transfer(action: Action, snapshot: FinancialSnapshot) -> SimulationOutcome:
    source_id = action.payload["source_account"]
    destination_id = action.payload["destination_account"]
    amount = to_money(action.payload["amount"])
    source = snapshot.accounts.get(source_id)
    destination = snapshot.accounts.get(destination_id)
    if source is None:
        return _failed(action, snapshot, f"Unknown source account '{source_id}'")
    if destination is None:
        return _failed(action, snapshot, f"Unknown destination account '{destination_id}'")
    source_after, destination_after = ledger.transfer_balances(source.balance, destination.balance, amount)
    success = ledger.can_cover(source.balance, amount)
    return SimulationOutcome(
        success=success,
        action_type=action.action_type,
        snapshot_revision=snapshot.revision,
        projected_balances={source_id: source_after, destination_id: destination_after},
        reason=None if success else (
            f"Insufficient funds in '{source_id}': balance {source.balance}, transfer {amount}"
        ),
    )


def _simulate_goal_adjustment(action: Action, snapshot: FinancialSnapshot) -> SimulationOutcome:
    goal_id = action.payload["goal_id"]
    goal = snapshot.goals.get(goal_id)
    if goal is None:
        return _failed(action, snapshot, f"Unknown goal '{goal_id}'")
    new_amount = ledger.adjusted_goal_amount(goal.current_amount, to_money(action.payload["amount"]))
    projection = ledger.goal_projection(new_amount, goal.target_amount)
    success = new_amount >= 0
    return SimulationOutcome(
        success=success,
        action_type=action.action_type,
        snapshot_revision=snapshot.revision,
        projected_goals={goal_id: projection},
        reason=None if success else f"Goal '{goal_id}' would drop below zero",
    )


def _simulate_notification(action: Action, snapshot: FinancialSnapshot) -> SimulationOutcome:
    return SimulationOutcome(
        success=True,
        action_type=action.action_type,
        snapshot_revision=snapshot.revision,
    )


_SIMULATORS: Dict[ActionType, Simulator] = {
    ActionType.TRANSFER: _simulate_transfer,
    ActionType.ADJUST_GOAL: _simulate_goal_adjustment,
    ActionType.NOTIFICATION: _simulate_notification,
}
ensure_exhaustive(_SIMULATORS, "simulation")


class SimulationService:
    """Compute hypothetical outcomes without touching real state."""

    def simulate(self, action: Action, snapshot: FinancialSnapshot) -> SimulationOutcome:
        kind = action.kind
        if kind is None:
            raise UnsupportedSimulationError(action.action_type)
        problem = validate_action_payload(action)
        if problem is not None:
            logger.info("Action payload rejected during simulation", extra={"action_type": kind.value, "reason": problem})
            return _failed(action, snapshot, problem)
        outcome = _SIMULATORS[kind](action, snapshot)
        logger.debug(
            "Simulated action",
            extra={"action_type": kind.value, "success": outcome.success, "revision": snapshot.revision},
        )
        return outcome


__all__ = ["SimulationService"]
