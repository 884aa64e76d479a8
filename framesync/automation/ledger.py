"""Business formulas for balance and goal mutations.

Simulation projects with these functions and every committer that applies a
real mutation must call the same ones, so a projected outcome and the
committed outcome can only differ when the underlying state differs.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, Tuple

from .models import CENT

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def can_cover(source_balance: Decimal, amount: Decimal) -> bool:
    """Insufficient-funds check: the source must hold at least ``amount``."""

    return source_balance >= amount


def transfer_balances(
    source_balance: Decimal, destination_balance: Decimal, amount: Decimal
) -> Tuple[Decimal, Decimal]:
    return (
        (source_balance - amount).quantize(CENT),
        (destination_balance + amount).quantize(CENT),
    )


def adjusted_goal_amount(current_amount: Decimal, delta: Decimal) -> Decimal:
    return (current_amount + delta).quantize(CENT)


def goal_progress(current_amount: Decimal, target_amount: Decimal) -> Decimal:
    """Percentage of the target reached, clamped to ``[0, 100]``."""

    if target_amount <= 0:
        return HUNDRED.quantize(CENT) if current_amount > 0 else ZERO
    progress = (current_amount / target_amount) * HUNDRED
    progress = min(HUNDRED, max(Decimal(0), progress))
    return progress.quantize(CENT, rounding=ROUND_HALF_EVEN)


def goal_remaining(current_amount: Decimal, target_amount: Decimal) -> Decimal:
    return max(ZERO, (target_amount - current_amount).quantize(CENT))


def goal_projection(current_amount: Decimal, target_amount: Decimal) -> Dict[str, Decimal]:
    return {
        "current_amount": current_amount.quantize(CENT),
        "target_amount": target_amount.quantize(CENT),
        "progress": goal_progress(current_amount, target_amount),
        "remaining": goal_remaining(current_amount, target_amount),
    }


__all__ = [
    "adjusted_goal_amount",
    "can_cover",
    "goal_progress",
    "goal_projection",
    "goal_remaining",
    "transfer_balances",
]
