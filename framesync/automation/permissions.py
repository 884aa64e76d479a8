"""Authorization gate consulted before any action may touch a real account."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from framesync.errors import PermissionDeniedError
from framesync.vault import SecureVault

from .collaborators import PermissionProvider
from .models import Action, ActionType, ensure_exhaustive, to_money

logger = logging.getLogger(__name__)

HIGH_VALUE_GRANT = "transfers:high_value"
DEFAULT_HIGH_VALUE_THRESHOLD = Decimal("1000.00")

REQUIRED_GRANTS: Dict[ActionType, str] = {
    ActionType.TRANSFER: "transfers:execute",
    ActionType.ADJUST_GOAL: "goals:modify",
    ActionType.NOTIFICATION: "notifications:send",
}
ensure_exhaustive(REQUIRED_GRANTS, "permission grants")

HIGH_RISK_ACTIONS: FrozenSet[ActionType] = frozenset({ActionType.TRANSFER, ActionType.ADJUST_GOAL})


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: Optional[str] = None
    required: Tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "required": list(self.required)}


def _optional_money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return to_money(value)
    except ValueError:
        return None


class PermissionEnforcer:
    """Stateless check of (user grants, action type, amount) to a decision."""

    def __init__(
        self,
        provider: PermissionProvider,
        *,
        high_value_threshold: Decimal | float | str = DEFAULT_HIGH_VALUE_THRESHOLD,
        vault: Optional[SecureVault] = None,
        require_unlocked_vault_for_high_risk: bool = False,
    ) -> None:
        self._provider = provider
        self._threshold = to_money(high_value_threshold)
        self._vault = vault
        self._require_unlocked_vault = require_unlocked_vault_for_high_risk

    @property
    def high_value_threshold(self) -> Decimal:
        return self._threshold

    def can_execute_action(self, action_type: Any, *, amount: Any = None) -> PermissionDecision:
        """Return a decision; never raises."""

        try:
            return self._decide(action_type, amount)
        except Exception as exc:
            logger.error("Permission check failed", extra={"error_type": type(exc).__name__})
            return PermissionDecision(allowed=False, reason="Permission check failed")

    def authorize(self, action: Action) -> PermissionDecision:
        return self.can_execute_action(action.action_type, amount=action.payload.get("amount"))

    def require(self, action: Action) -> None:
        decision = self.authorize(action)
        if not decision.allowed:
            raise PermissionDeniedError(decision.reason or "Permission denied")

    def _decide(self, action_type: Any, amount: Any) -> PermissionDecision:
        kind = ActionType.parse(action_type)
        if kind is None:
            return PermissionDecision(allowed=False, reason=f"Unknown action type '{action_type}'")
        required = [REQUIRED_GRANTS[kind]]
        value = _optional_money(amount)
        if kind is ActionType.TRANSFER and value is not None and value > self._threshold:
            required.append(HIGH_VALUE_GRANT)

        user = self._provider.current_user()
        if user is None or not user.authenticated:
            return PermissionDecision(allowed=False, reason="User is not authenticated", required=tuple(required))

        missing = [grant for grant in required if not user.has(grant)]
        if missing:
            return PermissionDecision(
                allowed=False,
                reason=f"Missing permission: {', '.join(missing)}",
                required=tuple(required),
            )
        if kind in HIGH_RISK_ACTIONS and self._require_unlocked_vault:
            if self._vault is None or not self._vault.is_unlocked():
                return PermissionDecision(
                    allowed=False,
                    reason="Vault must be unlocked for high-risk actions",
                    required=tuple(required),
                )
        return PermissionDecision(allowed=True, required=tuple(required))


__all__ = [
    "DEFAULT_HIGH_VALUE_THRESHOLD",
    "HIGH_RISK_ACTIONS",
    "HIGH_VALUE_GRANT",
    "PermissionDecision",
    "PermissionEnforcer",
    "REQUIRED_GRANTS",
]
