"""Match financial snapshots against user rules and emit candidate actions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from framesync.errors import RuleDefinitionError

from .conditions import Condition, MissingFieldError, parse_condition, resolve_field
from .models import Action, ActionType, FinancialSnapshot, to_money

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


def _decimal_param(raw: Mapping[str, Any], key: str, default: Optional[Decimal] = None) -> Decimal:
    if key not in raw:
        if default is None:
            raise RuleDefinitionError(f"Amount template requires '{key}'")
        return default
    try:
        return to_money(raw[key]) if key == "above" else Decimal(str(raw[key]))
    except (ValueError, ArithmeticError):
        raise RuleDefinitionError(f"Amount template '{key}' must be numeric") from None


def _validate_amount_template(raw: Any) -> None:
    if isinstance(raw, Mapping):
        if "percent_of" in raw:
            _decimal_param(raw, "percent")
            if not isinstance(raw["percent_of"], str):
                raise RuleDefinitionError("'percent_of' must be a field path")
        elif "overflow_of" in raw:
            _decimal_param(raw, "above")
            _decimal_param(raw, "percent", _HUNDRED)
            if not isinstance(raw["overflow_of"], str):
                raise RuleDefinitionError("'overflow_of' must be a field path")
        elif not isinstance(raw.get("field"), str):
            raise RuleDefinitionError("Amount template must use 'field', 'percent_of' or 'overflow_of'")
        return
    try:
        to_money(raw)
    except ValueError:
        raise RuleDefinitionError(f"Invalid amount {raw!r}") from None


def resolve_amount(template: Any, snapshot: FinancialSnapshot) -> Decimal:
    """Resolve an amount template into a fixed Decimal for ``snapshot``.

    Raises :class:`MissingFieldError` when a referenced path is absent.
    """

    if not isinstance(template, Mapping):
        return to_money(template)
    if "percent_of" in template:
        base = to_money(resolve_field(snapshot, template["percent_of"]))
        return to_money(base * Decimal(str(template["percent"])) / _HUNDRED)
    if "overflow_of" in template:
        base = to_money(resolve_field(snapshot, template["overflow_of"]))
        above = to_money(template["above"])
        percent = Decimal(str(template.get("percent", _HUNDRED)))
        overflow = max(Decimal("0"), base - above)
        return to_money(overflow * percent / _HUNDRED)
    return to_money(resolve_field(snapshot, template["field"]))


@dataclass(frozen=True)
class ActionTemplate:
    action_type: ActionType
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @classmethod
    def from_mapping(cls, raw: Any) -> "ActionTemplate":
        if not isinstance(raw, Mapping):
            raise RuleDefinitionError("Action template must be an object")
        action_type = ActionType.parse(raw.get("action_type", raw.get("type")))
        if action_type is None:
            raise RuleDefinitionError(f"Unknown action type {raw.get('action_type', raw.get('type'))!r}")
        payload = raw.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise RuleDefinitionError("Action template payload must be an object")
        if "amount" in payload:
            _validate_amount_template(payload["amount"])
        return cls(action_type=action_type, payload=payload)

    def resolve(self, snapshot: FinancialSnapshot, rule: "Rule") -> Action:
        payload = dict(self.payload)
        if "amount" in payload:
            payload["amount"] = resolve_amount(payload["amount"], snapshot)
        return Action(action_type=self.action_type.value, payload=payload, rule_id=rule.id, rule_name=rule.name)


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    conditions: Condition
    actions: Tuple[ActionTemplate, ...]
    enabled: bool = True

    @classmethod
    def from_mapping(cls, raw: Any) -> "Rule":
        if not isinstance(raw, Mapping):
            raise RuleDefinitionError("Rule definition must be an object")
        rule_id = raw.get("id")
        if not isinstance(rule_id, str) or not rule_id.strip():
            raise RuleDefinitionError("Rule requires a non-empty 'id'")
        actions = raw.get("actions")
        if not isinstance(actions, (list, tuple)) or not actions:
            raise RuleDefinitionError(f"Rule '{rule_id}' requires at least one action")
        try:
            conditions = parse_condition(raw.get("conditions"))
            templates = tuple(ActionTemplate.from_mapping(item) for item in actions)
        except RuleDefinitionError as exc:
            raise RuleDefinitionError(f"Rule '{rule_id}': {exc}") from None
        return cls(
            id=rule_id.strip(),
            name=str(raw.get("name") or rule_id).strip(),
            conditions=conditions,
            actions=templates,
            enabled=bool(raw.get("enabled", True)),
        )


def parse_rules(payload: Any) -> List[Rule]:
    if isinstance(payload, Mapping):
        payload = payload.get("rules", [])
    if not isinstance(payload, (list, tuple)):
        raise RuleDefinitionError("Rules must be a list or an object with a 'rules' list")
    rules = [Rule.from_mapping(item) for item in payload]
    seen: set[str] = set()
    for rule in rules:
        if rule.id in seen:
            raise RuleDefinitionError(f"Duplicate rule id '{rule.id}'")
        seen.add(rule.id)
    return rules


def load_rules(path: Path | str) -> List[Rule]:
    """Load rule definitions from a JSON file."""

    rules_path = Path(path)
    try:
        payload = json.loads(rules_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise RuleDefinitionError(f"Rules file {rules_path} does not exist") from None
    except json.JSONDecodeError as exc:
        raise RuleDefinitionError(
            f"Rules file {rules_path} is not valid JSON (line {exc.lineno}, column {exc.colno})"
        ) from None
    rules = parse_rules(payload)
    logger.info("Loaded rules", extra={"path": str(rules_path), "count": len(rules)})
    return rules


class RuleEngine:
    """Pure evaluator: conditions read the snapshot only."""

    def evaluate_rules(self, snapshot: FinancialSnapshot, rules: Iterable[Rule]) -> List[Action]:
        candidates: List[Action] = []
        for rule in rules:
            if not rule.enabled:
                continue
            try:
                if not rule.conditions.evaluate(snapshot):
                    continue
                actions = [template.resolve(snapshot, rule) for template in rule.actions]
            except MissingFieldError as exc:
                logger.warning(
                    "Rule skipped: snapshot has no field %s",
                    exc.path,
                    extra={"rule_id": rule.id, "revision": snapshot.revision},
                )
                continue
            except ValueError as exc:
                logger.warning("Rule skipped: %s", exc, extra={"rule_id": rule.id})
                continue
            logger.info("Rule matched", extra={"rule_id": rule.id, "actions": len(actions)})
            candidates.extend(actions)
        return candidates


def evaluate_rules(snapshot: FinancialSnapshot, rules: Sequence[Rule]) -> List[Action]:
    return RuleEngine().evaluate_rules(snapshot, rules)


__all__ = [
    "ActionTemplate",
    "Rule",
    "RuleEngine",
    "evaluate_rules",
    "load_rules",
    "parse_rules",
    "resolve_amount",
]
