"""Predicate trees evaluated against a :class:`FinancialSnapshot`.

Grammar (JSON-compatible)::

    {"field": "accounts.checking.balance", "op": ">", "value": 5000}
    {"field": "total_balance", "op": ">=", "value": {"field": "goals.car.target_amount"}}
    {"all": [...]}   {"any": [...]}   {"not": {...}}
    [...]            # shorthand for {"all": [...]}
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Tuple

from framesync.errors import RuleDefinitionError

from .models import FinancialSnapshot


class MissingFieldError(KeyError):
    """A condition or template referenced a path absent from the snapshot."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(path)


def resolve_field(snapshot: FinancialSnapshot, path: str) -> Any:
    try:
        return snapshot.resolve(path)
    except KeyError:
        raise MissingFieldError(path) from None


def _as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def _ordering(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(left: Any, right: Any) -> bool:
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is not None and right_number is not None:
            return compare(left_number, right_number)
        if isinstance(left, str) and isinstance(right, str):
            return compare(left, right)
        return False

    return check


def _equality(left: Any, right: Any) -> bool:
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return left == right


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return isinstance(right, str) and right.lower() in left.lower()
    if isinstance(left, (list, tuple)):
        return right in left
    return False


def _member_of(left: Any, right: Any) -> bool:
    if not isinstance(right, (list, tuple)):
        return False
    return any(_equality(left, item) for item in right)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": _ordering(operator.gt),
    ">=": _ordering(operator.ge),
    "<": _ordering(operator.lt),
    "<=": _ordering(operator.le),
    "==": _equality,
    "!=": lambda left, right: not _equality(left, right),
    "contains": _contains,
    "in": _member_of,
}


class Condition:
    def evaluate(self, snapshot: FinancialSnapshot) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class Comparison(Condition):
    field: str
    op: str
    value: Any = None
    value_field: str | None = None

    def evaluate(self, snapshot: FinancialSnapshot) -> bool:
        left = resolve_field(snapshot, self.field)
        right = resolve_field(snapshot, self.value_field) if self.value_field else self.value
        return OPERATORS[self.op](left, right)


@dataclass(frozen=True)
class AllOf(Condition):
    children: Tuple[Condition, ...]

    def evaluate(self, snapshot: FinancialSnapshot) -> bool:
        return all(child.evaluate(snapshot) for child in self.children)


@dataclass(frozen=True)
class AnyOf(Condition):
    children: Tuple[Condition, ...]

    def evaluate(self, snapshot: FinancialSnapshot) -> bool:
        return any(child.evaluate(snapshot) for child in self.children)


@dataclass(frozen=True)
class Not(Condition):
    child: Condition

    def evaluate(self, snapshot: FinancialSnapshot) -> bool:
        return not self.child.evaluate(snapshot)


def parse_condition(raw: Any) -> Condition:
    """Compile a JSON condition tree, raising :class:`RuleDefinitionError` when malformed."""

    if raw is None:
        return AllOf(())
    if isinstance(raw, (list, tuple)):
        return AllOf(tuple(parse_condition(item) for item in raw))
    if not isinstance(raw, Mapping):
        raise RuleDefinitionError(f"Condition must be an object or a list, got {type(raw).__name__}")
    if "all" in raw or "any" in raw:
        key = "all" if "all" in raw else "any"
        children = raw[key]
        if not isinstance(children, (list, tuple)):
            raise RuleDefinitionError(f"'{key}' expects a list of conditions")
        compiled = tuple(parse_condition(item) for item in children)
        return AllOf(compiled) if key == "all" else AnyOf(compiled)
    if "not" in raw:
        return Not(parse_condition(raw["not"]))
    field = raw.get("field")
    op = raw.get("op")
    if not isinstance(field, str) or not field:
        raise RuleDefinitionError("Comparison requires a 'field' path")
    if op not in OPERATORS:
        raise RuleDefinitionError(f"Unsupported operator {op!r}; expected one of {', '.join(OPERATORS)}")
    value = raw.get("value")
    if isinstance(value, Mapping):
        ref = value.get("field")
        if not isinstance(ref, str) or not ref:
            raise RuleDefinitionError("Comparison value objects must reference a 'field' path")
        return Comparison(field=field, op=op, value_field=ref)
    if op == "in" and not isinstance(value, (list, tuple)):
        raise RuleDefinitionError("Operator 'in' expects a list value")
    if isinstance(value, list):
        value = tuple(value)
    return Comparison(field=field, op=op, value=value)


__all__ = [
    "AllOf",
    "AnyOf",
    "Comparison",
    "Condition",
    "MissingFieldError",
    "Not",
    "OPERATORS",
    "parse_condition",
    "resolve_field",
]
