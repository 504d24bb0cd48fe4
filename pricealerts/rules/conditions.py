# -*- coding: utf-8 -*-
"""
Condition tree for alert rules.

A condition is either a Leaf (field, operator, literal) or a Composite
(AND / OR / NOT over child conditions). Both are frozen so a tree loaded at the
start of a sweep cannot change while rules are being evaluated.

Serialized form (stored as JSON on the rule):
    {"field": "priceDropPercent", "operator": ">", "value": 20}
    {"type": "AND", "conditions": [<condition>, ...]}
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple, Union

from pricealerts.errors import ValidationError


class ValueKind(str, Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"


class FieldId(str, Enum):
    """Closed set of resolvable fields."""
    PRICE = "price"
    PRICE_DROP_PERCENT = "priceDropPercent"
    RECOMMENDATION = "recommendation"
    RISK_LEVEL = "riskLevel"
    VOLUME_CHANGE_PERCENT = "volumeChangePercent"
    PLATFORM = "platform"
    PRICE_VS_AVERAGE = "priceVsAverage"
    ARBITRAGE_OPPORTUNITY = "arbitrageOpportunity"

    @property
    def kind(self) -> ValueKind:
        return FIELD_KINDS[self]


FIELD_KINDS: Dict[FieldId, ValueKind] = {
    FieldId.PRICE: ValueKind.NUMERIC,
    FieldId.PRICE_DROP_PERCENT: ValueKind.NUMERIC,
    FieldId.RECOMMENDATION: ValueKind.CATEGORICAL,
    FieldId.RISK_LEVEL: ValueKind.CATEGORICAL,
    FieldId.VOLUME_CHANGE_PERCENT: ValueKind.NUMERIC,
    FieldId.PLATFORM: ValueKind.CATEGORICAL,
    FieldId.PRICE_VS_AVERAGE: ValueKind.NUMERIC,
    FieldId.ARBITRAGE_OPPORTUNITY: ValueKind.NUMERIC,
}


class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "in"

    @property
    def is_ordering(self) -> bool:
        return self in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE)


# Spellings accepted from the authoring UI besides the canonical symbols
OPERATOR_ALIASES = {
    "==": Operator.EQ,
    "<>": Operator.NE,
    "eq": Operator.EQ,
    "ne": Operator.NE,
    "gt": Operator.GT,
    "gte": Operator.GTE,
    "lt": Operator.LT,
    "lte": Operator.LTE,
}


class CompositeKind(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


@dataclass(frozen=True)
class Leaf:
    field: FieldId
    operator: Operator
    value: Any

    def __post_init__(self):
        # `in` literals are kept as frozensets so the tree stays hashable and immutable
        if self.operator == Operator.IN and isinstance(self.value, (list, tuple, set)):
            object.__setattr__(self, "value", frozenset(self.value))


@dataclass(frozen=True)
class Composite:
    kind: CompositeKind
    children: Tuple["Condition", ...]


Condition = Union[Leaf, Composite]


def leaf(field: Union[str, FieldId], operator: Union[str, Operator], value: Any) -> Leaf:
    """Build a leaf from raw strings (raises ValidationError on unknown names)."""
    return Leaf(_parse_field(field), _parse_operator(operator), value)


def all_of(*children: Condition) -> Composite:
    return Composite(CompositeKind.AND, tuple(children))


def any_of(*children: Condition) -> Composite:
    return Composite(CompositeKind.OR, tuple(children))


def negate(child: Condition) -> Composite:
    return Composite(CompositeKind.NOT, (child,))


def _parse_field(raw: Union[str, FieldId]) -> FieldId:
    if isinstance(raw, FieldId):
        return raw
    try:
        return FieldId(raw)
    except ValueError:
        raise ValidationError(f"Unknown field: {raw!r}")


def _parse_operator(raw: Union[str, Operator]) -> Operator:
    if isinstance(raw, Operator):
        return raw
    if isinstance(raw, str) and raw.lower() in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[raw.lower()]
    try:
        return Operator(raw)
    except ValueError:
        raise ValidationError(f"Unknown operator: {raw!r}")


def validate_condition(condition: Condition, path: str = "root") -> None:
    """
    Strict authoring-time validation of a condition tree.

    Checks field and operator membership, composite arity (AND/OR >= 1 child,
    NOT exactly 1), ordering operators on numeric fields only, and `in` literals
    being collections.

    Raises:
        ValidationError: with the path of the offending node
    """
    if isinstance(condition, Leaf):
        if not isinstance(condition.field, FieldId):
            raise ValidationError(f"{path}: unknown field {condition.field!r}")
        if not isinstance(condition.operator, Operator):
            raise ValidationError(f"{path}: unknown operator {condition.operator!r}")

        if condition.operator == Operator.IN:
            if not isinstance(condition.value, frozenset):
                raise ValidationError(f"{path}: 'in' requires a set of values")
            if not condition.value:
                raise ValidationError(f"{path}: 'in' requires at least one value")
            return

        if condition.operator.is_ordering:
            if condition.field.kind != ValueKind.NUMERIC:
                raise ValidationError(
                    f"{path}: operator {condition.operator.value} needs a numeric field, "
                    f"{condition.field.value} is {condition.field.kind.value}"
                )
            if not _is_number(condition.value):
                raise ValidationError(f"{path}: operator {condition.operator.value} needs a numeric value")
        return

    if isinstance(condition, Composite):
        if not isinstance(condition.kind, CompositeKind):
            raise ValidationError(f"{path}: unknown composite kind {condition.kind!r}")
        count = len(condition.children)
        if condition.kind == CompositeKind.NOT and count != 1:
            raise ValidationError(f"{path}: NOT takes exactly 1 condition, got {count}")
        if condition.kind in (CompositeKind.AND, CompositeKind.OR) and count < 1:
            raise ValidationError(f"{path}: {condition.kind.value} needs at least 1 condition")
        for i, child in enumerate(condition.children):
            validate_condition(child, f"{path}.{condition.kind.value}[{i}]")
        return

    raise ValidationError(f"{path}: not a condition: {type(condition).__name__}")


def condition_from_dict(data: Dict[str, Any], validate: bool = True) -> Condition:
    """Parse the JSON form of a condition tree."""
    condition = _from_dict(data)
    if validate:
        validate_condition(condition)
    return condition


def _from_dict(data: Any) -> Condition:
    if not isinstance(data, dict):
        raise ValidationError(f"Condition must be an object, got {type(data).__name__}")

    if "type" in data:
        try:
            kind = CompositeKind(str(data["type"]).upper())
        except ValueError:
            raise ValidationError(f"Unknown composite type: {data['type']!r}")
        children = data.get("conditions")
        if not isinstance(children, list):
            raise ValidationError(f"{kind.value} requires a 'conditions' list")
        return Composite(kind, tuple(_from_dict(child) for child in children))

    missing = {"field", "operator", "value"} - set(data)
    if missing:
        raise ValidationError(f"Leaf condition missing keys: {sorted(missing)}")
    return leaf(data["field"], data["operator"], data["value"])


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    """Inverse of condition_from_dict (JSON-safe)."""
    if isinstance(condition, Leaf):
        value = condition.value
        if isinstance(value, frozenset):
            value = sorted(value, key=str)
        return {
            "field": condition.field.value,
            "operator": condition.operator.value,
            "value": value,
        }
    return {
        "type": condition.kind.value,
        "conditions": [condition_to_dict(child) for child in condition.children],
    }


def iter_leaves(condition: Condition):
    """Yield every leaf of the tree, depth first."""
    if isinstance(condition, Leaf):
        yield condition
        return
    for child in condition.children:
        yield from iter_leaves(child)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
