# -*- coding: utf-8 -*-
"""
Condition evaluator.

Walks a condition tree against one item's snapshot. Composites short-circuit;
a leaf whose field cannot be resolved, or whose operator does not apply to the
value, evaluates to False and is logged at debug level. Nothing here raises
to the caller, so one malformed leaf never stops sibling conditions or other
rules from being evaluated.
"""
from dataclasses import dataclass
from typing import Any, List, Tuple

from loguru import logger

from pricealerts.errors import TypeMismatchError
from pricealerts.rules.conditions import Composite, CompositeKind, Condition, Leaf, Operator
from pricealerts.rules.fields import is_unavailable, resolve
from pricealerts.rules.types import MarketSnapshot


@dataclass(frozen=True)
class LeafMatch:
    """A leaf that supports the final result, with the value it was resolved to."""
    leaf: Leaf
    value: Any
    negated: bool = False


@dataclass(frozen=True)
class EvaluationResult:
    matched: bool
    satisfied: Tuple[LeafMatch, ...] = ()

    def __bool__(self) -> bool:
        return self.matched

    @property
    def values(self) -> dict:
        """Resolved value per field for the satisfying leaves."""
        return {m.leaf.field.value: m.value for m in self.satisfied}


def evaluate(condition: Condition, snapshot: MarketSnapshot) -> bool:
    """Evaluate the tree for the snapshot's item."""
    matched, _ = _evaluate(condition, snapshot, negated=False)
    return matched


def evaluate_with_trace(condition: Condition, snapshot: MarketSnapshot) -> EvaluationResult:
    """
    Evaluate and keep the leaves that made the result true.

    The trace is what the dispatcher uses for the alert's reason text and its
    snapshot of satisfying values.
    """
    matched, support = _evaluate(condition, snapshot, negated=False)
    if not matched:
        return EvaluationResult(False)
    return EvaluationResult(True, tuple(support))


def _evaluate(node: Condition, snapshot: MarketSnapshot, negated: bool) -> Tuple[bool, List[LeafMatch]]:
    """
    Returns (result, supporting leaves).

    Supporting leaves are the ones that decided the result: all children of a
    true AND, the first true child of an OR, the first false child of an AND.
    `negated` flips under each NOT so the reason text can say "not ...".
    """
    if isinstance(node, Leaf):
        return _evaluate_leaf(node, snapshot, negated)

    if isinstance(node, Composite):
        if node.kind == CompositeKind.NOT:
            result, support = _evaluate(node.children[0], snapshot, not negated)
            return not result, support

        if node.kind == CompositeKind.AND:
            collected: List[LeafMatch] = []
            for child in node.children:
                result, support = _evaluate(child, snapshot, negated)
                if not result:
                    return False, support
                collected.extend(support)
            return True, collected

        if node.kind == CompositeKind.OR:
            collected = []
            for child in node.children:
                result, support = _evaluate(child, snapshot, negated)
                if result:
                    return True, support
                collected.extend(support)
            return False, collected

    logger.debug(f"Unknown condition node {node!r} for {snapshot.item_id}, treating as false")
    return False, []


def _evaluate_leaf(node: Leaf, snapshot: MarketSnapshot, negated: bool) -> Tuple[bool, List[LeafMatch]]:
    value = resolve(node.field, snapshot)
    if is_unavailable(value):
        logger.debug(f"{snapshot.item_id}: {node.field.value} unavailable ({value.reason}), leaf is false")
        return False, []

    try:
        result = compare(value, node.operator, node.value)
    except TypeMismatchError as e:
        logger.debug(f"{snapshot.item_id}: {node.field.value} {node.operator.value} {node.value!r}: {e}")
        return False, []

    return result, [LeafMatch(node, value, negated)]


def compare(actual: Any, operator: Operator, expected: Any) -> bool:
    """
    Apply a comparison operator.

    Strings compare case-insensitively. Ordering operators need two numbers;
    `in` needs a collection literal.

    Raises:
        TypeMismatchError: operator does not apply to these values
    """
    if operator == Operator.IN:
        if not isinstance(expected, (frozenset, set, list, tuple)):
            raise TypeMismatchError(f"'in' needs a set literal, got {type(expected).__name__}")
        normalized = {_normalize(v) for v in expected}
        return _normalize(actual) in normalized

    if operator in (Operator.EQ, Operator.NE):
        if _is_number(actual) and _is_number(expected):
            equal = float(actual) == float(expected)
        elif isinstance(actual, str) and isinstance(expected, str):
            equal = _normalize(actual) == _normalize(expected)
        else:
            raise TypeMismatchError(
                f"cannot compare {type(actual).__name__} with {type(expected).__name__}"
            )
        return equal if operator == Operator.EQ else not equal

    if not (_is_number(actual) and _is_number(expected)):
        raise TypeMismatchError(
            f"{operator.value} needs numbers, got {type(actual).__name__} and {type(expected).__name__}"
        )
    if operator == Operator.GT:
        return actual > expected
    if operator == Operator.GTE:
        return actual >= expected
    if operator == Operator.LT:
        return actual < expected
    if operator == Operator.LTE:
        return actual <= expected

    raise TypeMismatchError(f"unsupported operator {operator!r}")


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().casefold()
    if _is_number(value):
        return float(value)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
