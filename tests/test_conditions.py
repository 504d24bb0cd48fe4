"""Tests for condition trees: construction, validation and JSON form."""
import pytest

from pricealerts.errors import ValidationError
from pricealerts.rules.conditions import (
    Composite,
    CompositeKind,
    FieldId,
    Leaf,
    Operator,
    all_of,
    any_of,
    condition_from_dict,
    condition_to_dict,
    iter_leaves,
    leaf,
    negate,
    validate_condition,
)
from pricealerts.rules.evaluator import evaluate
from tests.fakes import make_snapshot


class TestLeafConstruction:
    """Tests for building leaves from raw names."""

    def test_leaf_parses_field_and_operator(self):
        """leaf() should map raw strings to enums."""
        node = leaf("priceDropPercent", ">", 20)
        assert node.field == FieldId.PRICE_DROP_PERCENT
        assert node.operator == Operator.GT
        assert node.value == 20

    def test_leaf_accepts_operator_aliases(self):
        """UI spellings like 'gte' and '==' should map to canonical operators."""
        assert leaf("price", "gte", 5).operator == Operator.GTE
        assert leaf("platform", "==", "steam").operator == Operator.EQ

    def test_in_value_becomes_frozenset(self):
        """'in' literals should be stored as frozensets."""
        node = leaf("platform", "in", ["steam", "csfloat"])
        assert node.value == frozenset({"steam", "csfloat"})

    def test_unknown_field_rejected(self):
        """Unknown field names should raise ValidationError."""
        with pytest.raises(ValidationError, match="Unknown field"):
            leaf("marketCap", ">", 1)

    def test_unknown_operator_rejected(self):
        """Unknown operators should raise ValidationError."""
        with pytest.raises(ValidationError, match="Unknown operator"):
            leaf("price", "~", 1)

    def test_nodes_are_frozen(self):
        """Condition nodes cannot be mutated after construction."""
        node = leaf("price", "<", 10)
        with pytest.raises(AttributeError):
            node.value = 20


class TestValidation:
    """Tests for authoring-time validation."""

    def test_valid_tree_passes(self):
        """A well-formed nested tree should validate."""
        tree = all_of(
            leaf("price", "<", 50),
            any_of(leaf("recommendation", "=", "Buy"), negate(leaf("riskLevel", "=", "high"))),
        )
        validate_condition(tree)

    def test_not_requires_exactly_one_child(self):
        """NOT with two children is invalid."""
        tree = Composite(CompositeKind.NOT, (leaf("price", "<", 1), leaf("price", ">", 0)))
        with pytest.raises(ValidationError, match="NOT takes exactly 1"):
            validate_condition(tree)

    def test_empty_and_rejected(self):
        """AND without children is invalid."""
        with pytest.raises(ValidationError, match="at least 1"):
            validate_condition(all_of())

    def test_ordering_operator_on_categorical_field_rejected(self):
        """'>' on recommendation is invalid."""
        with pytest.raises(ValidationError, match="numeric field"):
            validate_condition(leaf("recommendation", ">", "Buy"))

    def test_ordering_operator_needs_numeric_value(self):
        """'price < \"cheap\"' is invalid."""
        with pytest.raises(ValidationError, match="numeric value"):
            validate_condition(leaf("price", "<", "cheap"))

    def test_bool_is_not_a_number(self):
        """Booleans are not accepted as numeric literals."""
        with pytest.raises(ValidationError):
            validate_condition(leaf("price", "<", True))

    def test_in_requires_collection(self):
        """'in' with a scalar literal is invalid."""
        with pytest.raises(ValidationError, match="set of values"):
            validate_condition(leaf("platform", "in", "steam"))

    def test_error_names_the_offending_path(self):
        """Validation errors should point at the nested node."""
        tree = all_of(leaf("price", "<", 50), any_of(leaf("riskLevel", "<", 3)))
        with pytest.raises(ValidationError, match=r"root\.AND\[1\]\.OR\[0\]"):
            validate_condition(tree)


class TestJsonForm:
    """Tests for dict (JSON) serialization."""

    def test_from_dict_nested(self):
        """Nested JSON should parse into composites and leaves."""
        data = {
            "type": "AND",
            "conditions": [
                {"field": "priceDropPercent", "operator": ">", "value": 20},
                {"type": "NOT", "conditions": [{"field": "riskLevel", "operator": "=", "value": "high"}]},
            ],
        }
        tree = condition_from_dict(data)
        assert isinstance(tree, Composite)
        assert tree.kind == CompositeKind.AND
        assert isinstance(tree.children[0], Leaf)
        assert tree.children[1].kind == CompositeKind.NOT

    def test_from_dict_lowercase_type(self):
        """Composite type names are case-insensitive."""
        tree = condition_from_dict({"type": "or", "conditions": [{"field": "price", "operator": "<", "value": 1}]})
        assert tree.kind == CompositeKind.OR

    def test_from_dict_missing_keys(self):
        """Leaves missing keys should be rejected."""
        with pytest.raises(ValidationError, match="missing keys"):
            condition_from_dict({"field": "price", "operator": "<"})

    def test_from_dict_validates_by_default(self):
        """Parsing validates unless told not to."""
        data = {"type": "NOT", "conditions": []}
        with pytest.raises(ValidationError):
            condition_from_dict(data)
        assert condition_from_dict(data, validate=False).children == ()

    def test_round_trip_preserves_evaluation(self):
        """Serialize -> parse -> evaluate gives the same result on the same snapshot."""
        tree = any_of(
            all_of(leaf("priceDropPercent", ">", 20), leaf("recommendation", "=", "Strong Buy")),
            negate(leaf("platform", "in", ["csfloat", "buff"])),
        )
        snapshot = make_snapshot()
        restored = condition_from_dict(condition_to_dict(tree))
        assert restored == tree
        assert evaluate(restored, snapshot) == evaluate(tree, snapshot)

    def test_to_dict_sorts_in_values(self):
        """frozenset literals serialize as sorted lists."""
        data = condition_to_dict(leaf("platform", "in", {"steam", "buff", "csfloat"}))
        assert data == {"field": "platform", "operator": "in", "value": ["buff", "csfloat", "steam"]}

    def test_iter_leaves_depth_first(self):
        """iter_leaves should yield leaves left to right."""
        a, b, c = leaf("price", "<", 1), leaf("price", "<", 2), leaf("price", "<", 3)
        assert list(iter_leaves(all_of(a, any_of(b, negate(c))))) == [a, b, c]
