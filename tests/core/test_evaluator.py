"""Tests for the condition evaluator and the field vocabulary."""

from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from calendar_automation.core.errors import ConfigurationError
from calendar_automation.core.evaluator import (
    OPERATORS,
    apply_operator,
    describe,
    evaluate,
)
from calendar_automation.core.fields import (
    ALL_DAY_DURATION_MINUTES,
    FIELDS,
    FieldType,
    resolve_field,
)
from calendar_automation.core.rules import parse_condition_tree

pytestmark = pytest.mark.unit

TRUE_LEAF = {"field": "event.title", "operator": "contains", "value": "standup"}
FALSE_LEAF = {"field": "event.title", "operator": "contains", "value": "retro"}


def _leaf(passing: bool) -> dict:
    return TRUE_LEAF if passing else FALSE_LEAF


def _check(make_event, leaf: dict, **event_fields) -> bool:
    return evaluate(parse_condition_tree(leaf), make_event(**event_fields)).matched


# ---------------------------------------------------------------------------
# Boolean structure
# ---------------------------------------------------------------------------


class TestTruthTables:
    @pytest.mark.parametrize(("a", "b"), list(itertools.product([True, False], repeat=2)))
    def test_and(self, make_event, a, b):
        tree = parse_condition_tree({"logic": "AND", "children": [_leaf(a), _leaf(b)]})
        assert evaluate(tree, make_event()).matched is (a and b)

    @pytest.mark.parametrize(("a", "b"), list(itertools.product([True, False], repeat=2)))
    def test_or(self, make_event, a, b):
        tree = parse_condition_tree({"logic": "OR", "children": [_leaf(a), _leaf(b)]})
        assert evaluate(tree, make_event()).matched is (a or b)

    @pytest.mark.parametrize("a", [True, False])
    def test_not_leaf(self, make_event, a):
        tree = parse_condition_tree({**_leaf(a), "negate": True})
        assert evaluate(tree, make_event()).matched is (not a)

    @pytest.mark.parametrize(("a", "b"), list(itertools.product([True, False], repeat=2)))
    def test_not_group(self, make_event, a, b):
        tree = parse_condition_tree(
            {"logic": "AND", "negate": True, "children": [_leaf(a), _leaf(b)]}
        )
        assert evaluate(tree, make_event()).matched is (not (a and b))

    def test_absent_tree_matches(self, make_event):
        result = evaluate(None, make_event())
        assert result.matched is True
        assert result.trace == ()

    def test_empty_group_matches(self, make_event):
        tree = parse_condition_tree({"logic": "OR", "children": []})
        assert evaluate(tree, make_event()).matched is True

    def test_negated_empty_group_does_not_match(self, make_event):
        tree = parse_condition_tree({"logic": "AND", "children": [], "negate": True})
        assert evaluate(tree, make_event()).matched is False

    def test_nested(self, make_event):
        # standup AND (retro OR NOT retro)
        tree = parse_condition_tree(
            {
                "logic": "AND",
                "children": [
                    TRUE_LEAF,
                    {"logic": "OR", "children": [FALSE_LEAF, {**FALSE_LEAF, "negate": True}]},
                ],
            }
        )
        result = evaluate(tree, make_event())
        assert result.matched is True
        assert [leaf.path for leaf in result.trace] == ["0", "1.0", "1.1"]


class TestShortCircuit:
    def test_and_stops_at_first_false(self, make_event):
        tree = parse_condition_tree({"logic": "AND", "children": [FALSE_LEAF, TRUE_LEAF]})
        result = evaluate(tree, make_event())
        assert result.matched is False
        assert len(result.trace) == 1
        assert result.short_circuits == ("root",)

    def test_or_stops_at_first_true(self, make_event):
        tree = parse_condition_tree({"logic": "OR", "children": [TRUE_LEAF, FALSE_LEAF]})
        result = evaluate(tree, make_event())
        assert result.matched is True
        assert len(result.trace) == 1
        assert result.short_circuits == ("root",)

    def test_last_child_is_not_a_short_circuit(self, make_event):
        tree = parse_condition_tree({"logic": "AND", "children": [TRUE_LEAF, FALSE_LEAF]})
        result = evaluate(tree, make_event())
        assert len(result.trace) == 2
        assert result.short_circuits == ()

    def test_nested_group_path_recorded(self, make_event):
        tree = parse_condition_tree(
            {
                "logic": "AND",
                "children": [
                    TRUE_LEAF,
                    {"logic": "OR", "children": [TRUE_LEAF, FALSE_LEAF]},
                ],
            }
        )
        assert evaluate(tree, make_event()).short_circuits == ("1",)

    def test_deterministic(self, make_event):
        tree = parse_condition_tree({"logic": "OR", "children": [FALSE_LEAF, TRUE_LEAF]})
        event = make_event()
        assert evaluate(tree, event) == evaluate(tree, event)


# ---------------------------------------------------------------------------
# Leaf errors
# ---------------------------------------------------------------------------


class TestLeafErrors:
    def test_non_numeric_duration_under_numeric_operator(self, make_event):
        tree = parse_condition_tree(
            {"field": "event.duration", "operator": "gt", "value": 60}
        )
        result = evaluate(tree, make_event(placeholder_duration="TBD"))
        assert result.matched is False
        (leaf,) = result.trace
        assert leaf.actual == "TBD"
        assert leaf.error is not None
        assert "not numeric" in leaf.error
        assert result.errors == [leaf]

    def test_unknown_field(self, make_event):
        tree = parse_condition_tree({"field": "event.mood", "operator": "equals", "value": "x"})
        (leaf,) = evaluate(tree, make_event()).trace
        assert leaf.passed is False
        assert "Unknown field" in leaf.error

    def test_unknown_operator(self, make_event):
        tree = parse_condition_tree({"field": "event.title", "operator": "rhymes_with"})
        (leaf,) = evaluate(tree, make_event()).trace
        assert "Unknown operator" in leaf.error

    def test_operator_type_mismatch(self, make_event):
        tree = parse_condition_tree({"field": "event.title", "operator": "gt", "value": 3})
        (leaf,) = evaluate(tree, make_event()).trace
        assert "cannot be applied to a string field" in leaf.error

    def test_negated_error_leaf_still_fails(self, make_event):
        tree = parse_condition_tree(
            {"field": "event.mood", "operator": "equals", "value": "x", "negate": True}
        )
        (leaf,) = evaluate(tree, make_event()).trace
        assert leaf.passed is False
        assert leaf.negated is True

    def test_error_does_not_stop_siblings(self, make_event):
        tree = parse_condition_tree(
            {
                "logic": "OR",
                "children": [{"field": "event.mood", "operator": "equals"}, TRUE_LEAF],
            }
        )
        result = evaluate(tree, make_event())
        assert result.matched is True
        assert len(result.trace) == 2
        assert len(result.errors) == 1

    def test_invalid_regex(self, make_event):
        tree = parse_condition_tree({"field": "event.title", "operator": "matches", "value": "("})
        (leaf,) = evaluate(tree, make_event()).trace
        assert "Invalid regular expression" in leaf.error

    def test_no_entity(self):
        result = evaluate(parse_condition_tree(TRUE_LEAF), None)
        assert result.matched is False
        assert "none is available" in result.trace[0].error


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class TestStringOperators:
    @pytest.mark.parametrize(
        ("operator", "value", "expected"),
        [
            ("equals", "DAILY STANDUP", True),
            ("not_equals", "daily standup", False),
            ("contains", "STAND", True),
            ("not_contains", "retro", True),
            ("starts_with", "daily", True),
            ("ends_with", "UP", True),
            ("matches", r"^daily\s+\w+$", True),
            ("not_matches", "retro", True),
            ("equals_cs", "daily standup", False),
            ("contains_cs", "standup", True),
            ("starts_with_cs", "daily", False),
            ("ends_with_cs", "standup", True),
            ("matches_cs", "^Daily", True),
            ("in", "Daily standup, Retro", True),
            ("not_in", ["Retro", "Planning"], True),
            ("is_not_empty", None, True),
            ("is_empty", None, False),
        ],
    )
    def test_title(self, make_event, operator, value, expected):
        leaf = {"field": "event.title", "operator": operator, "value": value}
        assert _check(make_event, leaf) is expected

    def test_missing_optional_field_is_empty(self, make_event):
        leaf = {"field": "event.location", "operator": "is_empty"}
        assert _check(make_event, leaf) is True

    def test_status_in_list(self, make_event):
        leaf = {"field": "event.status", "operator": "in", "value": "confirmed,tentative"}
        assert _check(make_event, leaf) is True
        assert _check(make_event, leaf, status="cancelled") is False


class TestNumericOperators:
    @pytest.mark.parametrize(
        ("operator", "value", "expected"),
        [
            ("eq", 15, True),
            ("gt", 60, False),
            ("lt", 30, True),
            ("gte", 15, True),
            ("lte", 14, False),
            ("greater_than", "10", True),
            ("less_than_or_equal", 15.0, True),
        ],
    )
    def test_duration(self, make_event, operator, value, expected):
        leaf = {"field": "event.duration", "operator": operator, "value": value}
        assert _check(make_event, leaf) is expected

    def test_all_day_counts_full_day(self, make_event):
        leaf = {"field": "event.duration", "operator": "eq", "value": ALL_DAY_DURATION_MINUTES}
        assert _check(make_event, leaf, is_all_day=True) is True

    def test_expected_must_be_numeric(self, make_event):
        tree = parse_condition_tree(
            {"field": "event.duration", "operator": "gt", "value": "an hour"}
        )
        (leaf,) = evaluate(tree, make_event()).trace
        assert "expected value" in leaf.error

    def test_long_event(self, make_event):
        leaf = {"field": "event.duration", "operator": "gt", "value": 60}
        event_fields = {"end_at": make_event().start_at + timedelta(hours=2)}
        assert _check(make_event, leaf, **event_fields) is True


class TestBooleanAndSetOperators:
    def test_is_all_day(self, make_event):
        assert _check(make_event, {"field": "event.is_all_day", "operator": "is_true"}) is False
        assert _check(make_event, {"field": "event.is_all_day", "operator": "is_false"}) is True

    def test_tags(self, make_event):
        contains = {"field": "event.tags", "operator": "contains", "value": "FOCUS"}
        in_list = {"field": "event.tags", "operator": "in", "value": ["travel", "focus"]}
        empty = {"field": "event.tags", "operator": "is_empty"}
        assert _check(make_event, contains, tags=("focus",)) is True
        assert _check(make_event, in_list, tags=("focus",)) is True
        assert _check(make_event, empty) is True
        assert _check(make_event, empty, tags=("focus",)) is False

    def test_boolean_rejects_string_operator(self):
        with pytest.raises(ConfigurationError):
            apply_operator("contains", FieldType.BOOLEAN, True, "t")

    def test_boolean_rejects_non_bool_value(self):
        with pytest.raises(ConfigurationError, match="not a boolean"):
            apply_operator("is_true", FieldType.BOOLEAN, "yes", None)


def test_every_field_type_has_an_operator():
    for field_def in FIELDS.values():
        assert any(
            _accepts(op, field_def.type) for op in OPERATORS
        ), f"{field_def.name} accepts no operators"


def _accepts(operator: str, field_type: FieldType) -> bool:
    sample = {
        FieldType.STRING: "x",
        FieldType.NUMBER: 1,
        FieldType.BOOLEAN: True,
        FieldType.SET: ["x"],
    }[field_type]
    try:
        apply_operator(operator, field_type, sample, "1")
    except ConfigurationError:
        return False
    return True


class TestResolveField:
    def test_unknown(self, make_event):
        with pytest.raises(ConfigurationError, match="Unknown field"):
            resolve_field("event.attendees", make_event())

    def test_calendar_name(self, make_event):
        assert resolve_field("event.calendar.name", make_event()) == (FieldType.STRING, "Work")


class TestDescribe:
    def test_marks_passed_failed_and_skipped(self, make_event):
        tree = parse_condition_tree(
            {
                "logic": "AND",
                "children": [
                    TRUE_LEAF,
                    {"field": "event.duration", "operator": "gt", "value": 60},
                    FALSE_LEAF,
                ],
            }
        )
        result = evaluate(tree, make_event())
        assert describe(tree, result) == (
            "(✓ event.title contains AND ✗ event.duration gt AND · event.title contains)"
        )

    def test_negation_rendered(self, make_event):
        tree = parse_condition_tree(
            {"logic": "OR", "negate": True, "children": [{**FALSE_LEAF, "negate": True}]}
        )
        result = evaluate(tree, make_event())
        assert describe(tree, result) == "NOT (✓ NOT event.title contains)"

    def test_absent_tree(self, make_event):
        assert describe(None, evaluate(None, make_event())) == "true"
