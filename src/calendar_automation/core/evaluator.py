"""Condition evaluator: pure ``(tree, entity) -> (matched, trace)``.

No I/O and no side effects.  A leaf that cannot be evaluated (unknown field,
unknown operator, operator not valid for the field's type, non-numeric value
under a numeric operator, bad regex) evaluates to ``False`` and its trace
entry carries the :class:`ConfigurationError` message; the rest of the tree is
still evaluated.

Groups short-circuit: AND stops at the first false child, OR at the first true
child.  Only the leaves actually evaluated appear in the trace, and the path
of every group that stopped early is listed in ``short_circuits`` so the audit
trail shows where evaluation ended.  Evaluation is deterministic: the same
tree against the same entity always yields the same result and trace.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError
from calendar_automation.core.fields import FieldType, resolve_field
from calendar_automation.core.rules import ConditionGroup, ConditionLeaf, Logic

# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LeafResult:
    """Outcome of one evaluated leaf.

    ``passed`` is the effective result after negation; ``raw_passed`` is the
    operator's own verdict.
    """

    path: str
    field: str
    operator: str
    expected: Any
    actual: Any
    passed: bool
    raw_passed: bool
    negated: bool = False
    condition_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EvaluationResult:
    matched: bool
    trace: tuple[LeafResult, ...] = ()
    short_circuits: tuple[str, ...] = ()

    @property
    def errors(self) -> list[LeafResult]:
        return [leaf for leaf in self.trace if leaf.error is not None]


# ---------------------------------------------------------------------------
# Operator catalog
# ---------------------------------------------------------------------------

_ALIASES = {
    "greater_than": "gt",
    "less_than": "lt",
    "greater_than_or_equal": "gte",
    "less_than_or_equal": "lte",
    "in_list": "in",
    "not_in_list": "not_in",
}


def _fold(value: Any) -> str:
    return str(value).casefold()


def _as_list(expected: Any) -> list[str]:
    if isinstance(expected, list | tuple | set | frozenset):
        return [_fold(item).strip() for item in expected]
    if expected is None:
        return []
    return [part.strip() for part in _fold(expected).split(",") if part.strip()]


def _regex(expected: Any, flags: int) -> re.Pattern[str]:
    try:
        return re.compile(str(expected), flags)
    except re.error as exc:
        raise ConfigurationError(f"Invalid regular expression {expected!r}: {exc}") from exc


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{what} {value!r} is a boolean, not a number")
    if isinstance(value, int | float):
        return float(value)
    if what == "expected value" and isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise ConfigurationError(f"{what} {value!r} is not numeric")


def _is_empty(actual: Any) -> bool:
    return actual is None or actual == "" or actual == []


_StringOp = Callable[[str, Any], bool]

_STRING_OPS: dict[str, _StringOp] = {
    "equals": lambda a, e: _fold(a) == _fold(e),
    "not_equals": lambda a, e: _fold(a) != _fold(e),
    "contains": lambda a, e: _fold(e) in _fold(a),
    "not_contains": lambda a, e: _fold(e) not in _fold(a),
    "starts_with": lambda a, e: _fold(a).startswith(_fold(e)),
    "ends_with": lambda a, e: _fold(a).endswith(_fold(e)),
    "matches": lambda a, e: _regex(e, re.IGNORECASE).search(str(a)) is not None,
    "not_matches": lambda a, e: _regex(e, re.IGNORECASE).search(str(a)) is None,
    "equals_cs": lambda a, e: str(a) == str(e),
    "contains_cs": lambda a, e: str(e) in str(a),
    "starts_with_cs": lambda a, e: str(a).startswith(str(e)),
    "ends_with_cs": lambda a, e: str(a).endswith(str(e)),
    "matches_cs": lambda a, e: _regex(e, 0).search(str(a)) is not None,
}

_NUMERIC_OPS: dict[str, Callable[[float, float], bool]] = {
    "eq": lambda a, e: a == e,
    "gt": lambda a, e: a > e,
    "lt": lambda a, e: a < e,
    "gte": lambda a, e: a >= e,
    "lte": lambda a, e: a <= e,
}

_BOOLEAN_OPS = frozenset({"is_true", "is_false"})
_SET_OPS = frozenset({"in", "not_in"})
_EMPTINESS_OPS = frozenset({"is_empty", "is_not_empty"})

OPERATORS: frozenset[str] = frozenset(
    set(_STRING_OPS) | set(_NUMERIC_OPS) | _BOOLEAN_OPS | _SET_OPS | _EMPTINESS_OPS | set(_ALIASES)
)

_COMPATIBLE: dict[FieldType, frozenset[str]] = {
    FieldType.STRING: frozenset(set(_STRING_OPS) | _SET_OPS | _EMPTINESS_OPS),
    FieldType.NUMBER: frozenset(_NUMERIC_OPS),
    FieldType.BOOLEAN: _BOOLEAN_OPS,
    FieldType.SET: frozenset(_SET_OPS | _EMPTINESS_OPS | {"contains", "not_contains"}),
}


def apply_operator(operator: str, field_type: FieldType, actual: Any, expected: Any) -> bool:
    """Apply *operator* to a value of *field_type*.

    Raises:
        ConfigurationError: If the operator is unknown, is not valid for the
            field type, or the values cannot be compared.
    """
    op = _ALIASES.get(operator, operator)
    if op not in OPERATORS:
        raise ConfigurationError(f"Unknown operator {operator!r}")
    if op not in _COMPATIBLE[field_type]:
        raise ConfigurationError(
            f"Operator {operator!r} cannot be applied to a {field_type} field"
        )

    if op in _EMPTINESS_OPS:
        return _is_empty(actual) if op == "is_empty" else not _is_empty(actual)

    if field_type is FieldType.BOOLEAN:
        if not isinstance(actual, bool):
            raise ConfigurationError(f"Field value {actual!r} is not a boolean")
        return actual is (op == "is_true")

    if field_type is FieldType.NUMBER:
        return _NUMERIC_OPS[op](_number(actual, "field value"), _number(expected, "expected value"))

    if field_type is FieldType.SET:
        members = {_fold(item) for item in (actual or [])}
        if op in ("contains", "not_contains"):
            present = _fold(expected).strip() in members
            return present if op == "contains" else not present
        hit = bool(members.intersection(_as_list(expected)))
        return hit if op == "in" else not hit

    if op in _SET_OPS:
        hit = _fold(actual).strip() in _as_list(expected)
        return hit if op == "in" else not hit
    return _STRING_OPS[op]("" if actual is None else actual, "" if expected is None else expected)


# ---------------------------------------------------------------------------
# Tree evaluation
# ---------------------------------------------------------------------------


def _evaluate_leaf(leaf: ConditionLeaf, entity: CalendarEntity | None, path: str) -> LeafResult:
    actual: Any = None
    error: str | None = None
    try:
        field_type, actual = resolve_field(leaf.field, entity)
        raw = apply_operator(leaf.operator, field_type, actual, leaf.value)
    except ConfigurationError as exc:
        raw = False
        error = str(exc)

    # A leaf that could not be evaluated is "not matched" even when negated.
    passed = (not raw if leaf.negate else raw) if error is None else False
    return LeafResult(
        path=path,
        field=leaf.field,
        operator=leaf.operator,
        expected=leaf.value,
        actual=actual,
        passed=passed,
        raw_passed=raw,
        negated=leaf.negate,
        condition_id=leaf.id,
        error=error,
    )


def _evaluate_node(
    node: ConditionLeaf | ConditionGroup,
    entity: CalendarEntity | None,
    path: str,
    trace: list[LeafResult],
    short_circuits: list[str],
) -> bool:
    if isinstance(node, ConditionLeaf):
        result = _evaluate_leaf(node, entity, path)
        trace.append(result)
        return result.passed

    if not node.children:
        outcome = True
    else:
        stop_on = node.logic is Logic.OR
        outcome = not stop_on
        for index, child in enumerate(node.children):
            child_path = f"{path}.{index}" if path else str(index)
            if _evaluate_node(child, entity, child_path, trace, short_circuits) is stop_on:
                outcome = stop_on
                if index < len(node.children) - 1:
                    short_circuits.append(path or "root")
                break
    return not outcome if node.negate else outcome


def evaluate(
    tree: ConditionLeaf | ConditionGroup | None,
    entity: CalendarEntity | None,
) -> EvaluationResult:
    """Evaluate *tree* against *entity*.

    An absent tree (or an empty root group) always matches.
    """
    if tree is None:
        return EvaluationResult(matched=True)
    trace: list[LeafResult] = []
    short_circuits: list[str] = []
    matched = _evaluate_node(tree, entity, "", trace, short_circuits)
    return EvaluationResult(
        matched=matched,
        trace=tuple(trace),
        short_circuits=tuple(short_circuits),
    )


def describe(
    tree: ConditionLeaf | ConditionGroup | None,
    result: EvaluationResult,
) -> str:
    """Human-readable logic expression for an evaluation, used in audit entries.

    Example: ``(✓ event.title contains AND ✗ event.duration gt)``.  Leaves
    skipped by short-circuiting render as ``·``.
    """
    if tree is None:
        return "true"
    by_path = {leaf.path: leaf for leaf in result.trace}

    def render(node: ConditionLeaf | ConditionGroup, path: str) -> str:
        if isinstance(node, ConditionLeaf):
            leaf = by_path.get(path)
            mark = "·" if leaf is None else ("✓" if leaf.passed else "✗")
            prefix = "NOT " if node.negate else ""
            return f"{mark} {prefix}{node.field} {node.operator}"
        if not node.children:
            body = "true"
        else:
            joiner = f" {node.logic} "
            body = joiner.join(
                render(child, f"{path}.{i}" if path else str(i))
                for i, child in enumerate(node.children)
            )
        expr = f"({body})"
        return f"NOT {expr}" if node.negate else expr

    return render(tree, "")
