"""Rule definitions: triggers, condition trees, actions, and trigger contexts.

Rules are owned and persisted by an external store; the engine only reads
them.  Definitions arrive as plain JSON-like dicts and are validated into the
frozen Pydantic models below.  Field and operator names on condition leaves
and action types on actions are deliberately kept as raw strings: an unknown
or mismatched name is a configuration problem that must surface at
evaluation/execution time as a recorded failure, never as a load-time crash
that would take sibling rules down with it.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)

from calendar_automation.core.errors import ConfigurationError

# Deepest nesting accepted for a condition tree (root group = depth 1).
MAX_CONDITION_DEPTH = 16

DEFAULT_STARTS_IN_MINUTES = 60
DEFAULT_ENDS_IN_MINUTES = 15


class TriggerType(StrEnum):
    """What causes a rule to be considered for evaluation."""

    EVENT_CREATED = "event.created"
    EVENT_UPDATED = "event.updated"
    EVENT_DELETED = "event.deleted"
    EVENT_STARTS_IN = "event.starts_in"
    EVENT_ENDS_IN = "event.ends_in"
    SCHEDULED_TIME = "scheduled.time"


class TransitionKind(StrEnum):
    """The kind of activity that produced a trigger context."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SCHEDULED = "scheduled"
    RELATIVE = "relative"
    RETROACTIVE = "retroactive"


LIFECYCLE_TRIGGERS: dict[TransitionKind, TriggerType] = {
    TransitionKind.CREATED: TriggerType.EVENT_CREATED,
    TransitionKind.UPDATED: TriggerType.EVENT_UPDATED,
    TransitionKind.DELETED: TriggerType.EVENT_DELETED,
}

RELATIVE_TRIGGERS: dict[TriggerType, str] = {
    TriggerType.EVENT_STARTS_IN: "start_at",
    TriggerType.EVENT_ENDS_IN: "end_at",
}


class Logic(StrEnum):
    """Boolean combinator for a condition group."""

    AND = "AND"
    OR = "OR"


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TriggerSpec(BaseModel):
    """Trigger type plus its type-specific parameters.

    ``config`` keys:

    - ``event.starts_in`` / ``event.ends_in``: ``minutes`` (offset before the
      anchor field).
    - ``scheduled.time``: ``cron`` (5-field expression) and optional
      ``timezone`` (IANA key, default UTC).
    """

    model_config = ConfigDict(frozen=True)

    type: TriggerType
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_config(self) -> TriggerSpec:
        if self.is_relative:
            minutes = self.config.get("minutes")
            if minutes is not None:
                if isinstance(minutes, bool) or not isinstance(minutes, int | float):
                    raise ValueError(f"{self.type}: 'minutes' must be a number")
                if minutes < 0:
                    raise ValueError(f"{self.type}: 'minutes' must be non-negative")
        if self.is_scheduled:
            cron = self.config.get("cron")
            if not isinstance(cron, str) or not croniter.is_valid(cron):
                raise ValueError(f"Invalid cron expression: {cron!r}")
            tz = self.config.get("timezone")
            if tz is not None:
                try:
                    ZoneInfo(str(tz))
                except (ZoneInfoNotFoundError, ValueError) as exc:
                    raise ValueError(f"Unknown timezone: {tz!r}") from exc
        return self

    @property
    def is_lifecycle(self) -> bool:
        return self.type in LIFECYCLE_TRIGGERS.values()

    @property
    def is_relative(self) -> bool:
        return self.type in RELATIVE_TRIGGERS

    @property
    def is_scheduled(self) -> bool:
        return self.type == TriggerType.SCHEDULED_TIME

    @property
    def anchor_field(self) -> str | None:
        """Entity attribute a relative trigger is anchored to."""
        return RELATIVE_TRIGGERS.get(self.type)

    @property
    def offset_minutes(self) -> float:
        default = (
            DEFAULT_STARTS_IN_MINUTES
            if self.type == TriggerType.EVENT_STARTS_IN
            else DEFAULT_ENDS_IN_MINUTES
        )
        return float(self.config.get("minutes", default))

    @property
    def cron(self) -> str | None:
        return self.config.get("cron")

    @property
    def timezone(self) -> str:
        return str(self.config.get("timezone") or "UTC")


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class ConditionLeaf(BaseModel):
    """``field <operator> value`` with optional negation.

    ``group_id`` and ``logic_operator`` only matter for rules stored in the
    flat legacy form (see :meth:`Rule.condition_tree`).
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    field: str
    operator: str
    value: Any = None
    negate: bool = False
    group_id: str | None = None
    logic_operator: Logic = Logic.AND
    order: int = 0

    @field_validator("logic_operator", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class ConditionGroup(BaseModel):
    """AND/OR over child nodes, optionally negated."""

    model_config = ConfigDict(frozen=True)

    logic: Logic = Logic.AND
    children: tuple[ConditionNode, ...] = ()
    negate: bool = False

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


def _node_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "group" if "children" in value else "leaf"
    return "group" if isinstance(value, ConditionGroup) else "leaf"


ConditionNode = Annotated[
    Annotated[ConditionLeaf, Tag("leaf")] | Annotated[ConditionGroup, Tag("group")],
    Discriminator(_node_kind),
]

ConditionGroup.model_rebuild()


def tree_depth(node: ConditionLeaf | ConditionGroup | None) -> int:
    """Return the nesting depth of *node* (a lone leaf has depth 1)."""
    if node is None:
        return 0
    if isinstance(node, ConditionLeaf):
        return 1
    return 1 + max((tree_depth(child) for child in node.children), default=0)


def _check_tree(node: ConditionLeaf | ConditionGroup) -> None:
    """Reject trees nested past the limit or that reach one node twice (cycles included)."""
    seen: set[int] = set()
    stack: list[tuple[ConditionLeaf | ConditionGroup, int]] = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        if id(current) in seen:
            raise ValueError("Condition tree reaches the same node more than once")
        seen.add(id(current))
        if depth > MAX_CONDITION_DEPTH:
            raise ValueError(
                f"Condition tree depth {depth} exceeds the maximum of {MAX_CONDITION_DEPTH}"
            )
        if isinstance(current, ConditionGroup):
            stack.extend((child, depth + 1) for child in current.children)


def parse_condition_tree(raw: Any) -> ConditionLeaf | ConditionGroup | None:
    """Build a condition tree from its JSON form.

    ``None`` and empty lists yield ``None`` (the unconditional rule).  A list
    is treated as an implicit AND group.

    Raises:
        ConfigurationError: If *raw* is structurally invalid or too deep.
    """
    if raw is None or raw == []:
        return None
    if isinstance(raw, list):
        raw = {"logic": "AND", "children": raw}
    try:
        if _node_kind(raw) == "group":
            node: ConditionLeaf | ConditionGroup = ConditionGroup.model_validate(raw)
        else:
            node = ConditionLeaf.model_validate(raw)
        _check_tree(node)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid condition tree: {exc}") from exc
    return node


# ---------------------------------------------------------------------------
# Actions and rules
# ---------------------------------------------------------------------------


class ActionSpec(BaseModel):
    """A registered action type plus its parameter payload."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    order: int = 0


class Rule(BaseModel):
    """A user's automation rule.

    The owner is the isolation boundary: a rule only ever reads or writes
    entities whose ``owner_id`` equals its own.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    name: str = ""
    description: str | None = None
    trigger: TriggerSpec
    conditions: ConditionNode | list[ConditionLeaf] | None = None
    condition_logic: Logic = Logic.AND
    actions: tuple[ActionSpec, ...] = ()
    enabled: bool = True
    last_evaluated_at: datetime | None = None
    last_executed_at: datetime | None = None
    execution_count: int = 0

    @field_validator("conditions")
    @classmethod
    def _bounded_depth(cls, value: Any) -> Any:
        if isinstance(value, ConditionLeaf | ConditionGroup):
            _check_tree(value)
        return value

    @field_validator("condition_logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    def ordered_actions(self) -> list[ActionSpec]:
        """Actions in declared order (stable on equal ``order``)."""
        return sorted(self.actions, key=lambda action: action.order)

    def condition_tree(self) -> ConditionLeaf | ConditionGroup | None:
        """Normalise the stored conditions into a single tree.

        The flat legacy form (a list of leaves) combines with
        ``condition_logic``.  When any leaf carries a ``group_id`` the list is
        split into groups instead: each group combines with the
        ``logic_operator`` of its first leaf and the groups are OR-ed.
        """
        if self.conditions is None:
            return None
        if not isinstance(self.conditions, list):
            return self.conditions
        if not self.conditions:
            return None

        leaves = sorted(self.conditions, key=lambda leaf: leaf.order)
        if not any(leaf.group_id for leaf in leaves):
            return ConditionGroup(logic=self.condition_logic, children=tuple(leaves))

        groups: OrderedDict[str, list[ConditionLeaf]] = OrderedDict()
        for leaf in leaves:
            groups.setdefault(leaf.group_id or "default", []).append(leaf)
        return ConditionGroup(
            logic=Logic.OR,
            children=tuple(
                ConditionGroup(logic=members[0].logic_operator, children=tuple(members))
                for members in groups.values()
            ),
        )


def rule_from_dict(raw: dict[str, Any]) -> Rule:
    """Validate a stored rule definition.

    Raises:
        ConfigurationError: If the definition does not validate.
    """
    try:
        return Rule.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid rule definition: {exc}") from exc


# ---------------------------------------------------------------------------
# Trigger context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TriggerContext:
    """Immutable description of what caused one dispatch attempt."""

    entity_id: str | None
    owner_id: str
    transition: TransitionKind
    trigger_type: TriggerType
    occurred_at: datetime
    occurrence_key: str | None = None

    def summary(self) -> dict[str, Any]:
        """JSON-safe summary stored on the audit entry."""
        summary: dict[str, Any] = {
            "entity_id": self.entity_id,
            "transition": str(self.transition),
            "trigger_type": str(self.trigger_type),
            "occurred_at": self.occurred_at.isoformat(),
        }
        if self.occurrence_key is not None:
            summary["occurrence_key"] = self.occurrence_key
        return summary
