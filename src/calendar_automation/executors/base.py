"""Abstract base class and result types for action executors."""

from __future__ import annotations

import abc
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError
from calendar_automation.core.rules import TriggerContext

# Bumped whenever an action type is added, removed, or changes its config keys.
ACTION_CATALOG_VERSION = 1


class ActionType(StrEnum):
    """Closed set of action types the engine can execute."""

    SET_EVENT_COLOR = "set_event_color"
    UPDATE_EVENT_TITLE = "update_event_title"
    UPDATE_EVENT_DESCRIPTION = "update_event_description"
    ADD_EVENT_TAG = "add_event_tag"
    CANCEL_EVENT = "cancel_event"
    MOVE_TO_CALENDAR = "move_to_calendar"
    CREATE_TASK = "create_task"
    SEND_NOTIFICATION = "send_notification"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class ExecutionContext:
    """What an executor may know about the dispatch it runs in."""

    rule_id: str
    owner_id: str
    trigger: TriggerContext
    smart_values: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionOutcome:
    """Successful application of an action."""

    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionResult:
    """Per-action record stored on the audit entry.

    ``attempted`` is ``False`` only for actions skipped by cancellation
    between actions.
    """

    action_type: str
    applied: bool
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    action_id: str | None = None
    order: int = 0
    attempted: bool = True
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ActionExecutor(abc.ABC):
    """Applies one configured change to a target entity.

    Every built-in action subclasses ActionExecutor and is registered with
    the :class:`~calendar_automation.executors.registry.ActionExecutorRegistry`
    at process start.  New action types are added by registering a new
    executor; the dispatcher never changes.
    """

    #: When true the registry re-reads the entity from the store before
    #: ``apply`` so the action sees mutations made by earlier actions.
    rereads_entity: bool = False

    #: When false ``apply`` may be called without an entity.
    requires_entity: bool = True

    @property
    @abc.abstractmethod
    def action_type(self) -> ActionType:
        """The action type this executor handles."""
        ...

    @abc.abstractmethod
    def validate_config(self, config: dict[str, Any]) -> None:
        """Check an (already interpolated) action config.

        Raises
        ------
        ConfigurationError
            If the config is missing required keys or has invalid values.
        """
        ...

    @abc.abstractmethod
    async def apply(
        self,
        config: dict[str, Any],
        entity: CalendarEntity | None,
        ctx: ExecutionContext,
    ) -> ActionOutcome:
        """Apply the action.

        Raises on failure; the registry converts any exception into a failed
        :class:`ActionResult`.
        """
        ...


def require_mapping(config: Any) -> dict[str, Any]:
    if not isinstance(config, dict):
        raise ConfigurationError("Action configuration must be an object")
    return config


def require_text(config: dict[str, Any], key: str) -> str:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Action configuration must include a non-empty {key!r} string")
    return value.strip()


def optional_text(config: dict[str, Any], key: str) -> str | None:
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{key!r} must be a string when provided")
    return value.strip() or None
