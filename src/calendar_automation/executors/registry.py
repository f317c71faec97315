"""Static registry mapping action types to executors.

The registry is the only place actions are looked up.  It never raises for a
single action: unknown types, invalid configs, and failing executors all come
back as a failed :class:`ActionResult`, so a rule's remaining actions still
run (partial-failure semantics).
"""

from __future__ import annotations

import logging
import time
from typing import Any

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError, ExecutionError
from calendar_automation.core.ports import EntityStore
from calendar_automation.core.smart_values import interpolate
from calendar_automation.executors.base import (
    ActionExecutor,
    ActionResult,
    ActionType,
    ExecutionContext,
)

logger = logging.getLogger(__name__)


class ActionExecutorRegistry:
    """Registered executors keyed by :class:`ActionType`.

    Parameters
    ----------
    entity_store:
        Used to re-read the target entity for executors that set
        ``rereads_entity``.  May be ``None`` when no such executor is
        registered.
    """

    def __init__(self, entity_store: EntityStore | None = None) -> None:
        self._executors: dict[ActionType, ActionExecutor] = {}
        self._entity_store = entity_store

    def register(self, executor: ActionExecutor) -> None:
        """Register *executor* for its action type.

        Raises:
            ValueError: If an executor is already registered for that type.
        """
        action_type = executor.action_type
        if action_type in self._executors:
            raise ValueError(f"Executor for action type {action_type!r} is already registered")
        self._executors[action_type] = executor
        logger.debug("Registered action executor: %s", action_type)

    def has(self, action_type: str) -> bool:
        try:
            return ActionType(action_type) in self._executors
        except ValueError:
            return False

    def get(self, action_type: str) -> ActionExecutor:
        """Return the executor for *action_type*.

        Raises:
            ConfigurationError: If the type is unknown or unregistered.
        """
        try:
            executor = self._executors.get(ActionType(action_type))
        except ValueError:
            executor = None
        if executor is None:
            raise ConfigurationError(f"No executor registered for action type {action_type!r}")
        return executor

    def action_types(self) -> list[ActionType]:
        return list(self._executors)

    def __len__(self) -> int:
        return len(self._executors)

    async def execute(
        self,
        action_type: str,
        params: dict[str, Any],
        target: CalendarEntity | None,
        ctx: ExecutionContext,
        *,
        action_id: str | None = None,
        order: int = 0,
    ) -> ActionResult:
        """Apply one action and report the result."""
        started = time.monotonic()

        def _result(applied: bool, message: str, data: dict[str, Any] | None = None) -> ActionResult:
            return ActionResult(
                action_type=action_type,
                applied=applied,
                message=message,
                data=data or {},
                action_id=action_id,
                order=order,
                duration_ms=round((time.monotonic() - started) * 1000, 3),
            )

        try:
            executor = self.get(action_type)
            config = interpolate(params or {}, ctx.smart_values)
            executor.validate_config(config)

            entity = target
            if executor.requires_entity:
                if entity is None:
                    raise ExecutionError("No event available for this action", action_type=action_type)
                if executor.rereads_entity and self._entity_store is not None:
                    entity = await self._entity_store.get_entity(ctx.owner_id, entity.id)
                    if entity is None:
                        raise ExecutionError(
                            f"Event {target.id!r} no longer exists", action_type=action_type
                        )

            outcome = await executor.apply(config, entity, ctx)
        except ConfigurationError as exc:
            logger.info("Action %s rejected for rule %s: %s", action_type, ctx.rule_id, exc)
            return _result(False, f"Configuration error: {exc}")
        except ExecutionError as exc:
            logger.warning("Action %s failed for rule %s: %s", action_type, ctx.rule_id, exc)
            return _result(False, str(exc))
        except Exception as exc:
            logger.exception("Action %s raised for rule %s", action_type, ctx.rule_id)
            return _result(False, f"{type(exc).__name__}: {exc}")

        return _result(True, outcome.message, outcome.data)
