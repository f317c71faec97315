"""Executors that change the triggering event through the entity store."""

from __future__ import annotations

import re
from typing import Any

from calendar_automation.core.entities import AutomationTask, CalendarEntity, EventStatus
from calendar_automation.core.errors import ConfigurationError, ExecutionError
from calendar_automation.core.ports import EntityStore
from calendar_automation.executors.base import (
    ActionExecutor,
    ActionOutcome,
    ActionType,
    ExecutionContext,
    optional_text,
    require_mapping,
    require_text,
)

_HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
_TEXT_MODES = ("replace", "append", "prepend")


def _compose(previous: str, new: str, mode: str, sep: str) -> str:
    if mode == "append":
        return f"{previous}{sep if previous else ''}{new}"
    if mode == "prepend":
        return f"{new}{sep if previous else ''}{previous}"
    return new


def _validate_mode(config: dict[str, Any]) -> None:
    mode = config.get("mode")
    if mode is not None and str(mode) not in _TEXT_MODES:
        raise ConfigurationError("mode must be one of: replace, append, prepend")


class _EventExecutor(ActionExecutor):
    def __init__(self, store: EntityStore) -> None:
        self._store = store

    async def _update(
        self, ctx: ExecutionContext, entity: CalendarEntity, changes: dict[str, Any]
    ) -> CalendarEntity:
        try:
            return await self._store.update_entity(ctx.owner_id, entity.id, changes)
        except LookupError as exc:
            raise ExecutionError(
                f"Event {entity.id!r} no longer exists", action_type=self.action_type
            ) from exc


class SetEventColorExecutor(_EventExecutor):
    """``{"color": "#3b82f6"}``"""

    @property
    def action_type(self) -> ActionType:
        return ActionType.SET_EVENT_COLOR

    def validate_config(self, config: dict[str, Any]) -> None:
        color = require_text(require_mapping(config), "color")
        if not _HEX_COLOR.match(color):
            raise ConfigurationError(
                f"Invalid color format: {color!r}. Expected hex like #3b82f6 or #f00"
            )

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        color = config["color"].strip()
        previous = entity.color
        await self._update(ctx, entity, {"color": color})
        return ActionOutcome(
            message=f"Color set to {color}",
            data={"previous_color": previous, "new_color": color},
        )


class UpdateEventTitleExecutor(_EventExecutor):
    """``{"new_title": "...", "mode": "replace|append|prepend"}``"""

    rereads_entity = True

    @property
    def action_type(self) -> ActionType:
        return ActionType.UPDATE_EVENT_TITLE

    def validate_config(self, config: dict[str, Any]) -> None:
        require_text(require_mapping(config), "new_title")
        _validate_mode(config)

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        mode = str(config.get("mode") or "replace")
        previous = entity.title or ""
        title = _compose(previous, config["new_title"].strip(), mode, " ")
        await self._update(ctx, entity, {"title": title})
        return ActionOutcome(
            message=f"Title updated ({mode})",
            data={"previous_title": previous, "new_title": title, "mode": mode},
        )


class UpdateEventDescriptionExecutor(_EventExecutor):
    """``{"text": "...", "mode": "replace|append|prepend"}``"""

    rereads_entity = True

    @property
    def action_type(self) -> ActionType:
        return ActionType.UPDATE_EVENT_DESCRIPTION

    def validate_config(self, config: dict[str, Any]) -> None:
        require_mapping(config)
        if not isinstance(config.get("text"), str):
            raise ConfigurationError("Action configuration must include a 'text' string")
        _validate_mode(config)

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        mode = str(config.get("mode") or "replace")
        previous = entity.description or ""
        description = _compose(previous, config["text"], mode, "\n")
        await self._update(ctx, entity, {"description": description})
        return ActionOutcome(
            message=f"Description updated ({mode})",
            data={"previous_length": len(previous), "new_length": len(description), "mode": mode},
        )


class AddEventTagExecutor(_EventExecutor):
    """``{"tag": "focus, deep-work"}``. Only tags not already present are added."""

    rereads_entity = True

    @property
    def action_type(self) -> ActionType:
        return ActionType.ADD_EVENT_TAG

    def validate_config(self, config: dict[str, Any]) -> None:
        raw = require_text(require_mapping(config), "tag")
        if not [tag for tag in raw.split(",") if tag.strip()]:
            raise ConfigurationError("No tags provided after processing")

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        wanted = [tag.strip() for tag in config["tag"].split(",") if tag.strip()]
        tags = list(entity.tags)
        added = []
        for tag in wanted:
            if tag not in tags:
                tags.append(tag)
                added.append(tag)
        if added:
            await self._update(ctx, entity, {"tags": tuple(tags)})
        return ActionOutcome(
            message=f"Added {len(added)} tag(s)",
            data={"added_tags": added, "tags": tags},
        )


class CancelEventExecutor(_EventExecutor):
    """``{"reason": "..."}``. Marks the event cancelled and notes the reason."""

    rereads_entity = True

    @property
    def action_type(self) -> ActionType:
        return ActionType.CANCEL_EVENT

    def validate_config(self, config: dict[str, Any]) -> None:
        optional_text(require_mapping(config), "reason")

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        reason = optional_text(config, "reason")
        changes: dict[str, Any] = {"status": EventStatus.cancelled}
        if reason:
            line = f"Cancelled automatically ({ctx.trigger.occurred_at.isoformat()}): {reason}"
            notes = entity.notes or ""
            changes["notes"] = f"{notes}\n{line}" if notes.strip() else line
        previous = str(entity.status) if entity.status is not None else None
        await self._update(ctx, entity, changes)
        return ActionOutcome(
            message="Event cancelled",
            data={"previous_status": previous, "reason": reason},
        )


class MoveToCalendarExecutor(_EventExecutor):
    """``{"target_calendar_id": "..."}``. The target must belong to the rule owner."""

    @property
    def action_type(self) -> ActionType:
        return ActionType.MOVE_TO_CALENDAR

    def validate_config(self, config: dict[str, Any]) -> None:
        target = require_mapping(config).get("target_calendar_id")
        if target is None or not str(target).strip():
            raise ConfigurationError("Action configuration must include 'target_calendar_id'")

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        target_id = str(config["target_calendar_id"]).strip()
        calendar = await self._store.get_calendar(ctx.owner_id, target_id)
        if calendar is None:
            raise ExecutionError("Target calendar not found", action_type=self.action_type)

        previous = entity.calendar_id
        if previous == calendar.id:
            return ActionOutcome(
                message="Event already in target calendar",
                data={"previous_calendar_id": previous, "new_calendar_id": calendar.id, "changed": False},
            )
        await self._update(
            ctx, entity, {"calendar_id": calendar.id, "calendar_name": calendar.name}
        )
        return ActionOutcome(
            message=f"Moved to calendar {calendar.name or calendar.id}",
            data={"previous_calendar_id": previous, "new_calendar_id": calendar.id, "changed": True},
        )


class CreateTaskExecutor(_EventExecutor):
    """``{"task_title": "...", "task_description": "...", "due_minutes_before": 30}``"""

    rereads_entity = True

    @property
    def action_type(self) -> ActionType:
        return ActionType.CREATE_TASK

    def validate_config(self, config: dict[str, Any]) -> None:
        require_text(require_mapping(config), "task_title")
        optional_text(config, "task_description")
        self._due(config)

    @staticmethod
    def _due(config: dict[str, Any]) -> float | None:
        raw = config.get("due_minutes_before")
        if raw is None or str(raw).strip() == "":
            return None
        if isinstance(raw, bool):
            raise ConfigurationError("due_minutes_before must be a number when provided")
        try:
            return float(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("due_minutes_before must be a number when provided") from exc

    async def apply(self, config, entity, ctx) -> ActionOutcome:
        task = AutomationTask(
            title=config["task_title"].strip(),
            description=optional_text(config, "task_description"),
            due_minutes_before=self._due(config),
            created_at=ctx.trigger.occurred_at,
            created_by_rule_id=ctx.rule_id,
        )
        await self._update(ctx, entity, {"tasks": (*entity.tasks, task)})
        return ActionOutcome(
            message=f"Task {task.title!r} created",
            data=task.model_dump(mode="json"),
        )
