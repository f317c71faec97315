"""Smart-value placeholders for action configuration.

Action configs may embed ``{{event.title}}`` or ``${trigger.date}``
placeholders; they are replaced with values from the trigger context and the
entity snapshot before the executor validates its config.  Unknown
placeholders are left as written.
"""

from __future__ import annotations

import re
from typing import Any

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.fields import event_duration_minutes
from calendar_automation.core.rules import TriggerContext

_MUSTACHE = re.compile(r"\{\{([^}]+)\}\}")
_DOLLAR = re.compile(r"\$\{([^}]+)\}")


def extract_smart_values(
    context: TriggerContext,
    entity: CalendarEntity | None,
) -> dict[str, str]:
    """Flatten the trigger context and entity into placeholder values."""
    at = context.occurred_at
    values: dict[str, str] = {
        "trigger.timestamp": at.isoformat(),
        "trigger.date": at.date().isoformat(),
        "trigger.time": at.strftime("%H:%M:%S"),
        "trigger.type": str(context.trigger_type),
    }
    if entity is None:
        return values

    values.update(
        {
            "event.id": entity.id,
            "event.title": entity.title or "",
            "event.description": entity.description or "",
            "event.location": entity.location or "",
            "event.notes": entity.notes or "",
            "event.color": entity.color or "",
            "event.status": str(entity.status) if entity.status is not None else "",
            "event.isAllDay": "true" if entity.is_all_day else "false",
            "calendar.id": entity.calendar_id or "",
            "calendar.name": entity.calendar_name or "",
        }
    )
    duration = event_duration_minutes(entity)
    if isinstance(duration, int | float) and not isinstance(duration, bool):
        minutes = int(duration)
        values["event.duration"] = str(minutes)
        values["event.durationHours"] = str(minutes // 60)
        values["event.durationMinutes"] = str(minutes % 60)
    if entity.start_at is not None:
        values["event.date"] = entity.start_at.date().isoformat()
        values["event.startTime"] = entity.start_at.strftime("%H:%M")
        values["event.dayOfWeek"] = entity.start_at.strftime("%A")
        values["event.dayOfWeekShort"] = entity.start_at.strftime("%a")
    else:
        values["event.date"] = ""
    if entity.end_at is not None:
        values["event.endTime"] = entity.end_at.strftime("%H:%M")
    return values


def interpolate_text(text: str, values: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(1).strip(), match.group(0))

    return _DOLLAR.sub(_replace, _MUSTACHE.sub(_replace, text))


def interpolate(value: Any, values: dict[str, str]) -> Any:
    """Recursively replace placeholders in strings inside *value*."""
    if isinstance(value, str):
        return interpolate_text(value, values)
    if isinstance(value, dict):
        return {key: interpolate(item, values) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, values) for item in value]
    return value
