"""Field vocabulary available to condition leaves.

The vocabulary is fixed and versioned: conditions can only reference the
names in :data:`FIELDS`, never arbitrary attribute paths.  Each field carries
its semantic type, which decides the operators it accepts.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError

FIELD_VOCABULARY_VERSION = 1

ALL_DAY_DURATION_MINUTES = 1440


class FieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SET = "set"


@dataclass(frozen=True)
class FieldDef:
    name: str
    type: FieldType
    extract: Callable[[CalendarEntity], Any]


def event_duration_minutes(entity: CalendarEntity) -> Any:
    """Duration in minutes; all-day events count as a full day.

    A store-provided placeholder duration is returned untouched so that a
    numeric comparison against it fails as a configuration error instead of
    being silently coerced.
    """
    if entity.placeholder_duration is not None:
        return entity.placeholder_duration
    if entity.is_all_day:
        return ALL_DAY_DURATION_MINUTES
    if entity.start_at is None or entity.end_at is None:
        return 0
    return (entity.end_at - entity.start_at).total_seconds() / 60


def _status(entity: CalendarEntity) -> str:
    return str(entity.status) if entity.status is not None else ""


FIELDS: dict[str, FieldDef] = {
    f.name: f
    for f in (
        FieldDef("event.title", FieldType.STRING, lambda e: e.title or ""),
        FieldDef("event.description", FieldType.STRING, lambda e: e.description or ""),
        FieldDef("event.location", FieldType.STRING, lambda e: e.location or ""),
        FieldDef("event.notes", FieldType.STRING, lambda e: e.notes or ""),
        FieldDef("event.color", FieldType.STRING, lambda e: e.color or ""),
        FieldDef("event.status", FieldType.STRING, _status),
        FieldDef("event.duration", FieldType.NUMBER, event_duration_minutes),
        FieldDef("event.is_all_day", FieldType.BOOLEAN, lambda e: e.is_all_day),
        FieldDef("event.calendar.id", FieldType.STRING, lambda e: e.calendar_id or ""),
        FieldDef("event.calendar.name", FieldType.STRING, lambda e: e.calendar_name or ""),
        FieldDef("event.tags", FieldType.SET, lambda e: list(e.tags)),
    )
}


def resolve_field(name: str, entity: CalendarEntity | None) -> tuple[FieldType, Any]:
    """Return ``(type, value)`` for vocabulary field *name* on *entity*.

    Raises:
        ConfigurationError: If *name* is not in the vocabulary or no entity
            is available to read it from.
    """
    field_def = FIELDS.get(name)
    if field_def is None:
        raise ConfigurationError(
            f"Unknown field {name!r} (vocabulary v{FIELD_VOCABULARY_VERSION})"
        )
    if entity is None:
        raise ConfigurationError(f"Field {name!r} needs an event but none is available")
    return field_def.type, field_def.extract(entity)
