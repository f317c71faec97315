"""Calendar entity snapshots as seen by the automation engine.

The engine never owns persistence.  Every value it reads is an immutable
snapshot returned by the :class:`~calendar_automation.core.ports.EntityStore`
collaborator, and every mutation is a change set handed back to that store.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

EntityChange = dict[str, Any]


class EventStatus(StrEnum):
    """Event lifecycle states."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class AutomationTask(BaseModel):
    """A task attached to an event by the ``create_task`` action."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str | None = None
    due_minutes_before: float | None = None
    created_at: datetime
    created_by_rule_id: str | None = None


class CalendarRef(BaseModel):
    """Minimal calendar identity used by ``move_to_calendar``."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    name: str = ""
    color: str | None = None


class CalendarEntity(BaseModel):
    """Immutable snapshot of one calendar event.

    ``duration`` in the field vocabulary is computed from ``start_at`` and
    ``end_at``; ``placeholder_duration`` lets a store surface a raw,
    non-numeric duration (e.g. an unparsed import) without coercion.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    title: str = ""
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    color: str | None = None
    status: EventStatus | None = EventStatus.confirmed
    is_all_day: bool = False
    start_at: datetime | None = None
    end_at: datetime | None = None
    calendar_id: str | None = None
    calendar_name: str | None = None
    tags: tuple[str, ...] = ()
    tasks: tuple[AutomationTask, ...] = ()
    created_by: str | None = None
    updated_at: datetime | None = None
    placeholder_duration: Any | None = Field(default=None, repr=False)

    def with_changes(self, changes: EntityChange) -> CalendarEntity:
        """Return a copy with *changes* applied (used by in-memory stores)."""
        return self.model_copy(update=changes)
