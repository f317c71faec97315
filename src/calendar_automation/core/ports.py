"""Interfaces of the collaborators the engine depends on.

Rule persistence, entity persistence, and notification delivery are owned
outside the engine.  Hosts pass implementations of these protocols into
:class:`~calendar_automation.engine.AutomationEngine`; in-memory versions for
tests and local runs live in :mod:`calendar_automation.testing`.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from calendar_automation.core.entities import CalendarEntity, CalendarRef, EntityChange
from calendar_automation.core.rules import Rule, TriggerType


class RuleStore(Protocol):
    """Read access to stored rules plus rule bookkeeping."""

    async def get_rule(self, rule_id: str) -> Rule | None: ...

    async def list_enabled_rules(self, owner_id: str) -> list[Rule]: ...

    async def list_enabled_rules_by_trigger(
        self, trigger_types: Iterable[TriggerType]
    ) -> list[Rule]: ...

    async def mark_evaluated(self, rule_id: str, at: datetime) -> None: ...

    async def mark_executed(self, rule_id: str, at: datetime) -> None: ...


class EntityStore(Protocol):
    """Reads current entity values and applies mutations on the engine's behalf.

    Every call is scoped by ``owner_id``; implementations must never return or
    modify an entity belonging to a different owner.
    """

    async def get_entity(self, owner_id: str, entity_id: str) -> CalendarEntity | None: ...

    async def list_entities(
        self,
        owner_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEntity]: ...

    async def update_entity(
        self, owner_id: str, entity_id: str, changes: EntityChange
    ) -> CalendarEntity: ...

    async def get_calendar(self, owner_id: str, calendar_id: str) -> CalendarRef | None: ...


@dataclass(frozen=True)
class Notification:
    """An in-app/e-mail notification requested by ``send_notification``."""

    recipients: tuple[str, ...]
    title: str
    body: str
    priority: str = "normal"
    event_type: str = "automation.notification"
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def publish(self, notification: Notification) -> None: ...
