"""Shared fixtures for the calendar automation test suite.

Tests build rules and events through the ``make_rule`` / ``make_event``
factories and run against the in-memory collaborators from
:mod:`calendar_automation.testing`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from calendar_automation.core.audit import InMemoryAuditLog
from calendar_automation.core.dispatcher import TriggerDispatcher
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.logging import set_rule_context
from calendar_automation.core.rules import Rule, rule_from_dict
from calendar_automation.executors import ActionExecutorRegistry, default_registry
from calendar_automation.testing import (
    InMemoryEntityStore,
    InMemoryRuleStore,
    RecordingNotifier,
)

# Monday 2 March 2026, 09:00 UTC
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _reset_rule_context():
    yield
    set_rule_context(None)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_event() -> Callable[..., CalendarEntity]:
    def _make(**overrides: Any) -> CalendarEntity:
        data: dict[str, Any] = {
            "id": "evt-1",
            "owner_id": "user-1",
            "title": "Daily standup",
            "start_at": NOW + timedelta(hours=1),
            "end_at": NOW + timedelta(hours=1, minutes=15),
            "calendar_id": "cal-work",
            "calendar_name": "Work",
        }
        data.update(overrides)
        return CalendarEntity(**data)

    return _make


@pytest.fixture
def make_rule() -> Callable[..., Rule]:
    def _make(
        rule_id: str = "rule-1",
        *,
        owner_id: str = "user-1",
        trigger: str = "event.created",
        trigger_config: dict[str, Any] | None = None,
        conditions: Any = None,
        actions: list[dict[str, Any]] | None = None,
        enabled: bool = True,
        **extra: Any,
    ) -> Rule:
        return rule_from_dict(
            {
                "id": rule_id,
                "owner_id": owner_id,
                "name": f"Rule {rule_id}",
                "trigger": {"type": trigger, "config": trigger_config or {}},
                "conditions": conditions,
                "actions": actions if actions is not None else [],
                "enabled": enabled,
                **extra,
            }
        )

    return _make


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog(max_entries_per_rule=50)


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
async def http_client(webhook_requests: list[httpx.Request]):
    """AsyncClient whose transport records requests and answers 200."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def registry(
    entity_store: InMemoryEntityStore,
    notifier: RecordingNotifier,
    http_client: httpx.AsyncClient,
) -> ActionExecutorRegistry:
    return default_registry(entity_store, notifier, http_client)


@pytest.fixture
def dispatcher(
    rule_store: InMemoryRuleStore,
    registry: ActionExecutorRegistry,
    audit_log: InMemoryAuditLog,
    clock: FakeClock,
) -> TriggerDispatcher:
    return TriggerDispatcher(rule_store, registry, audit_log, clock=clock)
