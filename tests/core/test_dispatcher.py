"""Tests for the trigger dispatcher pipeline: routing, evaluation, execution, audit."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from calendar_automation.core.audit import AuditOutcome, InMemoryAuditLog
from calendar_automation.core.dispatcher import TriggerDispatcher
from calendar_automation.core.metrics import AutomationMetrics
from calendar_automation.core.ports import Notification
from calendar_automation.core.rules import TransitionKind, TriggerContext, TriggerType
from calendar_automation.core.scheduler import Scheduler
from calendar_automation.executors import default_registry
from calendar_automation.testing import InMemoryRuleStore

pytestmark = pytest.mark.unit

STANDUP = {"field": "event.title", "operator": "contains", "value": "standup"}
BLUE = {"type": "set_event_color", "config": {"color": "#3b82f6"}, "order": 1}


def _context(entity, transition=TransitionKind.CREATED, trigger=TriggerType.EVENT_CREATED, *, at):
    return TriggerContext(
        entity_id=entity.id,
        owner_id=entity.owner_id,
        transition=transition,
        trigger_type=trigger,
        occurred_at=at,
    )


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestLifecycleScenarios:
    async def test_standup_gets_colored(
        self, dispatcher, rule_store, entity_store, audit_log, make_rule, make_event
    ):
        rule_store.put(make_rule(conditions=[STANDUP], actions=[BLUE]))
        event = make_event()
        entity_store.put(event)

        entries = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.outcome is AuditOutcome.SUCCESS
        assert entry.condition_trace[0]["passed"] is True
        assert entry.action_results[0].applied is True
        assert entry.action_results[0].data == {
            "previous_color": None,
            "new_color": "#3b82f6",
        }
        assert entity_store.snapshot("evt-1").color == "#3b82f6"
        assert entry.trigger["transition"] == "created"
        assert entry.logic_expression == "(✓ event.title contains)"
        assert await audit_log.count("rule-1") == 1

    async def test_retro_is_skipped(
        self, dispatcher, rule_store, entity_store, audit_log, make_rule, make_event
    ):
        rule_store.put(make_rule(conditions=[STANDUP], actions=[BLUE]))
        event = make_event(title="Sprint Retro")
        entity_store.put(event)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.SKIPPED
        assert entry.message == "Conditions not met"
        assert entry.action_results == ()
        assert entity_store.updates == []
        assert await audit_log.count("rule-1") == 1

    async def test_placeholder_duration_is_skipped_with_error(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(
            make_rule(
                conditions=[{"field": "event.duration", "operator": "gt", "value": 60}],
                actions=[BLUE],
            )
        )
        event = make_event(placeholder_duration="TBD")
        entity_store.put(event)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.SKIPPED
        assert entry.message == "Conditions not met (1 condition error(s))"
        assert "not numeric" in entry.condition_trace[0]["error"]
        assert entity_store.updates == []

    async def test_only_matching_trigger_type_runs(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(make_rule("on-create", actions=[BLUE]))
        rule_store.put(make_rule("on-update", trigger="event.updated", actions=[BLUE]))
        event = make_event()
        entity_store.put(event)

        entries = await dispatcher.on_lifecycle_event(event, TransitionKind.UPDATED)

        assert [entry.rule_id for entry in entries] == ["on-update"]
        assert entries[0].trigger["trigger_type"] == "event.updated"

    async def test_disabled_rule_never_selected(
        self, dispatcher, rule_store, entity_store, audit_log, make_rule, make_event
    ):
        rule_store.put(make_rule(actions=[BLUE], enabled=False))
        event = make_event()
        entity_store.put(event)

        assert await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED) == []
        assert await audit_log.count("rule-1") == 0
        assert entity_store.updates == []

    async def test_other_owners_rules_never_selected(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(make_rule(owner_id="user-2", actions=[BLUE]))
        event = make_event()
        entity_store.put(event)

        assert await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED) == []

    async def test_each_matching_rule_audited_once(
        self, dispatcher, rule_store, entity_store, audit_log, make_rule, make_event
    ):
        rule_store.put(make_rule("a", actions=[BLUE]))
        rule_store.put(
            make_rule("b", actions=[{"type": "add_event_tag", "config": {"tag": "meeting"}}])
        )
        event = make_event()
        entity_store.put(event)

        entries = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert sorted(entry.rule_id for entry in entries) == ["a", "b"]
        assert await audit_log.count("a") == 1
        assert await audit_log.count("b") == 1
        snapshot = entity_store.snapshot("evt-1")
        assert snapshot.color == "#3b82f6"
        assert snapshot.tags == ("meeting",)

    async def test_non_lifecycle_transition_rejected(self, dispatcher, make_event):
        with pytest.raises(ValueError, match="not a lifecycle transition"):
            await dispatcher.on_lifecycle_event(make_event(), TransitionKind.SCHEDULED)

    async def test_timestamp_used_for_context(
        self, dispatcher, rule_store, entity_store, make_rule, make_event, clock
    ):
        rule_store.put(make_rule(actions=[]))
        event = make_event()
        entity_store.put(event)
        at = clock.advance(minutes=3)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED, at)

        assert entry.trigger["occurred_at"] == at.isoformat()


# ---------------------------------------------------------------------------
# Action execution
# ---------------------------------------------------------------------------


class TestActionExecution:
    async def test_partial_failure_attempts_every_action(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(
            make_rule(
                actions=[
                    {"type": "set_event_color", "config": {"color": "#10b981"}, "order": 1},
                    {"type": "set_event_color", "config": {"color": "blue"}, "order": 2},
                    {"type": "add_event_tag", "config": {"tag": "auto"}, "order": 3},
                ]
            )
        )
        event = make_event()
        entity_store.put(event)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.PARTIAL_SUCCESS
        assert len(entry.action_results) == 3
        assert all(result.attempted for result in entry.action_results)
        assert [result.applied for result in entry.action_results] == [True, False, True]
        assert "Invalid color format" in entry.action_results[1].message
        snapshot = entity_store.snapshot("evt-1")
        assert snapshot.color == "#10b981"
        assert snapshot.tags == ("auto",)

    async def test_all_actions_failing_is_failure(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(
            make_rule(
                actions=[
                    {"type": "teleport_event", "config": {}},
                    {"type": "move_to_calendar", "config": {"target_calendar_id": "nowhere"}},
                ]
            )
        )
        event = make_event()
        entity_store.put(event)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.FAILURE
        assert "No executor registered" in entry.action_results[0].message
        assert entry.action_results[1].message == "Target calendar not found"

    async def test_later_actions_see_earlier_mutations(
        self, dispatcher, rule_store, entity_store, make_rule, make_event
    ):
        rule_store.put(
            make_rule(
                actions=[
                    {
                        "type": "update_event_title",
                        "config": {"new_title": "[Team]", "mode": "prepend"},
                        "order": 1,
                    },
                    {
                        "type": "update_event_title",
                        "config": {"new_title": "({{event.date}})", "mode": "append"},
                        "order": 2,
                    },
                ]
            )
        )
        event = make_event()
        entity_store.put(event)

        (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.SUCCESS
        assert entity_store.snapshot("evt-1").title == "[Team] Daily standup (2026-03-02)"

    async def test_rule_bookkeeping(
        self, dispatcher, rule_store, entity_store, make_rule, make_event, clock
    ):
        rule_store.put(make_rule("hit", conditions=[STANDUP], actions=[BLUE]))
        rule_store.put(
            make_rule(
                "miss",
                conditions=[{**STANDUP, "value": "retro"}],
                actions=[BLUE],
            )
        )
        event = make_event()
        entity_store.put(event)

        await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        hit = await rule_store.get_rule("hit")
        miss = await rule_store.get_rule("miss")
        assert hit.execution_count == 1
        assert hit.last_executed_at == clock()
        assert miss.execution_count == 0
        assert miss.last_evaluated_at == clock()
        assert miss.last_executed_at is None


class _CancellingNotifier:
    """Sets *cancel* while the first action is running."""

    def __init__(self, cancel: asyncio.Event) -> None:
        self._cancel = cancel
        self.sent: list[Notification] = []

    async def publish(self, notification: Notification) -> None:
        self.sent.append(notification)
        self._cancel.set()


class TestCancellation:
    async def test_remaining_actions_not_attempted(
        self, rule_store, entity_store, audit_log, http_client, make_rule, make_event, clock
    ):
        cancel = asyncio.Event()
        notifier = _CancellingNotifier(cancel)
        dispatcher = TriggerDispatcher(
            rule_store,
            default_registry(entity_store, notifier, http_client),
            audit_log,
            clock=clock,
        )
        rule = make_rule(
            actions=[
                {"type": "send_notification", "config": {"message": "hi"}, "order": 1},
                {**BLUE, "order": 2},
                {"type": "add_event_tag", "config": {"tag": "x"}, "order": 3},
            ]
        )
        rule_store.put(rule)
        event = make_event()
        entity_store.put(event)

        entry = await dispatcher.dispatch(rule, event, _context(event, at=clock()), cancel)

        assert [r.attempted for r in entry.action_results] == [True, False, False]
        assert entry.action_results[1].message == "Not attempted (cancelled)"
        assert entry.outcome is AuditOutcome.SUCCESS
        assert entry.message == "Cancelled before 2 action(s)"
        assert len(notifier.sent) == 1
        assert entity_store.updates == []

    async def test_cancelled_before_start(
        self, dispatcher, rule_store, entity_store, make_rule, make_event, clock
    ):
        cancel = asyncio.Event()
        cancel.set()
        rule = make_rule(actions=[BLUE])
        rule_store.put(rule)
        event = make_event()
        entity_store.put(event)

        entry = await dispatcher.dispatch(rule, event, _context(event, at=clock()), cancel)

        assert entry.action_results[0].attempted is False
        assert entity_store.updates == []


# ---------------------------------------------------------------------------
# Guards and isolation
# ---------------------------------------------------------------------------


class TestGuards:
    async def test_disabled_rule_refused(self, dispatcher, audit_log, make_rule, make_event, clock):
        event = make_event()
        rule = make_rule(actions=[BLUE], enabled=False)
        assert await dispatcher.dispatch(rule, event, _context(event, at=clock())) is None
        assert await audit_log.count(rule.id) == 0

    async def test_cross_owner_entity_refused(
        self, dispatcher, audit_log, entity_store, make_rule, make_event, clock
    ):
        event = make_event(owner_id="user-2")
        entity_store.put(event)
        rule = make_rule(actions=[BLUE])
        context = TriggerContext(
            entity_id=event.id,
            owner_id="user-1",
            transition=TransitionKind.CREATED,
            trigger_type=TriggerType.EVENT_CREATED,
            occurred_at=clock(),
        )
        assert await dispatcher.dispatch(rule, event, context) is None
        assert entity_store.updates == []
        assert await audit_log.count(rule.id) == 0

    async def test_failing_job_does_not_affect_others(
        self, registry, entity_store, make_rule, make_event, clock, caplog
    ):
        class FlakyAuditLog(InMemoryAuditLog):
            async def append(self, entry):
                if entry.rule_id == "boom":
                    raise RuntimeError("audit store unavailable")
                await super().append(entry)

        store = InMemoryRuleStore([make_rule("boom", actions=[BLUE]), make_rule("ok", actions=[])])
        dispatcher = TriggerDispatcher(store, registry, FlakyAuditLog(), clock=clock)
        event = make_event()
        entity_store.put(event)

        with caplog.at_level(logging.ERROR):
            entries = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert [entry.rule_id for entry in entries] == ["ok"]
        assert "Dispatch of rule boom" in caplog.text

    async def test_bookkeeping_failure_keeps_audit_entry(
        self, registry, audit_log, entity_store, make_rule, make_event, clock, caplog
    ):
        class FlakyRuleStore(InMemoryRuleStore):
            async def mark_evaluated(self, rule_id, at):
                raise RuntimeError("store unavailable")

            async def mark_executed(self, rule_id, at):
                raise RuntimeError("store unavailable")

        store = FlakyRuleStore([make_rule("colorize", actions=[BLUE])])
        dispatcher = TriggerDispatcher(store, registry, audit_log, clock=clock)
        event = make_event()
        entity_store.put(event)

        with caplog.at_level(logging.ERROR):
            (entry,) = await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        assert entry.outcome is AuditOutcome.SUCCESS
        assert entity_store.snapshot("evt-1").color == "#3b82f6"
        assert await audit_log.count("colorize") == 1
        assert "Failed to record execution of rule colorize" in caplog.text

    async def test_empty_job_list(self, dispatcher):
        assert await dispatcher.dispatch_all([]) == []

    async def test_tick_requires_scheduler(self, dispatcher):
        with pytest.raises(RuntimeError, match="No scheduler"):
            await dispatcher.on_scheduled_tick()


class TestSchedulerRouting:
    async def test_relative_rules_registered_and_dropped(
        self, dispatcher, rule_store, make_rule, make_event
    ):
        scheduler = MagicMock(spec=Scheduler)
        dispatcher.attach_scheduler(scheduler)
        relative = make_rule("soon", trigger="event.starts_in", trigger_config={"minutes": 10})
        rule_store.put(relative)
        event = make_event()

        assert await dispatcher.on_lifecycle_event(event, TransitionKind.UPDATED) == []
        scheduler.register_relative.assert_called_once_with(relative, event)

        await dispatcher.on_lifecycle_event(event, TransitionKind.DELETED)
        scheduler.unregister_entity.assert_called_once_with("evt-1")


class TestMetrics:
    async def test_dispatch_and_failures_recorded(
        self, rule_store, registry, audit_log, entity_store, make_rule, make_event, clock
    ):
        metrics = MagicMock(spec=AutomationMetrics)
        dispatcher = TriggerDispatcher(rule_store, registry, audit_log, metrics=metrics, clock=clock)
        rule_store.put(
            make_rule(actions=[BLUE, {"type": "set_event_color", "config": {"color": "red"}}])
        )
        event = make_event()
        entity_store.put(event)

        await dispatcher.on_lifecycle_event(event, TransitionKind.CREATED)

        metrics.record_dispatch.assert_called_once()
        assert metrics.record_dispatch.call_args.args[0] == "partial_success"
        metrics.action_failed.assert_called_once_with("set_event_color")
