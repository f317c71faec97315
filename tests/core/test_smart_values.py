"""Tests for smart-value placeholder extraction and interpolation."""

from __future__ import annotations

import pytest

from calendar_automation.core.rules import TransitionKind, TriggerContext, TriggerType
from calendar_automation.core.smart_values import extract_smart_values, interpolate

pytestmark = pytest.mark.unit


@pytest.fixture
def context(clock) -> TriggerContext:
    return TriggerContext(
        entity_id="evt-1",
        owner_id="user-1",
        transition=TransitionKind.CREATED,
        trigger_type=TriggerType.EVENT_CREATED,
        occurred_at=clock(),
    )


class TestExtractSmartValues:
    def test_trigger_values_without_entity(self, context):
        values = extract_smart_values(context, None)
        assert values == {
            "trigger.timestamp": "2026-03-02T09:00:00+00:00",
            "trigger.date": "2026-03-02",
            "trigger.time": "09:00:00",
            "trigger.type": "event.created",
        }

    def test_event_values(self, context, make_event):
        values = extract_smart_values(context, make_event(location="Room 4"))
        assert values["event.title"] == "Daily standup"
        assert values["event.location"] == "Room 4"
        assert values["event.description"] == ""
        assert values["event.isAllDay"] == "false"
        assert values["event.duration"] == "15"
        assert values["event.durationHours"] == "0"
        assert values["event.durationMinutes"] == "15"
        assert values["event.date"] == "2026-03-02"
        assert values["event.startTime"] == "10:00"
        assert values["event.endTime"] == "10:15"
        assert values["event.dayOfWeek"] == "Monday"
        assert values["event.dayOfWeekShort"] == "Mon"
        assert values["calendar.name"] == "Work"

    def test_placeholder_duration_is_not_exposed(self, context, make_event):
        values = extract_smart_values(context, make_event(placeholder_duration="TBD"))
        assert "event.duration" not in values

    def test_undated_event(self, context, make_event):
        values = extract_smart_values(context, make_event(start_at=None, end_at=None))
        assert values["event.date"] == ""
        assert "event.startTime" not in values


class TestInterpolate:
    def test_both_placeholder_styles(self):
        values = {"event.title": "Standup", "trigger.date": "2026-03-02"}
        assert interpolate("{{event.title}} on ${trigger.date}", values) == (
            "Standup on 2026-03-02"
        )

    def test_whitespace_inside_braces(self):
        assert interpolate("{{ event.title }}", {"event.title": "Standup"}) == "Standup"

    def test_unknown_placeholder_left_as_written(self):
        assert interpolate("Hi {{event.organizer}}", {}) == "Hi {{event.organizer}}"

    def test_recurses_into_containers(self):
        config = {
            "url": "https://hooks.example.com/{{event.id}}",
            "custom_payload": {"tags": ["{{event.title}}", 3]},
            "include_event_data": False,
        }
        assert interpolate(config, {"event.id": "evt-1", "event.title": "Standup"}) == {
            "url": "https://hooks.example.com/evt-1",
            "custom_payload": {"tags": ["Standup", 3]},
            "include_event_data": False,
        }
