from __future__ import annotations

import pytest

from calendar_automation.core.rules import TransitionKind, TriggerContext, TriggerType
from calendar_automation.core.smart_values import extract_smart_values
from calendar_automation.executors import ExecutionContext


@pytest.fixture
def ctx(clock, make_event) -> ExecutionContext:
    trigger = TriggerContext(
        entity_id="evt-1",
        owner_id="user-1",
        transition=TransitionKind.UPDATED,
        trigger_type=TriggerType.EVENT_UPDATED,
        occurred_at=clock(),
    )
    return ExecutionContext(
        rule_id="rule-1",
        owner_id="user-1",
        trigger=trigger,
        smart_values=extract_smart_values(trigger, make_event()),
    )
