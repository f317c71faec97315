"""On-demand ("run now") evaluation of a rule over an owner's existing events."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from calendar_automation.core.audit import AuditEntry, AuditLog, AuditOutcome
from calendar_automation.core.dispatcher import DispatchJob, TriggerDispatcher
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import (
    RateLimitError,
    RuleAccessError,
    RuleDisabledError,
    RuleNotFoundError,
)
from calendar_automation.core.metrics import AutomationMetrics, get_tracer
from calendar_automation.core.ports import EntityStore, RuleStore
from calendar_automation.core.rules import TransitionKind, TriggerContext

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_S = 60.0
DEFAULT_MAX_CONCURRENCY = 8


@dataclass(frozen=True)
class ScopeWindow:
    """Optional bounds on the events' ``start_at`` (inclusive)."""

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("window start must not be after its end")

    def contains(self, entity: CalendarEntity) -> bool:
        if self.start is None and self.end is None:
            return True
        if entity.start_at is None:
            return False
        if self.start is not None and entity.start_at < self.start:
            return False
        if self.end is not None and entity.start_at > self.end:
            return False
        return True


@dataclass(frozen=True)
class RunSummary:
    """Counts over one retroactive run.

    ``executed`` counts dispatches whose actions at least partly applied;
    ``failed`` counts dispatches in which every attempted action failed.
    """

    rule_id: str
    evaluated: int
    matched: int
    executed: int
    failed: int
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class CooldownGate:
    """Per-rule next-eligible-time map with an atomic check-and-set."""

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._next_eligible: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown.total_seconds()

    async def claim(self, rule_id: str) -> None:
        """Claim a run for *rule_id*.

        Raises:
            RateLimitError: If the rule is still inside its cooldown.
        """
        async with self._lock:
            now = self._clock()
            eligible = self._next_eligible.get(rule_id)
            if eligible is not None and now < eligible:
                raise RateLimitError(rule_id, (eligible - now).total_seconds())
            self._next_eligible[rule_id] = now + self._cooldown

    async def reset(self, rule_id: str) -> None:
        async with self._lock:
            self._next_eligible.pop(rule_id, None)


class RetroactiveRunner:
    def __init__(
        self,
        rule_store: RuleStore,
        entity_store: EntityStore,
        dispatcher: TriggerDispatcher,
        audit_log: AuditLog,
        *,
        cooldown: CooldownGate | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        metrics: AutomationMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._rules = rule_store
        self._entities = entity_store
        self._dispatcher = dispatcher
        self._audit = audit_log
        self._cooldown = cooldown or CooldownGate(clock=clock)
        self._max_concurrency = max_concurrency
        self._metrics = metrics or AutomationMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run_now(
        self,
        rule_id: str,
        owner_id: str,
        window: ScopeWindow | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RunSummary:
        """Evaluate *rule_id* against every matching event of *owner_id*.

        Raises:
            RuleNotFoundError: The rule does not exist.
            RuleAccessError: The rule belongs to another owner.
            RuleDisabledError: The rule is disabled.
            RateLimitError: The rule ran less than the cooldown ago.
        """
        rule = await self._rules.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if rule.owner_id != owner_id:
            raise RuleAccessError(rule_id)
        if not rule.enabled:
            raise RuleDisabledError(rule_id)

        now = self._clock()
        try:
            await self._cooldown.claim(rule_id)
        except RateLimitError as exc:
            self._metrics.retroactive_rate_limited()
            await self._audit.append(
                AuditEntry(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    outcome=AuditOutcome.RATE_LIMITED,
                    trigger={
                        "entity_id": None,
                        "transition": str(TransitionKind.RETROACTIVE),
                        "trigger_type": str(rule.trigger.type),
                        "occurred_at": now.isoformat(),
                    },
                    executed_at=now,
                    message=str(exc),
                )
            )
            logger.info("Retroactive run of rule %s rate limited: %s", rule_id, exc)
            raise

        window = window or ScopeWindow()
        started = time.monotonic()
        with get_tracer().start_as_current_span("automation.retroactive_run") as span:
            span.set_attribute("automation.rule_id", rule.id)
            entities = [
                entity
                for entity in await self._entities.list_entities(
                    owner_id, start=window.start, end=window.end
                )
                if entity.owner_id == owner_id and window.contains(entity)
            ]
            jobs: list[DispatchJob] = [
                (
                    rule,
                    entity,
                    TriggerContext(
                        entity_id=entity.id,
                        owner_id=owner_id,
                        transition=TransitionKind.RETROACTIVE,
                        trigger_type=rule.trigger.type,
                        occurred_at=now,
                    ),
                )
                for entity in entities
            ]
            entries = await self._dispatcher.dispatch_all(
                jobs, cancel, limit=self._max_concurrency
            )
            span.set_attribute("automation.evaluated", len(entries))

        outcomes = [entry.outcome for entry in entries]
        summary = RunSummary(
            rule_id=rule.id,
            evaluated=len(entries),
            matched=sum(1 for outcome in outcomes if outcome != AuditOutcome.SKIPPED),
            executed=sum(
                1
                for outcome in outcomes
                if outcome in (AuditOutcome.SUCCESS, AuditOutcome.PARTIAL_SUCCESS)
            ),
            failed=outcomes.count(AuditOutcome.FAILURE),
            duration_ms=round((time.monotonic() - started) * 1000, 3),
        )
        logger.info(
            "Retroactive run of rule %s: %d evaluated, %d matched, %d executed, %d failed",
            rule.id,
            summary.evaluated,
            summary.matched,
            summary.executed,
            summary.failed,
        )
        return summary
