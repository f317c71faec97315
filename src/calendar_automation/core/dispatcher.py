"""Trigger dispatcher: the shared evaluate-then-execute pipeline.

Lifecycle events, scheduler ticks, and retroactive runs all end up in
:meth:`TriggerDispatcher.dispatch`, which walks one rule through

    Dispatched -> Evaluated{matched | not matched} -> Executing -> Completed

(or ``Skipped`` when conditions do not match) and writes exactly one audit
entry for the terminal state.  Conditions are fully resolved before any
action runs; actions then run one at a time in declared order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from calendar_automation.core.audit import AuditEntry, AuditLog, AuditOutcome, classify_outcome
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.evaluator import describe, evaluate
from calendar_automation.core.logging import set_rule_context
from calendar_automation.core.metrics import AutomationMetrics, get_tracer
from calendar_automation.core.ports import RuleStore
from calendar_automation.core.rules import (
    LIFECYCLE_TRIGGERS,
    Rule,
    TransitionKind,
    TriggerContext,
)
from calendar_automation.core.smart_values import extract_smart_values
from calendar_automation.executors.base import ActionResult, ExecutionContext
from calendar_automation.executors.registry import ActionExecutorRegistry

if TYPE_CHECKING:
    from calendar_automation.core.scheduler import Scheduler, TickSummary

logger = logging.getLogger(__name__)

DispatchJob = tuple[Rule, CalendarEntity | None, TriggerContext]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TriggerDispatcher:
    """Routes trigger contexts to rules and runs the pipeline for each."""

    def __init__(
        self,
        rule_store: RuleStore,
        registry: ActionExecutorRegistry,
        audit_log: AuditLog,
        *,
        metrics: AutomationMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = rule_store
        self._registry = registry
        self._audit = audit_log
        self._metrics = metrics or AutomationMetrics()
        self._clock = clock or _utcnow
        self._scheduler: Scheduler | None = None

    def attach_scheduler(self, scheduler: Scheduler) -> None:
        """Route relative-offset rules to *scheduler* on lifecycle events."""
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def on_lifecycle_event(
        self,
        entity: CalendarEntity,
        transition: TransitionKind,
        timestamp: datetime | None = None,
    ) -> list[AuditEntry]:
        """Handle a create/update/delete of *entity*.

        Rules whose trigger matches the transition are dispatched
        concurrently.  Relative-offset rules are (re-)registered with the
        scheduler, or dropped when the entity was deleted.
        """
        trigger_type = LIFECYCLE_TRIGGERS.get(TransitionKind(transition))
        if trigger_type is None:
            raise ValueError(f"{transition!r} is not a lifecycle transition")

        occurred_at = timestamp or self._clock()
        rules = [
            rule
            for rule in await self._rules.list_enabled_rules(entity.owner_id)
            if rule.enabled and rule.owner_id == entity.owner_id
        ]

        if self._scheduler is not None:
            if transition == TransitionKind.DELETED:
                self._scheduler.unregister_entity(entity.id)
            else:
                for rule in rules:
                    if rule.trigger.is_relative:
                        self._scheduler.register_relative(rule, entity)

        jobs: list[DispatchJob] = [
            (
                rule,
                entity,
                TriggerContext(
                    entity_id=entity.id,
                    owner_id=entity.owner_id,
                    transition=TransitionKind(transition),
                    trigger_type=trigger_type,
                    occurred_at=occurred_at,
                ),
            )
            for rule in rules
            if rule.trigger.type == trigger_type
        ]
        logger.debug(
            "Lifecycle %s for event %s: %d of %d rules match the trigger",
            transition,
            entity.id,
            len(jobs),
            len(rules),
        )
        return await self.dispatch_all(jobs)

    async def on_scheduled_tick(self, now: datetime | None = None) -> TickSummary:
        if self._scheduler is None:
            raise RuntimeError("No scheduler attached to the dispatcher")
        return await self._scheduler.tick(now or self._clock())

    async def dispatch_all(
        self,
        jobs: Sequence[DispatchJob],
        cancel: asyncio.Event | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Dispatch *jobs* concurrently; one failing job never affects the others.

        With *limit*, at most that many jobs run at once.
        """
        if not jobs:
            return []
        if limit is not None and limit < 1:
            raise ValueError("limit must be at least 1")
        semaphore = asyncio.Semaphore(limit) if limit is not None else None

        async def run(job: DispatchJob) -> AuditEntry | None:
            rule, entity, ctx = job
            if semaphore is None:
                return await self.dispatch(rule, entity, ctx, cancel)
            async with semaphore:
                return await self.dispatch(rule, entity, ctx, cancel)

        results = await asyncio.gather(*(run(job) for job in jobs), return_exceptions=True)
        entries: list[AuditEntry] = []
        for (rule, _entity, ctx), result in zip(jobs, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "Dispatch of rule %s for event %s failed",
                    rule.id,
                    ctx.entity_id,
                    exc_info=result,
                )
            elif result is not None:
                entries.append(result)
        return entries

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        rule: Rule,
        entity: CalendarEntity | None,
        context: TriggerContext,
        cancel: asyncio.Event | None = None,
    ) -> AuditEntry | None:
        """Run one rule against one entity and audit the terminal state.

        Returns ``None`` without auditing when the rule is disabled or the
        trigger context belongs to a different owner.

        *cancel* is checked between actions.  Once set, the remaining actions
        are recorded as not attempted and the outcome is classified over the
        attempted ones; an action already running is never interrupted.
        """
        if not rule.enabled:
            logger.info("Refusing to dispatch disabled rule %s", rule.id)
            return None
        if context.owner_id != rule.owner_id or (
            entity is not None and entity.owner_id != rule.owner_id
        ):
            logger.warning(
                "Refusing to dispatch rule %s for another owner's event %s",
                rule.id,
                context.entity_id,
            )
            return None

        started = time.monotonic()
        set_rule_context(rule.id)
        tracer = get_tracer()
        with tracer.start_as_current_span("automation.dispatch") as span:
            span.set_attribute("automation.rule_id", rule.id)
            span.set_attribute("automation.trigger_type", str(context.trigger_type))
            span.set_attribute("automation.transition", str(context.transition))
            if context.entity_id is not None:
                span.set_attribute("automation.entity_id", context.entity_id)

            tree = rule.condition_tree()
            evaluation = evaluate(tree, entity)
            for leaf in evaluation.errors:
                logger.info(
                    "Rule %s condition %s could not be evaluated: %s",
                    rule.id,
                    leaf.path or "root",
                    leaf.error,
                )

            action_results: list[ActionResult] = []
            message: str | None = None
            if not evaluation.matched:
                outcome = AuditOutcome.SKIPPED
                message = "Conditions not met"
                if evaluation.errors:
                    message += f" ({len(evaluation.errors)} condition error(s))"
            else:
                action_results = await self._run_actions(rule, entity, context, cancel)
                outcome = classify_outcome(True, action_results)
                skipped = sum(1 for result in action_results if not result.attempted)
                if skipped:
                    message = f"Cancelled before {skipped} action(s)"

            duration_ms = round((time.monotonic() - started) * 1000, 3)
            entry = AuditEntry(
                rule_id=rule.id,
                owner_id=rule.owner_id,
                outcome=outcome,
                trigger=context.summary(),
                condition_trace=tuple(leaf.to_dict() for leaf in evaluation.trace),
                logic_expression=describe(tree, evaluation),
                action_results=tuple(action_results),
                duration_ms=duration_ms,
                executed_at=self._clock(),
                message=message,
            )
            await self._audit.append(entry)
            span.set_attribute("automation.outcome", str(outcome))

        await self._record_run(rule.id, executed=evaluation.matched)
        self._metrics.record_dispatch(str(outcome), duration_ms)
        logger.info(
            "Rule %s dispatched for event %s: %s in %.1fms",
            rule.id,
            context.entity_id,
            outcome,
            duration_ms,
        )
        return entry

    async def _record_run(self, rule_id: str, *, executed: bool) -> None:
        """Stamp the rule's evaluation counters after its audit entry is written.

        Failures are logged only: the actions have already been applied and
        audited, so the dispatch itself has succeeded.
        """
        at = self._clock()
        try:
            await self._rules.mark_evaluated(rule_id, at)
        except Exception:
            logger.exception("Failed to record evaluation of rule %s", rule_id)
        if not executed:
            return
        try:
            await self._rules.mark_executed(rule_id, at)
        except Exception:
            logger.exception("Failed to record execution of rule %s", rule_id)

    async def _run_actions(
        self,
        rule: Rule,
        entity: CalendarEntity | None,
        context: TriggerContext,
        cancel: asyncio.Event | None,
    ) -> list[ActionResult]:
        ctx = ExecutionContext(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            trigger=context,
            smart_values=extract_smart_values(context, entity),
        )
        results: list[ActionResult] = []
        actions = rule.ordered_actions()
        for index, action in enumerate(actions):
            if cancel is not None and cancel.is_set():
                logger.info(
                    "Rule %s cancelled; %d action(s) not attempted",
                    rule.id,
                    len(actions) - index,
                )
                results.extend(
                    ActionResult(
                        action_type=remaining.type,
                        applied=False,
                        message="Not attempted (cancelled)",
                        action_id=remaining.id,
                        order=remaining.order,
                        attempted=False,
                    )
                    for remaining in actions[index:]
                )
                break
            result = await self._registry.execute(
                action.type,
                action.config,
                entity,
                ctx,
                action_id=action.id,
                order=action.order,
            )
            if not result.applied:
                self._metrics.action_failed(action.type)
            results.append(result)
        return results
