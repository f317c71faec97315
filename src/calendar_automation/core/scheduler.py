"""Time-based triggers: fixed schedules and offsets relative to an event field.

Schedules and offsets are plain data checked by the stateless ``is_*_due``
helpers below.  What has already fired is remembered separately in a
:class:`FiredMarkerStore`, keyed by ``(rule_id, occurrence_key)``, which is
what makes a tick idempotent: a relative trigger fires at most once per event
occurrence and a fixed schedule at most once per slot.

Consecutive ticks cover contiguous time, however far apart they land:

- each schedule's due window starts where that rule's previous window ended
  and runs to ``now + tick``;
- a relative trigger is due once ``now`` reaches ``fire_at - window``, and
  stays due on the first tick at or after ``fire_at``.

A relative trigger whose fire time already lay behind the previous tick (the
process was down, or the event was registered too late) is dropped and logged;
so is a schedule slot more than one interval overdue.  Neither is fired late.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from croniter import croniter

from calendar_automation.core.dispatcher import DispatchJob, TriggerDispatcher
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.metrics import AutomationMetrics, get_tracer
from calendar_automation.core.ports import EntityStore, RuleStore
from calendar_automation.core.rules import (
    RELATIVE_TRIGGERS,
    Rule,
    TransitionKind,
    TriggerContext,
    TriggerType,
)

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_S = 60
DEFAULT_MARKER_RETENTION_HOURS = 48


# ---------------------------------------------------------------------------
# Pure "is due" helpers
# ---------------------------------------------------------------------------


def schedule_slots(
    cron: str,
    start: datetime,
    end: datetime,
    tz: str = "UTC",
) -> list[datetime]:
    """Return every fire time of *cron* in ``[start, end)``, in UTC.

    The expression is interpreted in the *tz* wall clock.
    """
    zone = ZoneInfo(tz)
    local_end = end.astimezone(zone)
    itr = croniter(cron, start.astimezone(zone) - timedelta(microseconds=1))
    slots: list[datetime] = []
    while True:
        slot = itr.get_next(datetime)
        if slot >= local_end:
            return slots
        slots.append(slot.astimezone(UTC))


def next_schedule_slot(
    cron: str,
    now: datetime,
    tick: timedelta,
    tz: str = "UTC",
) -> datetime | None:
    """Return the first fire time of *cron* in ``[now, now + tick)``, in UTC."""
    slots = schedule_slots(cron, now, now + tick, tz)
    return slots[0] if slots else None


def is_schedule_due(cron: str, now: datetime, tick: timedelta, tz: str = "UTC") -> bool:
    return next_schedule_slot(cron, now, tick, tz) is not None


def relative_fire_at(anchor: datetime, offset_minutes: float) -> datetime:
    return anchor - timedelta(minutes=offset_minutes)


def relative_window(fire_at: datetime, width: timedelta) -> tuple[datetime, datetime]:
    return fire_at - width, fire_at


def is_relative_due(
    fire_at: datetime,
    now: datetime,
    width: timedelta,
    since: datetime | None = None,
) -> bool:
    """True while *now* is inside the window, or *fire_at* passed after *since*.

    *since* is the previous tick.  Without it the window is exactly
    ``[fire_at - width, fire_at]``; with it a fire time that fell between the
    two ticks is still due on the later one.
    """
    start, end = relative_window(fire_at, width)
    if since is None:
        since = now
    return start <= now and end >= since


# ---------------------------------------------------------------------------
# Fired markers
# ---------------------------------------------------------------------------


class FiredMarkerStore(Protocol):
    """Remembers which ``(rule_id, occurrence_key)`` pairs have fired."""

    async def claim(self, rule_id: str, occurrence_key: str, at: datetime) -> bool:
        """Record a marker; return ``False`` if it was already present."""
        ...

    async def has_fired(self, rule_id: str, occurrence_key: str) -> bool: ...

    async def prune(self, older_than: datetime) -> int: ...


class InMemoryFiredMarkerStore:
    def __init__(self) -> None:
        self._markers: dict[tuple[str, str], datetime] = {}

    async def claim(self, rule_id: str, occurrence_key: str, at: datetime) -> bool:
        key = (rule_id, occurrence_key)
        if key in self._markers:
            return False
        self._markers[key] = at
        return True

    async def has_fired(self, rule_id: str, occurrence_key: str) -> bool:
        return (rule_id, occurrence_key) in self._markers

    async def prune(self, older_than: datetime) -> int:
        stale = [key for key, at in self._markers.items() if at < older_than]
        for key in stale:
            del self._markers[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._markers)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RelativeRegistration:
    rule_id: str
    owner_id: str
    entity_id: str
    trigger_type: TriggerType
    anchor: datetime
    fire_at: datetime

    @property
    def occurrence_key(self) -> str:
        return f"{self.entity_id}@{self.anchor.isoformat()}"


@dataclass(frozen=True)
class TickSummary:
    schedules_due: int = 0
    relative_due: int = 0
    dispatched: int = 0
    missed: int = 0


class Scheduler:
    """Fires fixed-schedule and relative-offset rules on a periodic tick.

    Parameters
    ----------
    tick_interval:
        Seconds between ticks; also how far ahead a schedule's due window
        reaches past ``now``.
    relative_window:
        How early, in seconds, a relative trigger may fire before its fire
        time.  Defaults to the tick interval.
    marker_retention:
        Fired markers older than this are pruned at the start of each tick.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        entity_store: EntityStore,
        dispatcher: TriggerDispatcher,
        *,
        markers: FiredMarkerStore | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL_S,
        relative_window: float | None = None,
        marker_retention: timedelta = timedelta(hours=DEFAULT_MARKER_RETENTION_HOURS),
        metrics: AutomationMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self._rules = rule_store
        self._entities = entity_store
        self._dispatcher = dispatcher
        self._markers = markers if markers is not None else InMemoryFiredMarkerStore()
        self._tick_interval = tick_interval
        self._tick = timedelta(seconds=tick_interval)
        self._window = timedelta(
            seconds=relative_window if relative_window is not None else tick_interval
        )
        self._retention = marker_retention
        self._metrics = metrics or AutomationMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._registrations: dict[tuple[str, str], RelativeRegistration] = {}
        self._last_tick_at: datetime | None = None
        # End of the window already covered for each schedule rule.
        self._schedule_horizons: dict[str, datetime] = {}
        self._task: asyncio.Task | None = None

    @property
    def registrations(self) -> list[RelativeRegistration]:
        return list(self._registrations.values())

    # -- registration --------------------------------------------------------

    def register_relative(
        self, rule: Rule, entity: CalendarEntity
    ) -> RelativeRegistration | None:
        """Register (or replace) the pending fire of *rule* for *entity*.

        Returns ``None`` (and drops any earlier registration) when the entity
        has no value for the rule's anchor field.
        """
        key = (rule.id, entity.id)
        field_name = rule.trigger.anchor_field
        anchor = getattr(entity, field_name) if field_name else None
        if anchor is None:
            self._registrations.pop(key, None)
            return None
        if anchor.tzinfo is None:
            anchor = anchor.replace(tzinfo=UTC)

        registration = RelativeRegistration(
            rule_id=rule.id,
            owner_id=rule.owner_id,
            entity_id=entity.id,
            trigger_type=rule.trigger.type,
            anchor=anchor,
            fire_at=relative_fire_at(anchor, rule.trigger.offset_minutes),
        )
        previous = self._registrations.get(key)
        if previous == registration:
            return previous
        self._registrations[key] = registration
        if previous is None or previous.anchor != anchor:
            logger.debug(
                "Registered %s for rule %s on event %s, firing at %s",
                rule.trigger.type,
                rule.id,
                entity.id,
                registration.fire_at.isoformat(),
            )
        return registration

    def unregister_entity(self, entity_id: str) -> int:
        keys = [key for key in self._registrations if key[1] == entity_id]
        for key in keys:
            del self._registrations[key]
        return len(keys)

    def unregister_rule(self, rule_id: str) -> int:
        keys = [key for key in self._registrations if key[0] == rule_id]
        for key in keys:
            del self._registrations[key]
        return len(keys)

    def _drop(self, registration: RelativeRegistration) -> None:
        key = (registration.rule_id, registration.entity_id)
        # A lifecycle update may have replaced it while the tick was awaiting.
        if self._registrations.get(key) is registration:
            del self._registrations[key]

    async def prime(self, now: datetime | None = None) -> int:
        """Register relative triggers whose windows have not yet elapsed.

        Used at start-up to recover pending fires after a restart.
        """
        now = now or self._clock()
        rules = await self._rules.list_enabled_rules_by_trigger(list(RELATIVE_TRIGGERS))
        entities_by_owner: dict[str, list[CalendarEntity]] = {}
        registered = 0
        for rule in rules:
            if not rule.enabled:
                continue
            if rule.owner_id not in entities_by_owner:
                entities_by_owner[rule.owner_id] = await self._entities.list_entities(
                    rule.owner_id
                )
            for entity in entities_by_owner[rule.owner_id]:
                registration = self.register_relative(rule, entity)
                if registration is None:
                    continue
                if registration.fire_at < now:
                    self._drop(registration)
                    continue
                registered += 1
        logger.info("Scheduler primed with %d relative registration(s)", registered)
        return registered

    # -- tick -----------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickSummary:
        """Fire everything that came due since the previous tick.

        One rule's store failure is logged and leaves that rule's pending
        work for the next tick; it never aborts the tick for other rules.
        """
        now = now or self._clock()
        since = now if self._last_tick_at is None else min(self._last_tick_at, now)
        with get_tracer().start_as_current_span("automation.tick") as span:
            pruned = await self._markers.prune(now - self._retention)
            if pruned:
                logger.debug("Pruned %d fired marker(s)", pruned)

            schedule_jobs, schedules_missed = await self._collect_schedules(now)
            relative_jobs, relative_due, relative_missed = await self._collect_relative(
                now, since
            )
            self._last_tick_at = now
            schedules_due = len({rule.id for rule, _entity, _ctx in schedule_jobs})

            entries = await self._dispatcher.dispatch_all(schedule_jobs + relative_jobs)
            summary = TickSummary(
                schedules_due=schedules_due,
                relative_due=relative_due,
                dispatched=len(entries),
                missed=schedules_missed + relative_missed,
            )
            span.set_attribute("automation.dispatched", summary.dispatched)
            span.set_attribute("automation.missed", summary.missed)

        if summary.dispatched or summary.missed:
            logger.info(
                "Scheduler tick: %d schedule(s) due, %d relative due, %d dispatched, %d missed",
                summary.schedules_due,
                summary.relative_due,
                summary.dispatched,
                summary.missed,
            )
        return summary

    async def _collect_schedules(self, now: datetime) -> tuple[list[DispatchJob], int]:
        try:
            rules = await self._rules.list_enabled_rules_by_trigger([TriggerType.SCHEDULED_TIME])
        except Exception:
            logger.exception("Listing scheduled rules failed; their slots stay pending")
            return [], 0

        jobs: list[DispatchJob] = []
        missed = 0
        end = now + self._tick
        horizons: dict[str, datetime] = {}
        for rule in rules:
            if not rule.enabled or rule.trigger.cron is None:
                continue
            start = self._schedule_horizons.get(rule.id, now)
            try:
                rule_jobs, rule_missed = await self._collect_schedule(rule, start, end, now)
            except Exception:
                logger.exception("Failed to collect schedule for rule %s", rule.id)
                horizons[rule.id] = start
                continue
            horizons[rule.id] = max(start, end)
            jobs.extend(rule_jobs)
            missed += rule_missed
        self._schedule_horizons = horizons
        return jobs, missed

    async def _collect_schedule(
        self,
        rule: Rule,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> tuple[list[DispatchJob], int]:
        slots = schedule_slots(rule.trigger.cron, start, end, rule.trigger.timezone)
        overdue = [slot for slot in slots if slot < now - self._tick]
        if overdue:
            for _slot in overdue:
                self._metrics.scheduler_missed()
            logger.info(
                "SchedulerMissedWindow: rule %s skipped %d overdue schedule slot(s) from %s",
                rule.id,
                len(overdue),
                overdue[0].isoformat(),
            )

        pending: list[tuple[datetime, str]] = []
        for slot in slots[len(overdue) :]:
            key = f"schedule@{slot.isoformat()}"
            if not await self._markers.has_fired(rule.id, key):
                pending.append((slot, key))
        if not pending:
            return [], len(overdue)

        entities = await self._entities.list_entities(rule.owner_id)
        jobs: list[DispatchJob] = []
        for slot, key in pending:
            if not await self._markers.claim(rule.id, key, now):
                continue
            self._metrics.scheduler_fired("schedule")
            logger.debug(
                "Schedule slot %s due for rule %s over %d event(s)",
                slot.isoformat(),
                rule.id,
                len(entities),
            )
            jobs.extend(
                (
                    rule,
                    entity,
                    TriggerContext(
                        entity_id=entity.id,
                        owner_id=rule.owner_id,
                        transition=TransitionKind.SCHEDULED,
                        trigger_type=TriggerType.SCHEDULED_TIME,
                        occurred_at=slot,
                        occurrence_key=key,
                    ),
                )
                for entity in entities
            )
        return jobs, len(overdue)

    async def _collect_relative(
        self, now: datetime, since: datetime
    ) -> tuple[list[DispatchJob], int, int]:
        jobs: list[DispatchJob] = []
        due = missed = 0
        rules: dict[str, Rule | None] = {}

        for registration in list(self._registrations.values()):
            try:
                status, job = await self._check_relative(registration, rules, now, since)
            except Exception:
                logger.exception(
                    "Relative trigger check failed for rule %s on event %s",
                    registration.rule_id,
                    registration.entity_id,
                )
                continue
            if status == "missed":
                missed += 1
            elif status == "due":
                due += 1
            if job is not None:
                jobs.append(job)
        return jobs, due, missed

    async def _check_relative(
        self,
        registration: RelativeRegistration,
        rules: dict[str, Rule | None],
        now: datetime,
        since: datetime,
    ) -> tuple[str | None, DispatchJob | None]:
        """Classify one registration as ``"due"``, ``"missed"`` or neither."""
        if registration.rule_id not in rules:
            rules[registration.rule_id] = await self._rules.get_rule(registration.rule_id)
        rule = rules[registration.rule_id]
        if rule is None or not rule.enabled or rule.trigger.type != registration.trigger_type:
            self._drop(registration)
            return None, None

        if registration.fire_at < since:
            self._drop(registration)
            if await self._markers.has_fired(rule.id, registration.occurrence_key):
                return None, None
            self._metrics.scheduler_missed()
            logger.info(
                "SchedulerMissedWindow: rule %s for event %s (occurrence %s, fire_at %s)",
                rule.id,
                registration.entity_id,
                registration.occurrence_key,
                registration.fire_at.isoformat(),
            )
            return "missed", None
        if not is_relative_due(registration.fire_at, now, self._window, since):
            return None, None

        entity = await self._entities.get_entity(registration.owner_id, registration.entity_id)
        if entity is None:
            self._drop(registration)
            return "due", None
        current = self.register_relative(rule, entity)
        if current is None:
            return "due", None
        if current.anchor != registration.anchor:
            # Anchor moved since registration.
            if not is_relative_due(current.fire_at, now, self._window, since):
                return "due", None
            registration = current
        if not await self._markers.claim(rule.id, registration.occurrence_key, now):
            self._drop(current)
            return "due", None

        self._drop(current)
        self._metrics.scheduler_fired("relative")
        job = (
            rule,
            entity,
            TriggerContext(
                entity_id=entity.id,
                owner_id=rule.owner_id,
                transition=TransitionKind.RELATIVE,
                trigger_type=registration.trigger_type,
                occurred_at=now,
                occurrence_key=registration.occurrence_key,
            ),
        )
        return "due", job

    # -- loop -------------------------------------------------------------------

    def start(self) -> None:
        """Start the tick loop as a background task."""
        if self._task is not None:
            logger.warning("Scheduler loop already running")
            return
        self._task = asyncio.create_task(self.run_forever())
        logger.info("Started scheduler loop: tick_interval=%ss", self._tick_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler loop stopped")

    async def run_forever(self) -> None:
        """Tick on a fixed cadence measured from loop start, not from tick end."""
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        try:
            while True:
                try:
                    await self.tick(self._clock())
                except Exception:
                    logger.exception("Scheduler tick failed")
                deadline += self._tick_interval
                delay = deadline - loop.time()
                if delay < 0:
                    logger.warning("Scheduler tick overran its interval by %.1fs", -delay)
                    deadline = loop.time()
                    delay = 0
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Scheduler loop cancelled")
            raise
