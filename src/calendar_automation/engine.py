"""Engine facade wiring the registry, audit log, dispatcher, scheduler and runner.

CRUD services call :meth:`AutomationEngine.notify` after committing a change.
The handoff is non-blocking: automation runs in a background task and its
failures are logged, never raised into the originating operation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from calendar_automation.config import AutomationConfig
from calendar_automation.core.audit import AuditEntry, AuditLog, InMemoryAuditLog
from calendar_automation.core.dispatcher import TriggerDispatcher
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.logging import configure_logging
from calendar_automation.core.metrics import AutomationMetrics, init_metrics, init_telemetry
from calendar_automation.core.ports import EntityStore, Notifier, RuleStore
from calendar_automation.core.retroactive import (
    CooldownGate,
    RetroactiveRunner,
    RunSummary,
    ScopeWindow,
)
from calendar_automation.core.rules import TransitionKind
from calendar_automation.core.scheduler import FiredMarkerStore, Scheduler, TickSummary
from calendar_automation.executors import default_registry
from calendar_automation.storage.audit_pg import PostgresAuditLog, connect_audit_log

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Single entry point for hosts embedding the automation engine."""

    def __init__(
        self,
        config: AutomationConfig | None,
        rule_store: RuleStore,
        entity_store: EntityStore,
        *,
        audit_log: AuditLog | None = None,
        notifier: Notifier | None = None,
        http_client: httpx.AsyncClient | None = None,
        markers: FiredMarkerStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or AutomationConfig()
        self.rule_store = rule_store
        self.entity_store = entity_store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._owns_http_client = http_client is None
        self._http = http_client if http_client is not None else httpx.AsyncClient()
        self.metrics = AutomationMetrics()

        self.audit_log: AuditLog = audit_log or InMemoryAuditLog(
            self.config.audit.max_entries_per_rule
        )
        self.registry = default_registry(
            entity_store,
            notifier,
            self._http,
            webhook_timeout=self.config.webhook.timeout_seconds,
            user_agent=self.config.webhook.user_agent,
        )
        self.dispatcher = TriggerDispatcher(
            rule_store,
            self.registry,
            self.audit_log,
            metrics=self.metrics,
            clock=self._clock,
        )
        scheduler_config = self.config.scheduler
        self.scheduler = Scheduler(
            rule_store,
            entity_store,
            self.dispatcher,
            markers=markers,
            tick_interval=scheduler_config.tick_interval_seconds,
            relative_window=scheduler_config.effective_relative_window_seconds,
            marker_retention=timedelta(hours=scheduler_config.marker_retention_hours),
            metrics=self.metrics,
            clock=self._clock,
        )
        self.dispatcher.attach_scheduler(self.scheduler)
        self.cooldown = CooldownGate(self.config.retroactive.cooldown_seconds, clock=self._clock)
        self.runner = RetroactiveRunner(
            rule_store,
            entity_store,
            self.dispatcher,
            self.audit_log,
            cooldown=self.cooldown,
            max_concurrency=self.config.retroactive.max_concurrency,
            metrics=self.metrics,
            clock=self._clock,
        )
        self._pending: set[asyncio.Task] = set()
        self._owned_audit_log: PostgresAuditLog | None = None

    @classmethod
    async def from_config(
        cls,
        config: AutomationConfig,
        rule_store: RuleStore,
        entity_store: EntityStore,
        *,
        notifier: Notifier | None = None,
        markers: FiredMarkerStore | None = None,
    ) -> AutomationEngine:
        """Build an engine for a host process.

        Configures logging and OpenTelemetry from *config* and, when
        ``[automation.db] dsn`` is set, connects the PostgreSQL audit log.
        The engine closes that pool on :meth:`stop`.
        """
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_file=config.logging.log_file,
        )
        init_telemetry(config.name)
        init_metrics(config.name)

        audit_log: PostgresAuditLog | None = None
        if config.db.dsn:
            audit_log = await connect_audit_log(
                config.db.dsn,
                table=config.db.audit_table,
                max_entries_per_rule=config.audit.max_entries_per_rule,
            )
        engine = cls(
            config,
            rule_store,
            entity_store,
            audit_log=audit_log,
            notifier=notifier,
            markers=markers,
        )
        engine._owned_audit_log = audit_log
        return engine

    # -- lifecycle hook -------------------------------------------------------

    def notify(
        self,
        entity: CalendarEntity,
        transition: TransitionKind,
        timestamp: datetime | None = None,
    ) -> asyncio.Task | None:
        """Hand a committed entity change to the engine without waiting for it.

        Returns ``None``, after logging, when the handoff cannot be made: an
        unknown *transition*, or no running event loop to schedule on.
        """
        try:
            kind = TransitionKind(transition)
        except ValueError:
            logger.exception("Ignoring unknown transition %r for event %s", transition, entity.id)
            return None
        coro = self._handle_lifecycle(entity, kind, timestamp or self._clock())
        try:
            task = asyncio.create_task(coro)
        except RuntimeError:
            coro.close()
            logger.exception(
                "No running event loop; automation skipped for %s of event %s", kind, entity.id
            )
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _handle_lifecycle(
        self,
        entity: CalendarEntity,
        transition: TransitionKind,
        timestamp: datetime,
    ) -> list[AuditEntry]:
        try:
            return await self.dispatcher.on_lifecycle_event(entity, transition, timestamp)
        except Exception:
            logger.exception(
                "Automation handling of %s for event %s failed", transition, entity.id
            )
            return []

    async def drain(self) -> None:
        """Wait until every handoff made through :meth:`notify` has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- delegates ------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickSummary:
        return await self.scheduler.tick(now or self._clock())

    async def run_now(
        self,
        rule_id: str,
        owner_id: str,
        window: ScopeWindow | None = None,
    ) -> RunSummary:
        return await self.runner.run_now(rule_id, owner_id, window)

    # -- start/stop -------------------------------------------------------------

    async def start(self) -> None:
        await self.scheduler.prime(self._clock())
        self.scheduler.start()
        logger.info("Automation engine %s started", self.config.name)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.drain()
        if self._owns_http_client:
            await self._http.aclose()
        if self._owned_audit_log is not None:
            await self._owned_audit_log.close()
        logger.info("Automation engine %s stopped", self.config.name)

    async def __aenter__(self) -> AutomationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
