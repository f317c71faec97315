"""Audit trail of rule executions.

Every terminal state of a dispatch produces exactly one :class:`AuditEntry`.
Entries are retained per rule in a bounded buffer: once a rule holds
``max_entries_per_rule`` entries, appending a new one evicts the oldest.
Appends and evictions for one rule happen under that rule's lock, so the
count never exceeds the cap; different rules never contend.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from calendar_automation.executors.base import ActionResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES_PER_RULE = 1000
NEAR_CAPACITY_PERCENT = 90.0


class AuditOutcome(StrEnum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"


def classify_outcome(matched: bool, action_results: Sequence[ActionResult]) -> AuditOutcome:
    """Derive the overall outcome from per-action results.

    Only attempted actions count; a matched rule that attempted nothing is a
    success.
    """
    if not matched:
        return AuditOutcome.SKIPPED
    attempted = [result for result in action_results if result.attempted]
    if not attempted:
        return AuditOutcome.SUCCESS
    applied = sum(1 for result in attempted if result.applied)
    if applied == len(attempted):
        return AuditOutcome.SUCCESS
    if applied == 0:
        return AuditOutcome.FAILURE
    return AuditOutcome.PARTIAL_SUCCESS


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one rule dispatch."""

    rule_id: str
    owner_id: str
    outcome: AuditOutcome
    trigger: dict[str, Any] = field(default_factory=dict)
    condition_trace: tuple[dict[str, Any], ...] = ()
    logic_expression: str | None = None
    action_results: tuple[ActionResult, ...] = ()
    duration_ms: float = 0.0
    executed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    message: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def conditions_passed(self) -> bool:
        return self.outcome not in (AuditOutcome.SKIPPED, AuditOutcome.RATE_LIMITED)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = str(self.outcome)
        data["executed_at"] = self.executed_at.isoformat()
        data["condition_trace"] = list(data["condition_trace"])
        data["action_results"] = list(data["action_results"])
        return data


@dataclass(frozen=True)
class AuditPage:
    entries: list[AuditEntry]
    total: int
    offset: int
    limit: int


@dataclass(frozen=True)
class AuditStats:
    """Per-rule aggregate over the retained entries."""

    rule_id: str
    total: int
    by_outcome: dict[str, int]
    average_duration_ms: float
    last_executed_at: datetime | None
    max_entries: int

    @property
    def percent_used(self) -> float:
        if self.max_entries <= 0:
            return 0.0
        return round(self.total / self.max_entries * 100, 2)

    @property
    def near_capacity(self) -> bool:
        return self.percent_used >= NEAR_CAPACITY_PERCENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "total": self.total,
            "by_outcome": dict(self.by_outcome),
            "average_duration_ms": self.average_duration_ms,
            "last_executed_at": (
                self.last_executed_at.isoformat() if self.last_executed_at else None
            ),
            "buffer": {
                "current": self.total,
                "max": self.max_entries,
                "percent_used": self.percent_used,
                "near_capacity": self.near_capacity,
            },
        }


def compute_stats(rule_id: str, entries: Sequence[AuditEntry], max_entries: int) -> AuditStats:
    by_outcome = {str(outcome): 0 for outcome in AuditOutcome}
    for entry in entries:
        by_outcome[str(entry.outcome)] += 1
    average = (
        round(sum(entry.duration_ms for entry in entries) / len(entries), 3) if entries else 0.0
    )
    return AuditStats(
        rule_id=rule_id,
        total=len(entries),
        by_outcome=by_outcome,
        average_duration_ms=average,
        last_executed_at=max((entry.executed_at for entry in entries), default=None),
        max_entries=max_entries,
    )


class AuditLog(Protocol):
    """Bounded, per-rule audit storage."""

    async def append(self, entry: AuditEntry) -> None: ...

    async def list_entries(
        self,
        rule_id: str,
        offset: int = 0,
        limit: int = 20,
        outcome: AuditOutcome | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> AuditPage: ...

    async def get_entry(self, entry_id: str) -> AuditEntry | None: ...

    async def count(self, rule_id: str) -> int: ...

    async def stats(self, rule_id: str) -> AuditStats: ...

    async def clear(self, rule_id: str) -> int: ...


def _matches(
    entry: AuditEntry,
    outcome: AuditOutcome | None,
    since: datetime | None,
    until: datetime | None,
) -> bool:
    if outcome is not None and entry.outcome != outcome:
        return False
    if since is not None and entry.executed_at < since:
        return False
    if until is not None and entry.executed_at > until:
        return False
    return True


class InMemoryAuditLog:
    """Process-local audit log backed by one ``deque(maxlen=cap)`` per rule."""

    def __init__(self, max_entries_per_rule: int = DEFAULT_MAX_ENTRIES_PER_RULE) -> None:
        if max_entries_per_rule < 1:
            raise ValueError("max_entries_per_rule must be at least 1")
        self._cap = max_entries_per_rule
        self._buffers: dict[str, deque[AuditEntry]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def max_entries_per_rule(self) -> int:
        return self._cap

    def _lock(self, rule_id: str) -> asyncio.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            lock = self._locks[rule_id] = asyncio.Lock()
        return lock

    async def append(self, entry: AuditEntry) -> None:
        async with self._lock(entry.rule_id):
            buffer = self._buffers.get(entry.rule_id)
            if buffer is None:
                buffer = self._buffers[entry.rule_id] = deque(maxlen=self._cap)
            if len(buffer) == self._cap:
                logger.debug("Audit buffer for rule %s full; evicting oldest entry", entry.rule_id)
            buffer.append(entry)

    async def list_entries(
        self,
        rule_id: str,
        offset: int = 0,
        limit: int = 20,
        outcome: AuditOutcome | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> AuditPage:
        async with self._lock(rule_id):
            snapshot = list(self._buffers.get(rule_id, ()))
        filtered = [e for e in reversed(snapshot) if _matches(e, outcome, since, until)]
        return AuditPage(
            entries=filtered[offset : offset + limit],
            total=len(filtered),
            offset=offset,
            limit=limit,
        )

    async def get_entry(self, entry_id: str) -> AuditEntry | None:
        for buffer in self._buffers.values():
            for entry in buffer:
                if entry.id == entry_id:
                    return entry
        return None

    async def count(self, rule_id: str) -> int:
        return len(self._buffers.get(rule_id, ()))

    async def stats(self, rule_id: str) -> AuditStats:
        async with self._lock(rule_id):
            snapshot = list(self._buffers.get(rule_id, ()))
        return compute_stats(rule_id, snapshot, self._cap)

    async def clear(self, rule_id: str) -> int:
        async with self._lock(rule_id):
            buffer = self._buffers.pop(rule_id, None)
        removed = len(buffer) if buffer is not None else 0
        logger.info("Cleared %d audit entries for rule %s", removed, rule_id)
        return removed
