"""Request/response models for the automation audit and run-now endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from calendar_automation.core.audit import AuditEntry, AuditStats
from calendar_automation.core.retroactive import RunSummary
from calendar_automation.executors.base import ActionResult


class ActionResultModel(BaseModel):
    action_type: str
    applied: bool
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    action_id: str | None = None
    order: int = 0
    attempted: bool = True
    duration_ms: float = 0.0

    @classmethod
    def from_result(cls, result: ActionResult) -> ActionResultModel:
        return cls.model_validate(result.to_dict())


class AuditEntryModel(BaseModel):
    """One rule execution as recorded in the audit trail."""

    id: str
    rule_id: str
    owner_id: str
    outcome: str
    trigger: dict[str, Any]
    condition_trace: list[dict[str, Any]]
    logic_expression: str | None = None
    action_results: list[ActionResultModel]
    duration_ms: float
    executed_at: datetime
    message: str | None = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> AuditEntryModel:
        return cls(
            id=entry.id,
            rule_id=entry.rule_id,
            owner_id=entry.owner_id,
            outcome=str(entry.outcome),
            trigger=dict(entry.trigger),
            condition_trace=[dict(leaf) for leaf in entry.condition_trace],
            logic_expression=entry.logic_expression,
            action_results=[ActionResultModel.from_result(r) for r in entry.action_results],
            duration_ms=entry.duration_ms,
            executed_at=entry.executed_at,
            message=entry.message,
        )


class BufferUsage(BaseModel):
    current: int
    max: int
    percent_used: float
    near_capacity: bool


class AuditStatsModel(BaseModel):
    rule_id: str
    total: int
    by_outcome: dict[str, int]
    average_duration_ms: float
    last_executed_at: datetime | None = None
    buffer: BufferUsage

    @classmethod
    def from_stats(cls, stats: AuditStats) -> AuditStatsModel:
        return cls(
            rule_id=stats.rule_id,
            total=stats.total,
            by_outcome=dict(stats.by_outcome),
            average_duration_ms=stats.average_duration_ms,
            last_executed_at=stats.last_executed_at,
            buffer=BufferUsage(
                current=stats.total,
                max=stats.max_entries,
                percent_used=stats.percent_used,
                near_capacity=stats.near_capacity,
            ),
        )


class RunRequest(BaseModel):
    """Optional bounds on the events' start time for a retroactive run."""

    start: datetime | None = None
    end: datetime | None = None


class RunSummaryModel(BaseModel):
    rule_id: str
    evaluated: int
    matched: int
    executed: int
    failed: int
    duration_ms: float = 0.0

    @classmethod
    def from_summary(cls, summary: RunSummary) -> RunSummaryModel:
        return cls.model_validate(summary.to_dict())
