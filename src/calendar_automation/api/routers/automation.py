"""Automation endpoints: audit history, audit statistics, and run-now.

The router holds no business logic; it resolves the caller, checks rule
ownership, and delegates to the :class:`~calendar_automation.engine.AutomationEngine`.
Both dependencies are stubs the host application overrides.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from calendar_automation.api.models import ApiResponse, PaginatedResponse, PaginationMeta
from calendar_automation.api.models.automation import (
    AuditEntryModel,
    AuditStatsModel,
    RunRequest,
    RunSummaryModel,
)
from calendar_automation.core.audit import AuditOutcome
from calendar_automation.core.errors import RuleAccessError, RuleNotFoundError
from calendar_automation.core.retroactive import ScopeWindow
from calendar_automation.core.rules import Rule
from calendar_automation.engine import AutomationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/automation", tags=["automation"])


def _get_engine() -> AutomationEngine:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("AutomationEngine not initialized")


def _get_current_user_id() -> str:
    """Dependency stub; the host application supplies the authenticated user."""
    raise RuntimeError("Caller identity not configured")


async def _owned_rule(engine: AutomationEngine, rule_id: str, user_id: str) -> Rule:
    rule = await engine.rule_store.get_rule(rule_id)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    if rule.owner_id != user_id:
        raise RuleAccessError(rule_id)
    return rule


# ---------------------------------------------------------------------------
# GET /api/automation/rules/{rule_id}/audit-logs
# ---------------------------------------------------------------------------


@router.get("/rules/{rule_id}/audit-logs", response_model=PaginatedResponse[AuditEntryModel])
async def list_audit_logs(
    rule_id: str,
    offset: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Max records to return"),
    outcome: AuditOutcome | None = Query(None, description="Filter by outcome"),
    since: datetime | None = Query(None, description="ISO 8601 lower bound on executed_at"),
    until: datetime | None = Query(None, description="ISO 8601 upper bound on executed_at"),
    engine: AutomationEngine = Depends(_get_engine),
    user_id: str = Depends(_get_current_user_id),
) -> PaginatedResponse[AuditEntryModel]:
    """Return the rule's audit entries, newest first."""
    await _owned_rule(engine, rule_id, user_id)
    page = await engine.audit_log.list_entries(
        rule_id, offset=offset, limit=limit, outcome=outcome, since=since, until=until
    )
    return PaginatedResponse[AuditEntryModel](
        data=[AuditEntryModel.from_entry(entry) for entry in page.entries],
        meta=PaginationMeta(total=page.total, offset=offset, limit=limit),
    )


@router.get("/rules/{rule_id}/audit-logs/stats", response_model=ApiResponse[AuditStatsModel])
async def get_audit_stats(
    rule_id: str,
    engine: AutomationEngine = Depends(_get_engine),
    user_id: str = Depends(_get_current_user_id),
) -> ApiResponse[AuditStatsModel]:
    await _owned_rule(engine, rule_id, user_id)
    stats = await engine.audit_log.stats(rule_id)
    return ApiResponse[AuditStatsModel](data=AuditStatsModel.from_stats(stats))


@router.get("/audit-logs/{entry_id}", response_model=ApiResponse[AuditEntryModel])
async def get_audit_entry(
    entry_id: str,
    engine: AutomationEngine = Depends(_get_engine),
    user_id: str = Depends(_get_current_user_id),
) -> ApiResponse[AuditEntryModel]:
    entry = await engine.audit_log.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Audit entry {entry_id!r} not found")
    if entry.owner_id != user_id:
        raise RuleAccessError(entry.rule_id)
    return ApiResponse[AuditEntryModel](data=AuditEntryModel.from_entry(entry))


# ---------------------------------------------------------------------------
# POST /api/automation/rules/{rule_id}/run
# ---------------------------------------------------------------------------


@router.post("/rules/{rule_id}/run", response_model=ApiResponse[RunSummaryModel])
async def run_rule_now(
    rule_id: str,
    request: RunRequest | None = Body(None),
    engine: AutomationEngine = Depends(_get_engine),
    user_id: str = Depends(_get_current_user_id),
) -> ApiResponse[RunSummaryModel]:
    """Evaluate the rule against the caller's existing events.

    Rate limited per rule; a refused run answers 429 with ``Retry-After``.
    """
    window = None
    if request is not None and (request.start is not None or request.end is not None):
        window = ScopeWindow(start=request.start, end=request.end)
    summary = await engine.run_now(rule_id, user_id, window)
    return ApiResponse[RunSummaryModel](data=RunSummaryModel.from_summary(summary))
