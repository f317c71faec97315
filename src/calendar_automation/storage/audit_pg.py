"""PostgreSQL-backed :class:`~calendar_automation.core.audit.AuditLog`.

The table is owned by the host application's migrations; this module only
reads and writes it.  Expected columns::

    id               TEXT PRIMARY KEY
    rule_id          TEXT NOT NULL
    owner_id         TEXT NOT NULL
    outcome          TEXT NOT NULL
    trigger          JSONB NOT NULL
    condition_trace  JSONB NOT NULL
    logic_expression TEXT
    action_results   JSONB NOT NULL
    duration_ms      DOUBLE PRECISION NOT NULL
    executed_at      TIMESTAMPTZ NOT NULL
    message          TEXT

with an index on ``(rule_id, executed_at DESC)``.

Append and trim run in one transaction holding a transaction-scoped advisory
lock derived from the rule id, so concurrent appends for one rule serialize
and the per-rule count never exceeds the cap.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from calendar_automation.core.audit import (
    DEFAULT_MAX_ENTRIES_PER_RULE,
    AuditEntry,
    AuditOutcome,
    AuditPage,
    AuditStats,
    compute_stats,
)
from calendar_automation.executors.base import ActionResult

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, rule_id, owner_id, outcome, trigger, condition_trace, logic_expression, "
    "action_results, duration_ms, executed_at, message"
)


def _decode_json(value: Any) -> Any:
    if isinstance(value, str | bytes):
        return json.loads(value)
    return value


def row_to_entry(row: asyncpg.Record | dict[str, Any]) -> AuditEntry:
    """Map a table row back to an :class:`AuditEntry`."""
    return AuditEntry(
        id=str(row["id"]),
        rule_id=row["rule_id"],
        owner_id=row["owner_id"],
        outcome=AuditOutcome(row["outcome"]),
        trigger=_decode_json(row["trigger"]) or {},
        condition_trace=tuple(_decode_json(row["condition_trace"]) or ()),
        logic_expression=row["logic_expression"],
        action_results=tuple(
            ActionResult(**item) for item in _decode_json(row["action_results"]) or ()
        ),
        duration_ms=float(row["duration_ms"]),
        executed_at=row["executed_at"],
        message=row["message"],
    )


class PostgresAuditLog:
    """Audit log stored in *table*, bounded to *max_entries_per_rule* rows per rule."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        table: str = "automation_audit_log",
        max_entries_per_rule: int = DEFAULT_MAX_ENTRIES_PER_RULE,
    ) -> None:
        if max_entries_per_rule < 1:
            raise ValueError("max_entries_per_rule must be at least 1")
        self._pool = pool
        self._table = table
        self._cap = max_entries_per_rule

    @property
    def max_entries_per_rule(self) -> int:
        return self._cap

    async def append(self, entry: AuditEntry) -> None:
        data = entry.to_dict()
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", entry.rule_id)
                await conn.execute(
                    f"""
                    INSERT INTO {self._table} ({_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8::jsonb, $9, $10, $11)
                    """,
                    entry.id,
                    entry.rule_id,
                    entry.owner_id,
                    str(entry.outcome),
                    json.dumps(data["trigger"]),
                    json.dumps(data["condition_trace"], default=str),
                    entry.logic_expression,
                    json.dumps(data["action_results"], default=str),
                    entry.duration_ms,
                    entry.executed_at,
                    entry.message,
                )
                evicted = await conn.fetchval(
                    f"""
                    WITH stale AS (
                        SELECT id FROM {self._table}
                        WHERE rule_id = $1
                        ORDER BY executed_at DESC, id DESC
                        OFFSET $2
                    ), deleted AS (
                        DELETE FROM {self._table} WHERE id IN (SELECT id FROM stale)
                        RETURNING 1
                    )
                    SELECT count(*) FROM deleted
                    """,
                    entry.rule_id,
                    self._cap,
                )
        if evicted:
            logger.debug("Evicted %d audit entries for rule %s", evicted, entry.rule_id)

    async def list_entries(
        self,
        rule_id: str,
        offset: int = 0,
        limit: int = 20,
        outcome: AuditOutcome | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> AuditPage:
        conditions = ["rule_id = $1"]
        args: list[Any] = [rule_id]
        if outcome is not None:
            args.append(str(outcome))
            conditions.append(f"outcome = ${len(args)}")
        if since is not None:
            args.append(since)
            conditions.append(f"executed_at >= ${len(args)}")
        if until is not None:
            args.append(until)
            conditions.append(f"executed_at <= ${len(args)}")
        where = " AND ".join(conditions)

        total = await self._pool.fetchval(
            f"SELECT count(*) FROM {self._table} WHERE {where}", *args
        )
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM {self._table}
            WHERE {where}
            ORDER BY executed_at DESC, id DESC
            OFFSET ${len(args) + 1} LIMIT ${len(args) + 2}
            """,
            *args,
            offset,
            limit,
        )
        return AuditPage(
            entries=[row_to_entry(row) for row in rows],
            total=int(total or 0),
            offset=offset,
            limit=limit,
        )

    async def get_entry(self, entry_id: str) -> AuditEntry | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM {self._table} WHERE id = $1", entry_id
        )
        return row_to_entry(row) if row is not None else None

    async def count(self, rule_id: str) -> int:
        value = await self._pool.fetchval(
            f"SELECT count(*) FROM {self._table} WHERE rule_id = $1", rule_id
        )
        return int(value or 0)

    async def stats(self, rule_id: str) -> AuditStats:
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM {self._table} WHERE rule_id = $1", rule_id
        )
        return compute_stats(rule_id, [row_to_entry(row) for row in rows], self._cap)

    async def clear(self, rule_id: str) -> int:
        deleted = await self._pool.fetchval(
            f"""
            WITH deleted AS (
                DELETE FROM {self._table} WHERE rule_id = $1 RETURNING 1
            )
            SELECT count(*) FROM deleted
            """,
            rule_id,
        )
        logger.info("Cleared %d audit entries for rule %s", deleted or 0, rule_id)
        return int(deleted or 0)

    async def close(self) -> None:
        await self._pool.close()


async def connect_audit_log(
    dsn: str,
    table: str = "automation_audit_log",
    max_entries_per_rule: int = DEFAULT_MAX_ENTRIES_PER_RULE,
    **pool_kwargs: Any,
) -> PostgresAuditLog:
    """Create a connection pool for *dsn* and wrap it in a :class:`PostgresAuditLog`."""
    pool = await asyncpg.create_pool(dsn=dsn, **pool_kwargs)
    logger.info("Connected audit log to table %s", table)
    return PostgresAuditLog(pool, table=table, max_entries_per_rule=max_entries_per_rule)
