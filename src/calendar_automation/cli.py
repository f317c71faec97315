"""CLI for the calendar automation engine: config checks and rule dry runs."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
import httpx
from pydantic import ValidationError

from calendar_automation import __version__
from calendar_automation.config import ConfigError, load_config
from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError
from calendar_automation.core.evaluator import describe, evaluate
from calendar_automation.core.logging import configure_logging
from calendar_automation.core.rules import (
    LIFECYCLE_TRIGGERS,
    Rule,
    TransitionKind,
    TriggerContext,
    rule_from_dict,
)
from calendar_automation.core.smart_values import extract_smart_values, interpolate
from calendar_automation.executors import default_registry
from calendar_automation.testing import InMemoryEntityStore, RecordingNotifier

logger = logging.getLogger(__name__)

_TRANSITION_FOR_TRIGGER = {trigger: kind for kind, trigger in LIFECYCLE_TRIGGERS.items()}


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def cli(log_level: str) -> None:
    """Calendar automation: rule engine for calendar events."""
    configure_logging(level=log_level)


@cli.command("check-config")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to automation.toml or the directory containing it",
)
def check_config(config_path: Path) -> None:
    """Load and validate a configuration file, then print the effective values."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)

    scheduler = config.scheduler
    click.echo(f"name: {config.name}")
    click.echo(f"scheduler.tick_interval_seconds: {scheduler.tick_interval_seconds:g}")
    click.echo(
        f"scheduler.relative_window_seconds: {scheduler.effective_relative_window_seconds:g}"
    )
    click.echo(f"scheduler.marker_retention_hours: {scheduler.marker_retention_hours:g}")
    click.echo(f"audit.max_entries_per_rule: {config.audit.max_entries_per_rule}")
    click.echo(f"retroactive.cooldown_seconds: {config.retroactive.cooldown_seconds:g}")
    click.echo(f"retroactive.max_concurrency: {config.retroactive.max_concurrency}")
    click.echo(f"webhook.timeout_seconds: {config.webhook.timeout_seconds:g}")
    click.echo(f"webhook.user_agent: {config.webhook.user_agent}")
    click.echo(f"logging: {config.logging.level} ({config.logging.format})")
    click.echo(f"db: {'configured' if config.db.dsn else 'in-memory audit log'}")
    click.echo("Configuration OK")


def _read_json(path: Path, what: str) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"{what} file is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise click.BadParameter(f"{what} file must contain a JSON object")
    return data


def _transition_for(rule: Rule) -> TransitionKind:
    if rule.trigger.is_scheduled:
        return TransitionKind.SCHEDULED
    if rule.trigger.is_relative:
        return TransitionKind.RELATIVE
    return _TRANSITION_FOR_TRIGGER[rule.trigger.type]


async def _dry_run(rule: Rule, entity: CalendarEntity) -> dict[str, Any]:
    context = TriggerContext(
        entity_id=entity.id,
        owner_id=entity.owner_id,
        transition=_transition_for(rule),
        trigger_type=rule.trigger.type,
        occurred_at=datetime.now(UTC),
    )
    tree = rule.condition_tree()
    evaluation = evaluate(tree, entity)
    report: dict[str, Any] = {
        "rule_id": rule.id,
        "matched": evaluation.matched,
        "logic_expression": describe(tree, evaluation),
        "trace": [leaf.to_dict() for leaf in evaluation.trace],
        "actions": [],
    }
    if not evaluation.matched:
        return report

    values = extract_smart_values(context, entity)
    async with httpx.AsyncClient() as client:
        registry = default_registry(InMemoryEntityStore([entity]), RecordingNotifier(), client)
        for action in rule.ordered_actions():
            config = interpolate(action.config, values)
            planned: dict[str, Any] = {"type": action.type, "config": config, "valid": True}
            try:
                registry.get(action.type).validate_config(config)
            except ConfigurationError as exc:
                planned["valid"] = False
                planned["error"] = str(exc)
            report["actions"].append(planned)
    return report


@cli.command("dry-run")
@click.option(
    "--rule",
    "rule_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with the rule definition",
)
@click.option(
    "--event",
    "event_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with the event snapshot",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def dry_run(rule_path: Path, event_path: Path, as_json: bool) -> None:
    """Evaluate a rule against an event and show what would run, without side effects."""
    try:
        rule = rule_from_dict(_read_json(rule_path, "Rule"))
    except ConfigurationError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)
    try:
        entity = CalendarEntity.model_validate(_read_json(event_path, "Event"))
    except ValidationError as exc:
        click.echo(f"Invalid event snapshot: {exc}", err=True)
        sys.exit(1)

    report = asyncio.run(_dry_run(rule, entity))

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    click.echo(f"Rule {rule.id}: {'MATCHED' if report['matched'] else 'not matched'}")
    click.echo(f"  {report['logic_expression']}")
    for leaf in report["trace"]:
        mark = "pass" if leaf["passed"] else "fail"
        line = f"  [{mark}] {leaf['field']} {leaf['operator']} {leaf['expected']!r}"
        line += f" (actual {leaf['actual']!r})"
        if leaf["error"]:
            line += f" error: {leaf['error']}"
        click.echo(line)
    if report["matched"]:
        click.echo(f"Actions ({len(report['actions'])}):")
        for planned in report["actions"]:
            status = "ok" if planned["valid"] else f"invalid: {planned['error']}"
            click.echo(f"  {planned['type']} {json.dumps(planned['config'])} [{status}]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
