"""Built-in action executors and the registry that dispatches to them."""

from __future__ import annotations

import logging

import httpx

from calendar_automation.core.ports import EntityStore, Notifier
from calendar_automation.executors.base import (
    ACTION_CATALOG_VERSION,
    ActionExecutor,
    ActionOutcome,
    ActionResult,
    ActionType,
    ExecutionContext,
)
from calendar_automation.executors.event import (
    AddEventTagExecutor,
    CancelEventExecutor,
    CreateTaskExecutor,
    MoveToCalendarExecutor,
    SetEventColorExecutor,
    UpdateEventDescriptionExecutor,
    UpdateEventTitleExecutor,
)
from calendar_automation.executors.outbound import (
    DEFAULT_USER_AGENT,
    DEFAULT_WEBHOOK_TIMEOUT_S,
    SendNotificationExecutor,
    WebhookExecutor,
)
from calendar_automation.executors.registry import ActionExecutorRegistry

__all__ = [
    "ACTION_CATALOG_VERSION",
    "ActionExecutor",
    "ActionExecutorRegistry",
    "ActionOutcome",
    "ActionResult",
    "ActionType",
    "ExecutionContext",
    "default_registry",
]

logger = logging.getLogger(__name__)


def default_registry(
    entity_store: EntityStore,
    notifier: Notifier | None,
    http_client: httpx.AsyncClient,
    *,
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT_S,
    user_agent: str = DEFAULT_USER_AGENT,
) -> ActionExecutorRegistry:
    """Build a registry holding every built-in action type.

    Without a *notifier* the ``send_notification`` type stays unregistered and
    such actions fail as a configuration error.
    """
    registry = ActionExecutorRegistry(entity_store)
    executors: list[ActionExecutor] = [
        SetEventColorExecutor(entity_store),
        UpdateEventTitleExecutor(entity_store),
        UpdateEventDescriptionExecutor(entity_store),
        AddEventTagExecutor(entity_store),
        CancelEventExecutor(entity_store),
        MoveToCalendarExecutor(entity_store),
        CreateTaskExecutor(entity_store),
        WebhookExecutor(http_client, timeout=webhook_timeout, user_agent=user_agent),
    ]
    if notifier is not None:
        executors.append(SendNotificationExecutor(notifier))
    else:
        logger.info("No notifier configured; send_notification actions are unavailable")
    for executor in executors:
        registry.register(executor)
    return registry
