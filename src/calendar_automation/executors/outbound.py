"""Executors that talk to the outside world: notifications and webhooks."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from calendar_automation.core.entities import CalendarEntity
from calendar_automation.core.errors import ConfigurationError, ExecutionError
from calendar_automation.core.ports import Notification, Notifier
from calendar_automation.executors.base import (
    ActionExecutor,
    ActionOutcome,
    ActionType,
    ExecutionContext,
    optional_text,
    require_mapping,
    require_text,
)

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_S = 10.0
DEFAULT_USER_AGENT = "CalendarAutomation/1.0"

_PRIORITIES = ("low", "normal", "high")


class SendNotificationExecutor(ActionExecutor):
    """Publish a notification to the rule owner and any extra recipients.

    Config keys: ``message`` (required), ``title``, ``priority`` (one of
    ``low``, ``normal``, ``high``) and ``recipient_user_ids``.  When the
    event's creator differs from the owner it is notified as well.
    """

    requires_entity = False

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier

    @property
    def action_type(self) -> ActionType:
        return ActionType.SEND_NOTIFICATION

    def validate_config(self, config: dict[str, Any]) -> None:
        require_text(require_mapping(config), "message")
        optional_text(config, "title")
        priority = config.get("priority")
        if priority is not None and priority not in _PRIORITIES:
            raise ConfigurationError("priority must be one of: low, normal, high")
        recipients = config.get("recipient_user_ids")
        if recipients is not None and (
            not isinstance(recipients, list)
            or not all(isinstance(r, str) and r.strip() for r in recipients)
        ):
            raise ConfigurationError("recipient_user_ids must be a list of user ids")

    async def apply(
        self,
        config: dict[str, Any],
        entity: CalendarEntity | None,
        ctx: ExecutionContext,
    ) -> ActionOutcome:
        recipients = [ctx.owner_id]
        for user_id in config.get("recipient_user_ids") or []:
            if user_id.strip() not in recipients:
                recipients.append(user_id.strip())
        if entity is not None and entity.created_by and entity.created_by not in recipients:
            recipients.append(entity.created_by)

        title = optional_text(config, "title")
        if title is None:
            title = f"Automation: {entity.title}" if entity is not None and entity.title else "Automation"
        priority = config.get("priority") or "normal"

        data: dict[str, Any] = {"rule_id": ctx.rule_id, "trigger_type": str(ctx.trigger.trigger_type)}
        if entity is not None:
            data["event_id"] = entity.id
            data["calendar_id"] = entity.calendar_id

        notification = Notification(
            recipients=tuple(recipients),
            title=title,
            body=config["message"].strip(),
            priority=priority,
            data=data,
        )
        try:
            await self._notifier.publish(notification)
        except Exception as exc:
            raise ExecutionError(
                f"Notification delivery failed: {exc}", action_type=self.action_type
            ) from exc

        return ActionOutcome(
            message=f"Notification sent to {len(recipients)} recipient(s)",
            data={"recipients": recipients, "title": title, "priority": priority},
        )


class WebhookExecutor(ActionExecutor):
    """POST a JSON payload to an external URL.

    Config keys: ``url`` (required, http or https), ``headers``,
    ``custom_payload`` (merged into the body) and ``include_event_data``
    (defaults to true).  Any non-2xx response or transport error is a
    failure.
    """

    requires_entity = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._user_agent = user_agent

    @property
    def action_type(self) -> ActionType:
        return ActionType.WEBHOOK

    def validate_config(self, config: dict[str, Any]) -> None:
        url = require_text(require_mapping(config), "url")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid webhook URL: {url!r}")
        headers = config.get("headers")
        if headers is not None and (
            not isinstance(headers, dict)
            or not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items())
        ):
            raise ConfigurationError("headers must be an object of string values")
        payload = config.get("custom_payload")
        if payload is not None and not isinstance(payload, dict):
            raise ConfigurationError("custom_payload must be an object")

    def _payload(
        self,
        config: dict[str, Any],
        entity: CalendarEntity | None,
        ctx: ExecutionContext,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "rule_id": ctx.rule_id,
            "trigger": ctx.trigger.summary(),
        }
        if config.get("include_event_data", True) and entity is not None:
            payload["event"] = {
                "id": entity.id,
                "title": entity.title,
                "description": entity.description,
                "location": entity.location,
                "start_at": entity.start_at.isoformat() if entity.start_at else None,
                "end_at": entity.end_at.isoformat() if entity.end_at else None,
                "is_all_day": entity.is_all_day,
                "status": str(entity.status) if entity.status is not None else None,
                "color": entity.color,
                "calendar_id": entity.calendar_id,
                "calendar_name": entity.calendar_name,
            }
        payload.update(config.get("custom_payload") or {})
        return payload

    async def apply(
        self,
        config: dict[str, Any],
        entity: CalendarEntity | None,
        ctx: ExecutionContext,
    ) -> ActionOutcome:
        url = config["url"].strip()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **(config.get("headers") or {}),
        }
        try:
            response = await self._client.post(
                url,
                json=self._payload(config, entity, ctx),
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ExecutionError(
                f"Webhook timed out after {self._timeout:g}s", action_type=self.action_type
            ) from exc
        except httpx.HTTPError as exc:
            raise ExecutionError(
                f"Webhook request failed: {exc}", action_type=self.action_type
            ) from exc

        if not response.is_success:
            raise ExecutionError(
                f"Webhook returned HTTP {response.status_code}", action_type=self.action_type
            )

        logger.debug("Webhook %s answered %d for rule %s", url, response.status_code, ctx.rule_id)
        return ActionOutcome(
            message=f"Webhook delivered (HTTP {response.status_code})",
            data={"url": url, "status_code": response.status_code},
        )
