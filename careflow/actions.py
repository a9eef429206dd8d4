"""
Action Dispatcher -- side effects attached to steps and triggers.

``dispatch(action, data)`` resolves ``{{field.path}}`` placeholders in the
action's configuration against the triggering data, then hands the
resolved configuration to the collaborator for the action's type:

=================  ======================
``notify``         ``NotificationSender``
``create_task``    ``TaskCreator``
``create_alert``   ``AlertCreator``
``call_webhook``   ``WebhookCaller``
``update_field``   ``FieldUpdater``
``document``       ``DocumentRecorder``
=================  ======================

**Failures are data.**  A collaborator that raises, a missing collaborator,
a webhook answering outside 2xx or failing at the transport level -- each
yields an ``ActionResult`` with ``success=False`` and an ``error`` message,
and is logged.  One action's failure never prevents the next one from
running and never aborts the step that triggered it.

``dispatch_all`` honors each action's ``delay_seconds`` before dispatching
it; the sleep function is injectable.

Templating is dotted-path lookup only; tokens that do not resolve stay in
the output verbatim.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from careflow.collaborators import (
    AlertCreator,
    DocumentRecorder,
    FieldUpdater,
    HttpxWebhookCaller,
    InMemoryAlertBoard,
    InMemoryDocumentStore,
    InMemoryFieldStore,
    InMemoryNotificationSender,
    InMemoryTaskQueue,
    NotificationSender,
    TaskCreator,
    WebhookCaller,
)
from careflow.conditions import MISSING, resolve_path
from careflow.config import DEFAULT_SETTINGS, EngineSettings
from careflow.models import Action, ActionResult, ActionType

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")


# ---------------------------------------------------------------------------
# Templating
# ---------------------------------------------------------------------------

def interpolate(template: str, data: Mapping[str, Any]) -> str:
    """Replace ``{{path}}`` tokens with values looked up in ``data``.

    >>> interpolate("Risk score: {{riskScore}}%", {"riskScore": 72})
    'Risk score: 72%'
    >>> interpolate("Risk score: {{riskScore}}%", {})
    'Risk score: {{riskScore}}%'
    """

    def _replace(match: re.Match[str]) -> str:
        value = resolve_path(data, match.group(1))
        if value is MISSING or value is None:
            return match.group(0)
        return str(value)

    return _TOKEN.sub(_replace, template)


def interpolate_config(config: Any, data: Mapping[str, Any]) -> Any:
    """Apply ``interpolate`` to every string inside a nested config bag."""
    if isinstance(config, str):
        return interpolate(config, data)
    if isinstance(config, Mapping):
        return {k: interpolate_config(v, data) for k, v in config.items()}
    if isinstance(config, Sequence) and not isinstance(config, (bytes, bytearray)):
        return [interpolate_config(v, data) for v in config]
    return config


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ActionDispatcher:
    """Routes typed actions to their delivery collaborators.

    Collaborators left as ``None`` are "not configured": actions of that
    type fail with an explanatory error instead of raising.
    """

    def __init__(
        self,
        notifications: Optional[NotificationSender] = None,
        tasks: Optional[TaskCreator] = None,
        alerts: Optional[AlertCreator] = None,
        webhooks: Optional[WebhookCaller] = None,
        field_updater: Optional[FieldUpdater] = None,
        documents: Optional[DocumentRecorder] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.notifications = notifications
        self.tasks = tasks
        self.alerts = alerts
        self.webhooks = webhooks
        self.field_updater = field_updater
        self.documents = documents
        self._settings = settings or DEFAULT_SETTINGS
        self._sleep = sleep
        self._handlers: dict[ActionType, Callable[[dict[str, Any], Mapping[str, Any]], dict[str, Any]]] = {
            ActionType.NOTIFY: self._notify,
            ActionType.CREATE_TASK: self._create_task,
            ActionType.CREATE_ALERT: self._create_alert,
            ActionType.CALL_WEBHOOK: self._call_webhook,
            ActionType.UPDATE_FIELD: self._update_field,
            ActionType.DOCUMENT: self._document,
        }

    @classmethod
    def in_memory(cls, settings: Optional[EngineSettings] = None) -> "ActionDispatcher":
        """A dispatcher wired to recording collaborators and a real httpx
        webhook caller."""
        settings = settings or DEFAULT_SETTINGS
        return cls(
            notifications=InMemoryNotificationSender(),
            tasks=InMemoryTaskQueue(),
            alerts=InMemoryAlertBoard(),
            webhooks=HttpxWebhookCaller(timeout=settings.webhook_timeout_seconds),
            field_updater=InMemoryFieldStore(),
            documents=InMemoryDocumentStore(),
            settings=settings,
        )

    def dispatch(self, action: Action, data: Mapping[str, Any]) -> ActionResult:
        """Resolve an action's configuration and deliver it.

        Args:
            action: The action to perform.
            data: The triggering data bag used for interpolation.

        Returns:
            An ``ActionResult``; never raises for delivery problems.
        """
        config = interpolate_config(action.config, data)
        handler = self._handlers[action.type]
        try:
            output = handler(config, data)
        except _ActionFailed as exc:
            logger.warning("Action %s (%s) failed: %s", action.action_id, action.type.value, exc)
            return ActionResult(
                action_id=action.action_id,
                action_type=action.type,
                success=False,
                output=exc.output,
                error=str(exc),
            )
        except Exception as exc:  # collaborator failures are reported, not raised
            logger.warning(
                "Action %s (%s) raised %s: %s",
                action.action_id, action.type.value, type(exc).__name__, exc,
            )
            return ActionResult(
                action_id=action.action_id,
                action_type=action.type,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        logger.debug("Action %s (%s) succeeded", action.action_id, action.type.value)
        return ActionResult(
            action_id=action.action_id,
            action_type=action.type,
            success=True,
            output=output,
        )

    def dispatch_all(self, actions: Sequence[Action], data: Mapping[str, Any]) -> list[ActionResult]:
        """Dispatch each action independently, in order, waiting out each
        action's ``delay_seconds`` first."""
        results: list[ActionResult] = []
        for action in actions:
            if action.delay_seconds > 0:
                logger.debug("Delaying action %s by %ss", action.action_id, action.delay_seconds)
                self._sleep(action.delay_seconds)
            results.append(self.dispatch(action, data))
        return results

    # -- handlers --

    def _notify(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        return self._require(self.notifications, "notification sender").send(config)

    def _create_task(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        return self._require(self.tasks, "task creator").create_task(config)

    def _create_alert(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        return self._require(self.alerts, "alert creator").create_alert(config)

    def _update_field(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        return self._require(self.field_updater, "field updater").update_field(config)

    def _document(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        return self._require(self.documents, "document recorder").record(config)

    def _call_webhook(self, config: dict[str, Any], data: Mapping[str, Any]) -> dict[str, Any]:
        caller = self._require(self.webhooks, "webhook caller")
        url = config.get("url")
        if not url:
            raise _ActionFailed("call_webhook requires a 'url'")
        method = str(config.get("method") or self._settings.webhook_default_method).upper()
        body = config.get("body")
        if not isinstance(body, Mapping):
            body = {**data, "timestamp": datetime.now(timezone.utc).isoformat()}
        payload = json.loads(json.dumps(body, default=str))

        try:
            status = caller.call(url, method, dict(config.get("headers") or {}), payload)
        except httpx.HTTPError as exc:
            raise _ActionFailed(f"Webhook request failed: {exc}", {"url": url}) from exc

        output = {"url": url, "method": method, "status": status}
        if not 200 <= status < 300:
            raise _ActionFailed(f"Webhook returned HTTP {status}", output)
        return output

    @staticmethod
    def _require(collaborator: Any, label: str) -> Any:
        if collaborator is None:
            raise _ActionFailed(f"No {label} configured")
        return collaborator


class _ActionFailed(Exception):
    """Internal: a handled, expected delivery failure."""

    def __init__(self, message: str, output: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.output = output or {}
