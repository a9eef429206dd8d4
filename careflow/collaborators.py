"""
Delivery collaborators consumed by the action dispatcher.

Notification delivery, task and alert creation, record updates and document
storage belong to other services.  Each is a one-method protocol receiving
the *resolved* (post-interpolation) action configuration and returning a
JSON-serializable result, or raising a transport-level error that the
dispatcher downgrades to a failed ``ActionResult``.

The in-memory implementations record what they receive.  They back the
tests and the example scenario, and are a reasonable default for local
development.  ``HttpxWebhookCaller`` is the real webhook transport.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class NotificationSender(Protocol):
    def send(self, config: dict[str, Any]) -> dict[str, Any]:
        ...


@runtime_checkable
class TaskCreator(Protocol):
    def create_task(self, config: dict[str, Any]) -> dict[str, Any]:
        ...


@runtime_checkable
class AlertCreator(Protocol):
    def create_alert(self, config: dict[str, Any]) -> dict[str, Any]:
        ...


@runtime_checkable
class WebhookCaller(Protocol):
    def call(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> int:
        """Perform the request and return the HTTP status code."""
        ...


@runtime_checkable
class FieldUpdater(Protocol):
    def update_field(self, config: dict[str, Any]) -> dict[str, Any]:
        ...


@runtime_checkable
class DocumentRecorder(Protocol):
    def record(self, config: dict[str, Any]) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryNotificationSender:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(self, config: dict[str, Any]) -> dict[str, Any]:
        self.sent.append(config)
        logger.info("Notification queued for %s: %s", config.get("recipient", "<unset>"), config.get("title", ""))
        return {"sent": True, "message": config.get("message", "")}


class InMemoryTaskQueue:
    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}

    def create_task(self, config: dict[str, Any]) -> dict[str, Any]:
        task_id = str(uuid.uuid4())
        self.tasks[task_id] = {
            "title": config.get("title", ""),
            "description": config.get("description", ""),
            "assign_to": config.get("assign_to"),
            "priority": config.get("priority", "medium"),
            "due_date": config.get("due_date"),
            "status": "pending",
        }
        return {"created": True, "task_id": task_id}


class InMemoryAlertBoard:
    def __init__(self) -> None:
        self.alerts: dict[str, dict[str, Any]] = {}

    def create_alert(self, config: dict[str, Any]) -> dict[str, Any]:
        alert_id = str(uuid.uuid4())
        self.alerts[alert_id] = {
            "type": config.get("type", "general"),
            "severity": config.get("severity", "info"),
            "title": config.get("title", ""),
            "message": config.get("message", ""),
            "status": "active",
        }
        return {"created": True, "alert_id": alert_id}


class InMemoryFieldStore:
    """Keeps ``{entity_id: {field: value}}`` for ``update_field`` actions."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}

    def update_field(self, config: dict[str, Any]) -> dict[str, Any]:
        entity_id = config.get("entity_id")
        field = config.get("field")
        if not entity_id or not field:
            raise ValueError("update_field requires 'entity_id' and 'field'")
        self.records.setdefault(str(entity_id), {})[field] = config.get("value")
        return {"updated": True, "field": field, "value": config.get("value")}


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.documents: list[dict[str, Any]] = []

    def record(self, config: dict[str, Any]) -> dict[str, Any]:
        self.documents.append(config)
        return {"documented": True, "document_index": len(self.documents) - 1}


# ---------------------------------------------------------------------------
# Webhooks over HTTP
# ---------------------------------------------------------------------------

class HttpxWebhookCaller:
    """Webhook transport over an ``httpx.Client``.

    Pass a preconfigured client (auth, transport, base URL) or let the
    caller build one with ``timeout``.  Transport failures surface as
    ``httpx.HTTPError`` for the dispatcher to record.
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 10.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def call(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> int:
        send_body = method.upper() not in ("GET", "DELETE")
        response = self._client.request(
            method.upper(),
            url,
            headers={"Content-Type": "application/json", **headers},
            json=payload if send_body else None,
        )
        logger.debug("Webhook %s %s -> %s", method.upper(), url, response.status_code)
        return response.status_code

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
