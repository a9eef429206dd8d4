"""
Tests for careflow.actions and careflow.collaborators -- the Action Dispatcher.

Covers: template interpolation (nested paths, unresolved tokens, nested
configs), routing to every collaborator, unconfigured collaborators, raising
collaborators, per-action delays, and webhook delivery over httpx (2xx,
non-2xx, transport errors, explicit body, default payload).
"""

import json

import httpx
import pydantic
import pytest

from careflow.actions import ActionDispatcher, interpolate, interpolate_config
from careflow.collaborators import (
    HttpxWebhookCaller,
    InMemoryAlertBoard,
    InMemoryDocumentStore,
    InMemoryFieldStore,
    InMemoryNotificationSender,
    InMemoryTaskQueue,
)
from careflow.config import EngineSettings
from careflow.models import Action, ActionType


def _action(action_type: ActionType, **config) -> Action:
    return Action(action_id=f"{action_type.value}-1", type=action_type, automatic=True, config=config)


def _webhook_dispatcher(handler, settings: EngineSettings | None = None) -> ActionDispatcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ActionDispatcher(webhooks=HttpxWebhookCaller(client=client), settings=settings)


# ---------------------------------------------------------------------------
# 1. Interpolation
# ---------------------------------------------------------------------------

class TestInterpolation:
    def test_replaces_known_tokens(self):
        assert interpolate("Risk score: {{riskScore}}%", {"riskScore": 72}) == "Risk score: 72%"

    def test_nested_path(self):
        data = {"patient": {"vitals": {"systolic": 182}}}
        assert interpolate("SBP {{patient.vitals.systolic}}", data) == "SBP 182"

    def test_unresolved_token_left_verbatim(self):
        assert interpolate("Hello {{patient.name}}", {"patient": {}}) == "Hello {{patient.name}}"

    def test_none_value_left_verbatim(self):
        assert interpolate("{{x}}", {"x": None}) == "{{x}}"

    def test_text_without_tokens_unchanged(self):
        assert interpolate("plain {text}", {"text": "x"}) == "plain {text}"

    def test_config_is_walked_recursively(self):
        config = {
            "title": "Review {{subject_id}}",
            "recipients": ["{{owner}}", "nurse-desk"],
            "meta": {"priority": 3, "note": "{{missing}}"},
        }
        result = interpolate_config(config, {"subject_id": "p-1", "owner": "dr_lee"})
        assert result == {
            "title": "Review p-1",
            "recipients": ["dr_lee", "nurse-desk"],
            "meta": {"priority": 3, "note": "{{missing}}"},
        }


# ---------------------------------------------------------------------------
# 2. Routing to collaborators
# ---------------------------------------------------------------------------

class TestRouting:
    def test_each_type_reaches_its_collaborator(self):
        dispatcher = ActionDispatcher(
            notifications=InMemoryNotificationSender(),
            tasks=InMemoryTaskQueue(),
            alerts=InMemoryAlertBoard(),
            field_updater=InMemoryFieldStore(),
            documents=InMemoryDocumentStore(),
        )
        data = {"patient_id": "p-9", "score": 12}
        results = dispatcher.dispatch_all(
            [
                _action(ActionType.NOTIFY, recipient="dr_lee", message="Score {{score}}"),
                _action(ActionType.CREATE_TASK, title="Call {{patient_id}}", priority="high"),
                _action(ActionType.CREATE_ALERT, severity="warning", message="Score {{score}}"),
                _action(ActionType.UPDATE_FIELD, entity_id="{{patient_id}}", field="risk", value="high"),
                _action(ActionType.DOCUMENT, text="Reviewed score {{score}}"),
            ],
            data,
        )
        assert all(r.success for r in results), [r.error for r in results]
        assert dispatcher.notifications.sent[0]["message"] == "Score 12"
        task = next(iter(dispatcher.tasks.tasks.values()))
        assert task["title"] == "Call p-9" and task["priority"] == "high"
        assert results[1].output["task_id"] in dispatcher.tasks.tasks
        assert dispatcher.field_updater.records == {"p-9": {"risk": "high"}}
        assert dispatcher.documents.documents[0]["text"] == "Reviewed score 12"

    def test_unconfigured_collaborator_is_a_failure(self):
        result = ActionDispatcher().dispatch(_action(ActionType.CREATE_TASK, title="x"), {})
        assert result.success is False
        assert result.error == "No task creator configured"

    def test_raising_collaborator_is_a_failure(self):
        dispatcher = ActionDispatcher(field_updater=InMemoryFieldStore())
        result = dispatcher.dispatch(_action(ActionType.UPDATE_FIELD, value=1), {})
        assert result.success is False
        assert result.error.startswith("ValueError:")

    def test_one_failure_does_not_stop_the_rest(self):
        dispatcher = ActionDispatcher(notifications=InMemoryNotificationSender())
        results = dispatcher.dispatch_all(
            [_action(ActionType.CREATE_TASK), _action(ActionType.NOTIFY, message="hi")],
            {},
        )
        assert [r.success for r in results] == [False, True]

    def test_delay_waited_before_dispatch(self):
        events: list[str] = []
        sender = InMemoryNotificationSender()
        dispatcher = ActionDispatcher(
            notifications=sender,
            sleep=lambda seconds: events.append(f"sleep {seconds}"),
        )
        delayed = Action(
            action_id="reminder", type=ActionType.NOTIFY, automatic=True, delay_seconds=2.5,
            config={"message": "later"},
        )
        dispatcher.dispatch_all([_action(ActionType.NOTIFY, message="now"), delayed], {})
        assert events == ["sleep 2.5"]
        assert [m["message"] for m in sender.sent] == ["now", "later"]

    def test_negative_delay_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Action(action_id="x", type=ActionType.NOTIFY, delay_seconds=-1)

    def test_in_memory_factory_wires_everything(self):
        dispatcher = ActionDispatcher.in_memory()
        for attr in ("notifications", "tasks", "alerts", "webhooks", "field_updater", "documents"):
            assert getattr(dispatcher, attr) is not None
        dispatcher.webhooks.close()


# ---------------------------------------------------------------------------
# 3. Webhooks
# ---------------------------------------------------------------------------

class TestWebhooks:
    def test_success_posts_data_with_timestamp(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        dispatcher = _webhook_dispatcher(handler)
        result = dispatcher.dispatch(
            _action(ActionType.CALL_WEBHOOK, url="https://ehr.example.org/hooks/{{subject_id}}"),
            {"subject_id": "p-3", "systolic": 181},
        )
        assert result.success is True
        assert result.output["status"] == 202
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://ehr.example.org/hooks/p-3"
        body = json.loads(request.content)
        assert body["systolic"] == 181
        assert "timestamp" in body

    def test_explicit_body_and_method(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        dispatcher = _webhook_dispatcher(handler)
        result = dispatcher.dispatch(
            _action(
                ActionType.CALL_WEBHOOK,
                url="https://ehr.example.org/flags",
                method="put",
                headers={"X-Source": "careflow"},
                body={"flag": "{{flag}}"},
            ),
            {"flag": "crisis"},
        )
        assert result.success is True
        assert seen[0].method == "PUT"
        assert seen[0].headers["X-Source"] == "careflow"
        assert json.loads(seen[0].content) == {"flag": "crisis"}

    def test_default_method_from_settings(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        dispatcher = _webhook_dispatcher(handler, EngineSettings(webhook_default_method="patch"))
        dispatcher.dispatch(_action(ActionType.CALL_WEBHOOK, url="https://ehr.example.org/x"), {})
        assert seen[0].method == "PATCH"

    def test_non_2xx_is_a_failure(self):
        dispatcher = _webhook_dispatcher(lambda request: httpx.Response(500))
        result = dispatcher.dispatch(_action(ActionType.CALL_WEBHOOK, url="https://ehr.example.org/x"), {})
        assert result.success is False
        assert result.error == "Webhook returned HTTP 500"
        assert result.output["status"] == 500

    def test_transport_error_is_a_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = _webhook_dispatcher(handler)
        result = dispatcher.dispatch(_action(ActionType.CALL_WEBHOOK, url="https://ehr.example.org/x"), {})
        assert result.success is False
        assert "Webhook request failed" in result.error

    def test_missing_url_is_a_failure(self):
        dispatcher = _webhook_dispatcher(lambda request: httpx.Response(200))
        result = dispatcher.dispatch(_action(ActionType.CALL_WEBHOOK), {})
        assert result.success is False
        assert "url" in result.error

    def test_invalid_default_method_rejected(self):
        with pytest.raises(ValueError):
            EngineSettings(webhook_default_method="TRACEROUTE")
