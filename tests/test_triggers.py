"""
Tests for careflow.triggers -- event/condition/action workflow rules.

Covers: event and entity matching, condition conjunction, disabled triggers,
enable / disable toggling, inactive definitions, priority ordering, failed
runs, interpolated action configs, run history, and audit entries.
"""

import pytest

from careflow.actions import ActionDispatcher
from careflow.audit import AuditEventType, AuditLog
from careflow.collaborators import InMemoryAlertBoard, InMemoryNotificationSender, InMemoryTaskQueue
from careflow.models import (
    Action,
    ActionType,
    Condition,
    Definition,
    DefinitionStatus,
    Step,
    Trigger,
    TriggerEvent,
    TriggerRunStatus,
)
from careflow.definitions import set_trigger_enabled
from careflow.errors import NotFoundError
from careflow.repository import InMemoryDefinitionRepository
from careflow.triggers import TriggerRunner


def _make_trigger(trigger_id: str = "high_glucose", **kwargs) -> Trigger:
    defaults = {
        "trigger_id": trigger_id,
        "event": TriggerEvent.ON_THRESHOLD,
        "entity_type": "lab_result",
        "conditions": [
            Condition(field="test", operator="eq", value="glucose"),
            Condition(field="value", operator="gt", value=250),
        ],
        "actions": [
            Action(
                action_id="notify_endo",
                type=ActionType.NOTIFY,
                config={"recipient": "endocrinology", "message": "Glucose {{value}} mg/dL for {{patient_id}}"},
            ),
        ],
    }
    defaults.update(kwargs)
    return Trigger(**defaults)


def _make_definition(
    triggers: list[Trigger],
    definition_id: str = "glycemic",
    status: DefinitionStatus = DefinitionStatus.ACTIVE,
) -> Definition:
    return Definition(
        definition_id=definition_id,
        status=status,
        steps=[Step(step_id="S1", order=1)],
        triggers=triggers,
    )


def _make_runner(
    *definitions: Definition,
    dispatcher: ActionDispatcher | None = None,
    audit_log=None,
    repository: InMemoryDefinitionRepository | None = None,
):
    dispatcher = dispatcher or ActionDispatcher(
        notifications=InMemoryNotificationSender(),
        tasks=InMemoryTaskQueue(),
        alerts=InMemoryAlertBoard(),
    )
    if repository is None:
        repository = InMemoryDefinitionRepository(list(definitions))
    return TriggerRunner(repository, dispatcher, audit_log), dispatcher


_LAB = {"test": "glucose", "value": 320, "patient_id": "p-4"}


class TestTriggerMatching:
    def test_matching_trigger_runs_actions(self):
        runner, dispatcher = _make_runner(_make_definition([_make_trigger()]))
        runs = runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)
        assert len(runs) == 1
        assert runs[0].status == TriggerRunStatus.COMPLETED
        assert runs[0].definition_id == "glycemic"
        assert dispatcher.notifications.sent[0]["message"] == "Glucose 320 mg/dL for p-4"

    def test_event_given_as_string(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        assert len(runner.fire("on_threshold", "lab_result", _LAB)) == 1

    def test_unknown_event_rejected(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        with pytest.raises(ValueError):
            runner.fire("on_tuesday", "lab_result", _LAB)

    def test_all_conditions_must_match(self):
        runner, dispatcher = _make_runner(_make_definition([_make_trigger()]))
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", {"test": "glucose", "value": 180}) == []
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", {"test": "hba1c", "value": 320}) == []
        assert dispatcher.notifications.sent == []

    def test_event_and_entity_must_match(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        assert runner.fire(TriggerEvent.ON_CREATE, "lab_result", _LAB) == []
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "vital_sign", _LAB) == []

    def test_disabled_trigger_skipped(self):
        runner, _ = _make_runner(_make_definition([_make_trigger(enabled=False)]))
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB) == []

    def test_inactive_definition_skipped(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()], status=DefinitionStatus.SUSPENDED))
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB) == []

    def test_trigger_without_conditions_always_matches(self):
        runner, _ = _make_runner(_make_definition([_make_trigger(conditions=[])]))
        assert len(runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", {})) == 1


class TestTriggerOrdering:
    def test_highest_priority_first(self):
        runner, _ = _make_runner(
            _make_definition([_make_trigger("low", priority=1), _make_trigger("high", priority=10)]),
            _make_definition([_make_trigger("mid", priority=5)], definition_id="renal"),
        )
        runs = runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)
        assert [r.trigger_id for r in runs] == ["high", "mid", "low"]

    def test_ties_keep_declaration_order(self):
        runner, _ = _make_runner(_make_definition([_make_trigger("a"), _make_trigger("b")]))
        matches = runner.matching_triggers(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)
        assert [t.trigger_id for _, t in matches] == ["a", "b"]


class TestTriggerFailures:
    def test_failed_action_marks_run_failed(self):
        trigger = _make_trigger(actions=[
            Action(action_id="task", type=ActionType.CREATE_TASK, config={"title": "Review {{patient_id}}"}),
            Action(action_id="hook", type=ActionType.CALL_WEBHOOK, config={"url": "https://x.example"}),
        ])
        runner, dispatcher = _make_runner(_make_definition([trigger]))
        run = runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)[0]
        assert run.status == TriggerRunStatus.FAILED
        assert [r.success for r in run.action_results] == [True, False]
        assert [r.action_id for r in run.failed_actions] == ["hook"]
        assert len(dispatcher.tasks.tasks) == 1

    def test_runs_are_audited(self):
        audit_log = AuditLog()
        runner, _ = _make_runner(_make_definition([_make_trigger()]), audit_log=audit_log)
        runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB, actor_id="lab-interface")
        entries = audit_log.query(event_type=AuditEventType.TRIGGER_FIRED)
        assert len(entries) == 1
        assert entries[0].actor_id == "lab-interface"
        assert entries[0].definition_id == "glycemic"
        assert entries[0].metadata["status"] == "completed"
        assert entries[0].metadata["run_id"] == runner.history("glycemic")[0].run_id


class TestTriggerToggle:
    def test_disable_and_reenable(self):
        repository = InMemoryDefinitionRepository([_make_definition([_make_trigger()])])
        runner, _ = _make_runner(repository=repository)
        audit_log = AuditLog()

        set_trigger_enabled(repository, "glycemic", "high_glucose", False, audit_log=audit_log, actor_id="admin")
        assert runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB) == []

        updated = set_trigger_enabled(repository, "glycemic", "high_glucose", True)
        assert updated.triggers[0].enabled is True
        assert len(runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)) == 1

        entry = audit_log.query(event_type=AuditEventType.TRIGGER_TOGGLED)[0]
        assert entry.actor_id == "admin"
        assert entry.metadata["enabled"] is False

    def test_toggle_keeps_other_triggers(self):
        repository = InMemoryDefinitionRepository([
            _make_definition([_make_trigger("a", enabled=False), _make_trigger("b")]),
        ])
        updated = set_trigger_enabled(repository, "glycemic", "a", True)
        assert [(t.trigger_id, t.enabled) for t in updated.triggers] == [("a", True), ("b", True)]
        assert repository.versions("glycemic") == ["1.0"]

    def test_unknown_trigger_or_definition(self):
        repository = InMemoryDefinitionRepository([_make_definition([_make_trigger()])])
        with pytest.raises(NotFoundError):
            set_trigger_enabled(repository, "glycemic", "nope", False)
        with pytest.raises(NotFoundError):
            set_trigger_enabled(repository, "renal", "high_glucose", False)


class TestTriggerHistory:
    def test_runs_recorded_with_entity(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        run = runner.fire(
            TriggerEvent.ON_THRESHOLD, "lab_result", _LAB, actor_id="lab-interface", entity_id="lab-77",
        )[0]
        assert run.entity_id == "lab-77"
        assert run.triggered_by == "lab-interface"
        history = runner.history("glycemic")
        assert [r.run_id for r in history] == [run.run_id]
        assert history[0].entity_id == "lab-77"

    def test_history_newest_first_and_limited(self):
        runner, _ = _make_runner(_make_definition([_make_trigger("a"), _make_trigger("b", priority=-1)]))
        first = runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB, entity_id="lab-1")
        second = runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB, entity_id="lab-2")
        history = runner.history("glycemic")
        assert [r.run_id for r in history] == [r.run_id for r in reversed(first + second)]
        assert [r.entity_id for r in runner.history("glycemic", limit=2)] == ["lab-2", "lab-2"]
        assert [r.entity_id for r in runner.history("glycemic", trigger_id="a")] == ["lab-2", "lab-1"]

    def test_history_of_unknown_definition_is_empty(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", _LAB)
        assert runner.history("renal") == []

    def test_unmatched_events_leave_no_history(self):
        runner, _ = _make_runner(_make_definition([_make_trigger()]))
        runner.fire(TriggerEvent.ON_THRESHOLD, "lab_result", {"test": "glucose", "value": 100})
        assert runner.history("glycemic") == []
