"""
Protocol / Workflow Execution Engine.

Drives executions of a definition as an explicit state machine:

    in_progress -> completed
    in_progress -> paused -> in_progress
    in_progress | paused -> abandoned

``completed`` and ``abandoned`` are terminal.

**Step completion** validates the step's required clinician actions, commits
the completed-step record, resolves the next step (Next-Step Conditions in
declaration order, first match wins, else the default edge), and only then
dispatches the step's automatic actions and alerts.  A dispatch failure is
reported in the returned ``StepCompletion``; it never undoes the completion.
A step with no edge to follow completes the execution when every required
step has been completed, and otherwise leaves it in progress with no current
step, awaiting manual resolution through a decision.

**Atomicity.**  Every mutator reads a copy from the execution repository,
validates, mutates the copy, and commits it with a compare-and-set.  A
rejected operation leaves the stored execution untouched.  The engine does
not retry: a ``ConflictError`` goes back to the caller.

**Idempotency.**  ``complete_step`` accepts an optional idempotency key.
Repeating a call with a key that was already applied returns the earlier
completion (``replayed=True``) without dispatching anything again.  Without
a key, a repeated call is a new completion.

**Clinical judgment overrides.**  ``record_decision`` with an option that
leads to a step other than the current one redirects the execution there.
The redirect is recorded on the decision and in the audit log.

The engine keeps no state of its own beyond its injected collaborators.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from careflow.actions import ActionDispatcher, interpolate
from careflow.analytics import ProtocolAnalytics, compute_analytics
from careflow.audit import AuditEntry, AuditEventType, AuditLog
from careflow.conditions import evaluate_condition, first_match
from careflow.config import DEFAULT_SETTINGS, EngineSettings
from careflow.criteria import check_eligibility, matching_options
from careflow.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from careflow.models import (
    Action,
    ActionResult,
    ActionType,
    Candidate,
    CompletedStep,
    Definition,
    DefinitionStatus,
    DecisionOption,
    Deviation,
    DeviationType,
    EligibilityResult,
    Execution,
    ExecutionDecision,
    ExecutionNote,
    ExecutionStatus,
    OutcomeMeasurement,
    StatusChange,
    Step,
    StepCompletion,
    TriggeredAlert,
)
from careflow.repository import DefinitionRepository, ExecutionRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.IN_PROGRESS: {
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.ABANDONED,
    },
    ExecutionStatus.PAUSED: {ExecutionStatus.IN_PROGRESS, ExecutionStatus.ABANDONED},
    ExecutionStatus.COMPLETED: set(),  # terminal state
    ExecutionStatus.ABANDONED: set(),  # terminal state
}


# ---------------------------------------------------------------------------
# Execution engine
# ---------------------------------------------------------------------------

class ExecutionEngine:
    """Creates and advances executions of protocol / workflow definitions.

    Args:
        definitions: Store of (versioned) definitions.
        executions: Store of executions with compare-and-set updates.
        dispatcher: Delivers automatic actions and alerts.  Defaults to a
            dispatcher with no collaborators configured, under which every
            side effect is reported as failed.
        audit_log: Receives one entry per mutation.  A private log is
            created when omitted.
        settings: Engine settings (deviation marker, system actor id).
    """

    def __init__(
        self,
        definitions: DefinitionRepository,
        executions: ExecutionRepository,
        dispatcher: Optional[ActionDispatcher] = None,
        audit_log: Optional[AuditLog] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._definitions = definitions
        self._executions = executions
        self._settings = settings or DEFAULT_SETTINGS
        self._dispatcher = dispatcher or ActionDispatcher(settings=self._settings)
        self._audit_log = audit_log if audit_log is not None else AuditLog()

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    # -- helpers --

    def _get_definition(self, definition_id: str, version: Optional[str] = None) -> Definition:
        definition = self._definitions.get_by_id(definition_id, version)
        if definition is None:
            label = f"'{definition_id}'" + (f" version '{version}'" if version else "")
            raise NotFoundError(f"Definition {label} not found")
        return definition

    def _definition_for(self, execution: Execution) -> Definition:
        """The definition version the execution was started on."""
        return self._get_definition(execution.definition_id, execution.definition_version)

    def _load(self, execution_id: str) -> Execution:
        execution = self._executions.get_by_id(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution '{execution_id}' not found")
        return execution

    def _validate_transition(self, execution: Execution, target: ExecutionStatus) -> None:
        allowed = _VALID_TRANSITIONS.get(execution.status, set())
        if target not in allowed:
            raise InvalidStateError(
                f"Cannot transition execution '{execution.execution_id}' from "
                f"{execution.status.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )

    def _set_status(
        self,
        execution: Execution,
        target: ExecutionStatus,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> None:
        execution.status_history.append(StatusChange(
            from_status=execution.status,
            to_status=target,
            actor_id=actor_id,
            reason=reason,
        ))
        execution.status = target

    def _require_open(self, execution: Execution, operation: str) -> None:
        if execution.is_terminal:
            raise InvalidStateError(
                f"Cannot {operation}: execution '{execution.execution_id}' is "
                f"{execution.status.value}"
            )

    def _emit_audit(
        self,
        event_type: AuditEventType,
        execution: Execution,
        actor_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._audit_log.append(AuditEntry(
            definition_id=execution.definition_id,
            execution_id=execution.execution_id,
            subject_id=execution.subject_id,
            actor_id=actor_id,
            event_type=event_type,
            metadata=metadata or {},
        ))

    # -- queries --

    def get_execution(self, execution_id: str) -> Execution:
        """Raises ``NotFoundError`` for an unknown id."""
        return self._load(execution_id)

    def subject_history(self, subject_id: str) -> list[Execution]:
        """All executions of a subject, most recently started first."""
        return sorted(
            self._executions.list_by_subject(subject_id),
            key=lambda e: e.started_at,
            reverse=True,
        )

    def check_eligibility(
        self,
        definition_id: str,
        candidate: Candidate | Mapping[str, Any],
    ) -> EligibilityResult:
        """Match a candidate against the definition's criteria profile."""
        definition = self._get_definition(definition_id)
        return check_eligibility(definition.criteria, candidate)

    def evaluate_decision_point(
        self,
        definition_id: str,
        decision_point_id: str,
        candidate: Candidate | Mapping[str, Any],
    ) -> list[DecisionOption]:
        """Options of a decision point whose criteria the candidate meets."""
        definition = self._get_definition(definition_id)
        point = definition.get_decision_point(decision_point_id)
        if point is None:
            raise NotFoundError(
                f"Decision point '{decision_point_id}' not found in definition '{definition_id}'"
            )
        return matching_options(point, candidate)

    def get_analytics(self, definition_id: str) -> ProtocolAnalytics:
        definition = self._get_definition(definition_id)
        return compute_analytics(definition, self._executions.list_by_definition(definition_id))

    # -- lifecycle operations --

    def start_execution(self, definition_id: str, subject_id: str, actor_id: str) -> Execution:
        """Start an execution at the definition's initial step.

        Args:
            definition_id: Definition to run (latest version).
            subject_id: Patient or record the execution is about.
            actor_id: Who starts it.

        Returns:
            The stored execution, ``in_progress`` at the lowest-order step.

        Raises:
            NotFoundError: If the definition does not exist.
            InvalidStateError: If the definition is not active.
            ValidationError: If the definition has no steps.
        """
        definition = self._get_definition(definition_id)
        if definition.status != DefinitionStatus.ACTIVE:
            raise InvalidStateError(
                f"Definition '{definition_id}' is {definition.status.value}; "
                "only active definitions can be started"
            )
        first = definition.initial_step()
        if first is None:
            raise ValidationError(f"Definition '{definition_id}' has no initial step")

        execution = Execution(
            definition_id=definition.definition_id,
            definition_version=definition.version,
            subject_id=subject_id,
            initiated_by=actor_id,
            status=ExecutionStatus.IN_PROGRESS,
            current_step_id=first.step_id,
        )
        execution.status_history.append(StatusChange(
            from_status=None,
            to_status=ExecutionStatus.IN_PROGRESS,
            actor_id=actor_id,
        ))
        execution = self._executions.create(execution)

        self._emit_audit(
            AuditEventType.EXECUTION_STARTED,
            execution,
            actor_id,
            metadata={
                "definition_version": definition.version,
                "initial_step_id": first.step_id,
            },
        )
        logger.info(
            "Started execution %s of %s v%s for subject %s",
            execution.execution_id, definition_id, definition.version, subject_id,
        )
        return execution

    def complete_step(
        self,
        execution_id: str,
        step_id: str,
        actor_id: str,
        actions_performed: Sequence[str],
        observed_values: Optional[Mapping[str, Any]] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> StepCompletion:
        """Record a step as completed and advance the execution.

        Args:
            execution_id: The execution.
            step_id: The step being completed.
            actor_id: Clinician or user completing it.
            actions_performed: Ids of the clinician actions performed.
            observed_values: Data documented during the step; branch
                conditions and alert rules are evaluated against it.
            notes: Free text.  Containing the deviation marker acknowledges
                missing required actions.
            idempotency_key: Makes a retried call return the first result.

        Returns:
            A ``StepCompletion`` with the updated execution and the results
            of the side effects dispatched after the commit.

        Raises:
            NotFoundError: Unknown execution or step.
            InvalidStateError: Execution is not in progress.
            ValidationError: Required actions missing without acknowledgment,
                or an idempotency key reused for another step.
        """
        execution = self._load(execution_id)

        if idempotency_key is not None:
            prior = execution.find_completion(idempotency_key)
            if prior is not None:
                return self._replay(execution, prior, step_id, actor_id)

        if execution.status != ExecutionStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Cannot complete step '{step_id}': execution '{execution_id}' is "
                f"{execution.status.value}"
            )
        definition = self._definition_for(execution)
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(
                f"Step '{step_id}' not found in definition '{definition.definition_id}' "
                f"v{definition.version}"
            )

        performed = list(actions_performed)
        missing = [a for a in step.required_action_ids() if a not in performed]
        if missing and not self._deviation_acknowledged(execution, step_id, notes):
            raise ValidationError(
                f"Missing required actions for step '{step_id}': {', '.join(missing)}. "
                "Record a deviation or acknowledge it in the notes.",
                details=missing,
            )

        observed = dict(observed_values or {})
        completed = CompletedStep(
            step_id=step_id,
            completed_by=actor_id,
            actions_performed=performed,
            observed_values=observed,
            notes=notes,
            idempotency_key=idempotency_key,
        )
        execution.completed_steps.append(completed)
        previous_step_id = execution.current_step_id
        next_step_id = self._resolve_next_step(step, observed)

        if next_step_id is not None:
            execution.current_step_id = next_step_id
            execution.awaiting_resolution = False
        else:
            execution.current_step_id = None
            pending = [s for s in definition.required_step_ids() if not execution.has_completed(s)]
            if pending:
                execution.awaiting_resolution = True
            else:
                execution.awaiting_resolution = False
                self._set_status(execution, ExecutionStatus.COMPLETED, actor_id)
                execution.completed_at = datetime.now(timezone.utc)

        execution = self._executions.update(execution)

        self._emit_audit(
            AuditEventType.STEP_COMPLETED,
            execution,
            actor_id,
            metadata={
                "step_id": step_id,
                "previous_step_id": previous_step_id,
                "next_step_id": next_step_id,
                "actions_performed": performed,
                "missing_actions": missing,
            },
        )
        if execution.status == ExecutionStatus.COMPLETED:
            self._emit_audit(AuditEventType.EXECUTION_COMPLETED, execution, actor_id)
            logger.info("Execution %s completed", execution.execution_id)
        elif execution.awaiting_resolution:
            self._emit_audit(
                AuditEventType.AWAITING_RESOLUTION,
                execution,
                self._settings.system_actor_id,
                metadata={"pending_required_steps": pending, "last_step_id": step_id},
            )
            logger.warning(
                "Execution %s has no step to follow after %s; required steps pending: %s",
                execution.execution_id, step_id, pending,
            )

        # Side effects run only once the completion is committed.
        results, alerts = self._run_side_effects(execution, step, actor_id, observed)
        if results or alerts:
            execution = self._attach_side_effects(execution, completed.completion_id, results, alerts)

        stored_step = next(
            cs for cs in execution.completed_steps if cs.completion_id == completed.completion_id
        )
        return StepCompletion(
            execution=execution,
            completed_step=stored_step,
            action_results=results,
            next_step_id=next_step_id,
        )

    def record_decision(
        self,
        execution_id: str,
        decision_point_id: str,
        selected_option_id: str,
        actor_id: str,
        rationale: Optional[str] = None,
        override_reason: Optional[str] = None,
    ) -> Execution:
        """Record a clinician's choice at a decision point.

        When the chosen option leads to a step other than the current one,
        the execution is redirected there and the redirect is audited as an
        override.

        Raises:
            NotFoundError: Unknown execution, decision point or option.
            InvalidStateError: Execution is terminal.
        """
        execution = self._load(execution_id)
        self._require_open(execution, "record a decision")
        definition = self._definition_for(execution)
        point = definition.get_decision_point(decision_point_id)
        if point is None:
            raise NotFoundError(f"Decision point '{decision_point_id}' not found")
        option = point.get_option(selected_option_id)
        if option is None:
            raise NotFoundError(
                f"Option '{selected_option_id}' not found in decision point '{decision_point_id}'"
            )

        decision = ExecutionDecision(
            decision_point_id=decision_point_id,
            selected_option_id=selected_option_id,
            decided_by=actor_id,
            rationale=rationale,
            override_reason=override_reason,
        )
        target = option.leads_to
        if (
            target is not None
            and definition.get_step(target) is not None
            and target != execution.current_step_id
        ):
            decision.redirected_from = execution.current_step_id
            decision.redirected_to = target
            execution.current_step_id = target
            execution.awaiting_resolution = False
        execution.decisions.append(decision)
        execution = self._executions.update(execution)

        self._emit_audit(
            AuditEventType.DECISION_RECORDED,
            execution,
            actor_id,
            metadata={
                "decision_point_id": decision_point_id,
                "selected_option_id": selected_option_id,
                "rationale": rationale,
            },
        )
        if decision.redirected_to is not None:
            self._emit_audit(
                AuditEventType.DECISION_OVERRIDE,
                execution,
                actor_id,
                metadata={
                    "decision_point_id": decision_point_id,
                    "redirected_from": decision.redirected_from,
                    "redirected_to": decision.redirected_to,
                    "override_reason": override_reason,
                },
            )
            logger.info(
                "Execution %s redirected from %s to %s by decision %s",
                execution.execution_id, decision.redirected_from, target, decision_point_id,
            )
        return execution

    def record_deviation(
        self,
        execution_id: str,
        step_id: str,
        deviation_type: DeviationType | str,
        reason: str,
        actor_id: Optional[str] = None,
        description: str = "",
        approved_by: Optional[str] = None,
        risk_assessment: Optional[str] = None,
    ) -> Execution:
        """Document a departure from a step's prescribed actions.

        An ``omission`` deviation on a step acknowledges its missing
        required actions for a later ``complete_step``.

        Raises:
            NotFoundError: Unknown execution or step.
            InvalidStateError: Execution is terminal.
            ValidationError: Unknown deviation type.
        """
        execution = self._load(execution_id)
        self._require_open(execution, "record a deviation")
        try:
            dev_type = DeviationType(deviation_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown deviation type '{deviation_type}'. "
                f"Expected one of {[t.value for t in DeviationType]}"
            ) from exc
        definition = self._definition_for(execution)
        if definition.get_step(step_id) is None:
            raise NotFoundError(f"Step '{step_id}' not found in definition '{definition.definition_id}'")

        deviation = Deviation(
            step_id=step_id,
            type=dev_type,
            description=description,
            reason=reason,
            approved_by=approved_by,
            risk_assessment=risk_assessment,
            documented_by=actor_id,
        )
        execution.deviations.append(deviation)
        execution = self._executions.update(execution)

        self._emit_audit(
            AuditEventType.DEVIATION_RECORDED,
            execution,
            actor_id or self._settings.system_actor_id,
            metadata={
                "deviation_id": deviation.deviation_id,
                "step_id": step_id,
                "type": dev_type.value,
                "reason": reason,
                "approved_by": approved_by,
            },
        )
        return execution

    def record_outcome(
        self,
        execution_id: str,
        outcome_id: str,
        achieved: bool,
        measured_value: Optional[float] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Execution:
        """Record an outcome measurement.

        A finished execution is immutable, so outcomes must be recorded
        before the final step completes it.

        Raises:
            NotFoundError: Unknown execution or outcome.
            InvalidStateError: Execution is terminal.
        """
        execution = self._load(execution_id)
        self._require_open(execution, "record an outcome")
        definition = self._definition_for(execution)
        if definition.get_outcome(outcome_id) is None:
            raise NotFoundError(f"Outcome '{outcome_id}' not found in definition '{definition.definition_id}'")

        execution.outcomes.append(OutcomeMeasurement(
            outcome_id=outcome_id,
            achieved=achieved,
            measured_value=measured_value,
            measured_by=actor_id,
            notes=notes,
        ))
        execution = self._executions.update(execution)

        self._emit_audit(
            AuditEventType.OUTCOME_RECORDED,
            execution,
            actor_id or self._settings.system_actor_id,
            metadata={"outcome_id": outcome_id, "achieved": achieved, "measured_value": measured_value},
        )
        return execution

    def add_note(
        self,
        execution_id: str,
        author_id: str,
        content: str,
        author_name: str = "",
    ) -> Execution:
        """Append a free-text clinical note to an open execution.

        Raises:
            NotFoundError: Unknown execution.
            InvalidStateError: Execution is terminal.
            ValidationError: ``content`` is empty.
        """
        execution = self._load(execution_id)
        self._require_open(execution, "add a note")
        if not content or not content.strip():
            raise ValidationError("A note needs content.")
        note = ExecutionNote(author_id=author_id, author_name=author_name, content=content)
        execution.notes.append(note)
        execution = self._executions.update(execution)
        self._emit_audit(
            AuditEventType.NOTE_ADDED,
            execution,
            author_id,
            metadata={"note_id": note.note_id},
        )
        return execution

    def pause(self, execution_id: str, reason: Optional[str] = None, actor_id: Optional[str] = None) -> Execution:
        """in_progress -> paused."""
        actor = actor_id or self._settings.system_actor_id
        execution = self._load(execution_id)
        self._validate_transition(execution, ExecutionStatus.PAUSED)
        self._set_status(execution, ExecutionStatus.PAUSED, actor, reason)
        execution = self._executions.update(execution)
        self._emit_audit(AuditEventType.EXECUTION_PAUSED, execution, actor, metadata={"reason": reason})
        return execution

    def resume(self, execution_id: str, actor_id: Optional[str] = None) -> Execution:
        """paused -> in_progress."""
        actor = actor_id or self._settings.system_actor_id
        execution = self._load(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise InvalidStateError(
                f"Cannot resume execution '{execution_id}': it is {execution.status.value}, not paused"
            )
        self._set_status(execution, ExecutionStatus.IN_PROGRESS, actor)
        execution = self._executions.update(execution)
        self._emit_audit(AuditEventType.EXECUTION_RESUMED, execution, actor)
        return execution

    def abandon(self, execution_id: str, reason: str, actor_id: Optional[str] = None) -> Execution:
        """Irreversibly abandon a non-terminal execution.

        Raises:
            InvalidStateError: Execution is already terminal.
            ValidationError: ``reason`` is empty.
        """
        actor = actor_id or self._settings.system_actor_id
        execution = self._load(execution_id)
        self._validate_transition(execution, ExecutionStatus.ABANDONED)
        if not reason or not reason.strip():
            raise ValidationError(
                "An abandon reason is mandatory. Cannot abandon an execution "
                "without documenting why."
            )
        self._set_status(execution, ExecutionStatus.ABANDONED, actor, reason)
        execution.abandoned_reason = reason
        execution.current_step_id = None
        execution.awaiting_resolution = False
        execution = self._executions.update(execution)
        self._emit_audit(AuditEventType.EXECUTION_ABANDONED, execution, actor, metadata={"reason": reason})
        logger.info("Execution %s abandoned: %s", execution_id, reason)
        return execution

    # -- step completion internals --

    def _deviation_acknowledged(self, execution: Execution, step_id: str, notes: Optional[str]) -> bool:
        if notes and self._settings.deviation_marker.lower() in notes.lower():
            return True
        return any(
            d.step_id == step_id and d.type == DeviationType.OMISSION
            for d in execution.deviations
        )

    @staticmethod
    def _resolve_next_step(step: Step, observed: Mapping[str, Any]) -> Optional[str]:
        matched = first_match(step.conditions, observed)
        if matched is not None:
            return matched.next_step_id
        return step.default_next_step_id

    def _replay(
        self,
        execution: Execution,
        prior: CompletedStep,
        step_id: str,
        actor_id: str,
    ) -> StepCompletion:
        if prior.step_id != step_id:
            raise ValidationError(
                f"Idempotency key '{prior.idempotency_key}' was already used for step "
                f"'{prior.step_id}', not '{step_id}'"
            )
        self._emit_audit(
            AuditEventType.STEP_COMPLETION_REPLAYED,
            execution,
            actor_id,
            metadata={"step_id": step_id, "completion_id": prior.completion_id},
        )
        step = self._definition_for(execution).get_step(step_id)
        next_step_id = self._resolve_next_step(step, prior.observed_values) if step else None
        return StepCompletion(
            execution=execution,
            completed_step=prior,
            action_results=list(prior.action_results),
            next_step_id=next_step_id,
            replayed=True,
        )

    def _run_side_effects(
        self,
        execution: Execution,
        step: Step,
        actor_id: str,
        observed: Mapping[str, Any],
    ) -> tuple[list[ActionResult], list[TriggeredAlert]]:
        data: dict[str, Any] = {
            **observed,
            "execution_id": execution.execution_id,
            "definition_id": execution.definition_id,
            "subject_id": execution.subject_id,
            "step_id": step.step_id,
            "step_name": step.name,
            "actor_id": actor_id,
        }

        alerts: list[TriggeredAlert] = []
        alert_actions: list[Action] = []
        for i, rule in enumerate(step.alerts):
            if not evaluate_condition(rule.condition, observed):
                continue
            message = interpolate(rule.message, data)
            alerts.append(TriggeredAlert(step_id=step.step_id, severity=rule.severity, message=message))
            alert_actions.append(Action(
                action_id=f"{step.step_id}:alert:{i}",
                type=ActionType.CREATE_ALERT,
                automatic=True,
                config={
                    "type": "protocol_step",
                    "severity": rule.severity.value,
                    "title": step.name or step.step_id,
                    "message": message,
                    "execution_id": execution.execution_id,
                    "subject_id": execution.subject_id,
                },
            ))
            self._emit_audit(
                AuditEventType.ALERT_RAISED,
                execution,
                self._settings.system_actor_id,
                metadata={"step_id": step.step_id, "severity": rule.severity.value, "message": message},
            )

        results = self._dispatcher.dispatch_all([*step.automatic_actions(), *alert_actions], data)
        for result in results:
            if not result.success:
                self._emit_audit(
                    AuditEventType.ACTION_FAILED,
                    execution,
                    self._settings.system_actor_id,
                    metadata={
                        "step_id": step.step_id,
                        "action_id": result.action_id,
                        "action_type": result.action_type.value,
                        "error": result.error,
                    },
                )
        return results, alerts

    def _attach_side_effects(
        self,
        execution: Execution,
        completion_id: str,
        results: list[ActionResult],
        alerts: list[TriggeredAlert],
    ) -> Execution:
        """Store dispatch results on the committed completed-step record."""
        current = self._load(execution.execution_id)
        for cs in current.completed_steps:
            if cs.completion_id == completion_id:
                cs.action_results = results
                cs.triggered_alerts = alerts
                break
        try:
            return self._executions.update(current)
        except ConflictError as exc:
            logger.warning(
                "Could not attach action results to execution %s: %s",
                execution.execution_id, exc,
            )
            for cs in execution.completed_steps:
                if cs.completion_id == completion_id:
                    cs.action_results = results
                    cs.triggered_alerts = alerts
            return execution
