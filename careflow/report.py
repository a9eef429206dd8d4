"""
Execution Review Report.

Builds a structured report of one execution for clinician review: where the
execution stands, which required steps are still pending, and a
chronological timeline of everything recorded on it (start, completed steps,
decisions and redirects, deviations, notes, outcome measurements, status
changes).

DISCLAIMER: Execution reports are summaries of documented protocol activity.
They do not constitute clinical assessments or treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from careflow.errors import ValidationError
from careflow.models import Definition, Execution


class ExecutionReport:
    """A structured execution summary for clinician review."""

    def __init__(
        self,
        execution_id: str,
        definition_id: str,
        definition_version: str,
        definition_name: str,
        subject_id: str,
        status: str,
        current_step_id: str | None,
        awaiting_resolution: bool,
        pending_required_steps: list[str],
        timeline: list[dict[str, str]],
        generated_at: str,
    ) -> None:
        self.execution_id = execution_id
        self.definition_id = definition_id
        self.definition_version = definition_version
        self.definition_name = definition_name
        self.subject_id = subject_id
        self.status = status
        self.current_step_id = current_step_id
        self.awaiting_resolution = awaiting_resolution
        self.pending_required_steps = pending_required_steps
        self.timeline = timeline
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Execution Review Report",
            "disclaimer": (
                "This report summarizes documented protocol activity for clinician review. "
                "It does not constitute a clinical assessment or treatment recommendation."
            ),
            "execution_id": self.execution_id,
            "definition_id": self.definition_id,
            "definition_version": self.definition_version,
            "definition_name": self.definition_name,
            "subject_id": self.subject_id,
            "status": self.status,
            "current_step_id": self.current_step_id,
            "awaiting_resolution": self.awaiting_resolution,
            "pending_required_steps": self.pending_required_steps,
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"ExecutionReport(execution_id={self.execution_id}, "
            f"status={self.status}, events={len(self.timeline)})"
        )


def generate_execution_report(execution: Execution, definition: Definition) -> ExecutionReport:
    """Generate a review report for an execution.

    Args:
        execution: The execution to summarize.
        definition: The definition version the execution runs on.

    Raises:
        ValidationError: If ``definition`` is not the version the execution
            is bound to.
    """
    if (execution.definition_id, execution.definition_version) != (
        definition.definition_id,
        definition.version,
    ):
        raise ValidationError(
            f"Execution '{execution.execution_id}' runs on {execution.definition_id} "
            f"v{execution.definition_version}, not {definition.definition_id} v{definition.version}"
        )

    pending = [s for s in definition.required_step_ids() if not execution.has_completed(s)]

    return ExecutionReport(
        execution_id=execution.execution_id,
        definition_id=definition.definition_id,
        definition_version=definition.version,
        definition_name=definition.name,
        subject_id=execution.subject_id,
        status=execution.status.value,
        current_step_id=execution.current_step_id,
        awaiting_resolution=execution.awaiting_resolution,
        pending_required_steps=pending,
        timeline=_build_timeline(execution, definition),
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(execution: Execution, definition: Definition) -> list[dict[str, str]]:
    """Chronological list of recorded events; ties keep recording order."""
    events: list[tuple[datetime, dict[str, str]]] = [(
        execution.started_at,
        {
            "event": "started",
            "timestamp": execution.started_at.isoformat(),
            "description": f"Execution started by {execution.initiated_by}.",
        },
    )]

    def step_name(step_id: str | None) -> str:
        step = definition.get_step(step_id) if step_id else None
        return (step.name or step.step_id) if step else str(step_id)

    for cs in execution.completed_steps:
        description = f"Step '{step_name(cs.step_id)}' completed by {cs.completed_by}."
        failed = [r.action_id for r in cs.action_results if not r.success]
        if failed:
            description += f" Failed actions: {', '.join(failed)}."
        for alert in cs.triggered_alerts:
            description += f" Alert ({alert.severity.value}): {alert.message}"
        events.append((cs.completed_at, {
            "event": "step_completed",
            "timestamp": cs.completed_at.isoformat(),
            "description": description,
        }))

    for decision in execution.decisions:
        description = (
            f"Decision '{decision.decision_point_id}': option "
            f"'{decision.selected_option_id}' chosen by {decision.decided_by}."
        )
        if decision.redirected_to is not None:
            description += (
                f" Redirected from '{step_name(decision.redirected_from)}' "
                f"to '{step_name(decision.redirected_to)}'."
            )
        events.append((decision.decided_at, {
            "event": "decision",
            "timestamp": decision.decided_at.isoformat(),
            "description": description,
        }))

    for dev in execution.deviations:
        risk = f" Risk: {dev.risk_assessment}" if dev.risk_assessment else ""
        events.append((dev.documented_at, {
            "event": "deviation",
            "timestamp": dev.documented_at.isoformat(),
            "description": f"{dev.type.value.capitalize()} at step '{step_name(dev.step_id)}': {dev.reason}{risk}",
        }))

    for note in execution.notes:
        events.append((note.created_at, {
            "event": "note",
            "timestamp": note.created_at.isoformat(),
            "description": f"Note by {note.author_name or note.author_id}: {note.content}",
        }))

    for m in execution.outcomes:
        achieved = "achieved" if m.achieved else "not achieved"
        value = f" (value {m.measured_value})" if m.measured_value is not None else ""
        events.append((m.measured_at, {
            "event": "outcome",
            "timestamp": m.measured_at.isoformat(),
            "description": f"Outcome '{m.outcome_id}' {achieved}{value}.",
        }))

    # The initial status is already covered by the "started" event.
    for change in execution.status_history:
        if change.from_status is None:
            continue
        reason = f" Reason: {change.reason}" if change.reason else ""
        events.append((change.changed_at, {
            "event": "status_change",
            "timestamp": change.changed_at.isoformat(),
            "description": (
                f"{change.from_status.value} -> {change.to_status.value} by {change.actor_id}.{reason}"
            ),
        }))

    events.sort(key=lambda pair: pair[0])
    return [event for _, event in events]
