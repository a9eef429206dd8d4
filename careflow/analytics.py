"""
Analytics Aggregator -- execution-history metrics for one definition.

All rates are fractions in ``[0, 1]`` and every ratio guards its
denominator: an empty execution set yields zero rates and empty maps.

* ``completion_rate`` -- completed executions / all executions.
* ``step_completion_rates[step_id]`` -- executions with at least one
  completed entry for the step / all executions.
* ``outcome_achievement[outcome_id]`` -- completed executions with an
  achieved measurement for the outcome / completed executions.
* ``common_deviations`` -- deviations grouped by type with their count and
  the distinct reasons, in first-seen order.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from pydantic import BaseModel, Field

from careflow.models import Definition, Execution, ExecutionStatus


class DeviationSummary(BaseModel):
    type: str
    count: int
    reasons: list[str] = Field(default_factory=list)


class ProtocolAnalytics(BaseModel):
    definition_id: str
    executions: int
    completion_rate: float
    step_completion_rates: dict[str, float] = Field(default_factory=dict)
    outcome_achievement: dict[str, float] = Field(default_factory=dict)
    common_deviations: list[DeviationSummary] = Field(default_factory=list)
    average_duration_minutes: Optional[float] = Field(
        default=None,
        description="Mean start-to-completion time over completed executions; None without any.",
    )
    deviation_rate: float = Field(
        default=0.0,
        description="Share of executions with at least one recorded deviation.",
    )


def compute_analytics(definition: Definition, executions: Sequence[Execution]) -> ProtocolAnalytics:
    """Aggregate metrics over the executions of ``definition``.

    Executions bound to another definition id are ignored, so callers can
    pass an unfiltered history.
    """
    runs = [e for e in executions if e.definition_id == definition.definition_id]
    total = len(runs)
    if total == 0:
        return ProtocolAnalytics(
            definition_id=definition.definition_id,
            executions=0,
            completion_rate=0.0,
        )

    completed = [e for e in runs if e.status == ExecutionStatus.COMPLETED]

    step_rates = {
        step.step_id: sum(1 for e in runs if e.has_completed(step.step_id)) / total
        for step in definition.steps
    }

    outcome_rates: dict[str, float] = {}
    for outcome in definition.outcomes:
        achieved = sum(
            1
            for e in completed
            if any(m.outcome_id == outcome.outcome_id and m.achieved for m in e.outcomes)
        )
        outcome_rates[outcome.outcome_id] = achieved / len(completed) if completed else 0.0

    grouped: dict[str, DeviationSummary] = {}
    for e in runs:
        for dev in e.deviations:
            summary = grouped.setdefault(dev.type.value, DeviationSummary(type=dev.type.value, count=0))
            summary.count += 1
            if dev.reason not in summary.reasons:
                summary.reasons.append(dev.reason)

    durations = [
        (e.completed_at - e.started_at).total_seconds() / 60.0
        for e in completed
        if e.completed_at is not None
    ]

    return ProtocolAnalytics(
        definition_id=definition.definition_id,
        executions=total,
        completion_rate=len(completed) / total,
        step_completion_rates=step_rates,
        outcome_achievement=outcome_rates,
        common_deviations=list(grouped.values()),
        average_duration_minutes=sum(durations) / len(durations) if durations else None,
        deviation_rate=sum(1 for e in runs if e.deviations) / total,
    )
