"""
Core data models for the Careflow execution engine.

Two families of records live here:

* **Definition-side** models (``Definition``, ``Step``, ``DecisionPoint``,
  ``CriteriaProfile``, ``Trigger`` ...) are frozen.  A definition is an
  immutable template; changing one means registering a new version, and
  in-flight executions stay bound to the version they started on.
* **Execution-side** models (``Execution``, ``CompletedStep``,
  ``Deviation`` ...) are mutable records owned by an execution repository.
  They are only changed through the engine's mutators.

Every model is JSON-serializable through ``model_dump(mode="json")``.
"""

from __future__ import annotations

import enum
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Operator(str, enum.Enum):
    """Closed set of comparison operators understood by the condition
    evaluator."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"


class DefinitionStatus(str, enum.Enum):
    """Lifecycle of a definition.

    Only ``ACTIVE`` definitions can start new executions.  ``RETIRED`` is
    terminal.
    """

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RETIRED = "retired"


class ExecutionStatus(str, enum.Enum):
    """Lifecycle of an execution.

    ``COMPLETED`` and ``ABANDONED`` are terminal.  ``PAUSED`` returns to
    ``IN_PROGRESS`` through an explicit resume.
    """

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.ABANDONED})


class DeviationType(str, enum.Enum):
    OMISSION = "omission"
    MODIFICATION = "modification"
    ADDITION = "addition"
    TIMING = "timing"


class ActionType(str, enum.Enum):
    """Typed side-effecting instructions attached to steps and triggers."""

    NOTIFY = "notify"
    CREATE_TASK = "create_task"
    UPDATE_FIELD = "update_field"
    CREATE_ALERT = "create_alert"
    CALL_WEBHOOK = "call_webhook"
    DOCUMENT = "document"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class TriggerEvent(str, enum.Enum):
    """Entity events that can fire a workflow trigger."""

    ON_CREATE = "on_create"
    ON_UPDATE = "on_update"
    ON_DELETE = "on_delete"
    ON_STATUS_CHANGE = "on_status_change"
    ON_SCHEDULE = "on_schedule"
    ON_THRESHOLD = "on_threshold"
    ON_APPROVAL = "on_approval"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Conditions and criteria
# ---------------------------------------------------------------------------

class Condition(BaseModel):
    """A declarative ``field operator value`` test against a data bag.

    ``field`` is a dotted path (``vitals.systolic``) resolved into nested
    mappings.  ``value`` is ignored by the ``exists`` operator.
    """

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1, description="Dotted path into the data bag.")
    operator: Operator = Field(..., description="Comparison operator.")
    value: Any = Field(default=None, description="Comparison target.")


class NextStepCondition(Condition):
    """A branch: when the condition matches, the execution moves to
    ``next_step_id``."""

    next_step_id: str = Field(..., min_length=1)


class CodedItem(BaseModel):
    """A coded clinical item (diagnosis, procedure) such as ``I10`` in
    ``ICD-10``."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1)
    code_system: str = Field(..., min_length=1)
    required: bool = Field(
        default=True,
        description="Required items must be present for eligibility; optional items are reported when present.",
    )


class AgeRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = Field(default=None, ge=0)
    max: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def min_not_above_max(self) -> "AgeRange":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"age_range.min ({self.min}) must be <= age_range.max ({self.max})")
        return self


_ALLOWED_GENDERS = {"M", "F", "any"}


class MedicationRequirement(BaseModel):
    """A drug the candidate must (or may) already be taking."""

    model_config = ConfigDict(frozen=True)

    drug: str = Field(..., min_length=1)
    required: bool = True


class CriteriaProfile(BaseModel):
    """Declarative eligibility and exclusion criteria.

    Inclusion fields (age range, gender, coded items, medications, value
    checks) feed the ``met`` / ``unmet`` lists; exclusion terms are matched
    as case-insensitive substrings against the candidate's free-text
    conditions and allergies.  A profile with no populated field matches
    every candidate.
    """

    model_config = ConfigDict(frozen=True)

    age_range: Optional[AgeRange] = None
    gender: Optional[str] = Field(
        default=None,
        description="'M', 'F' or 'any'.  None and 'any' do not filter.",
    )
    coded_items: list[CodedItem] = Field(default_factory=list)
    medications: list[MedicationRequirement] = Field(
        default_factory=list,
        description="Drugs matched as case-insensitive substrings of the candidate's medication list.",
    )
    value_checks: list[Condition] = Field(
        default_factory=list,
        description="Conditions evaluated against the candidate's named values (lab results, scores).",
    )
    excluded_conditions: list[str] = Field(default_factory=list)
    excluded_allergies: list[str] = Field(default_factory=list)

    @field_validator("gender")
    @classmethod
    def validate_gender(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in _ALLOWED_GENDERS:
            raise ValueError(f"gender must be one of {sorted(_ALLOWED_GENDERS)}, got '{v}'")
        return v

    def is_empty(self) -> bool:
        return not (
            self.age_range
            or self.gender
            or self.coded_items
            or self.medications
            or self.value_checks
            or self.excluded_conditions
            or self.excluded_allergies
        )


class CandidateCode(BaseModel):
    code: str
    code_system: str


class Candidate(BaseModel):
    """Data about a subject being checked against a criteria profile."""

    age: Optional[float] = Field(default=None, ge=0)
    gender: Optional[str] = None
    coded_items: list[CandidateCode] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Named observations (e.g. {'ldl': 1.9, 'egfr': 58}) used by value checks.",
    )


class EligibilityResult(BaseModel):
    eligible: bool
    met: list[str] = Field(default_factory=list)
    unmet: list[str] = Field(default_factory=list)
    exclusions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Definition-side models
# ---------------------------------------------------------------------------

class Action(BaseModel):
    """A typed instruction attached to a step or a trigger.

    Clinician-performed actions (``automatic=False``) are checklist items the
    caller reports through ``actions_performed``.  Automatic actions are
    dispatched by the engine when the step completes.  String values in
    ``config`` may carry ``{{field.path}}`` placeholders resolved against
    the triggering data at dispatch time.
    """

    model_config = ConfigDict(frozen=True)

    action_id: str = Field(..., min_length=1)
    type: ActionType
    description: str = ""
    required: bool = False
    automatic: bool = False
    config: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float = Field(
        default=0,
        ge=0,
        description="Pause before dispatching this action, in seconds.",
    )


class AlertRule(BaseModel):
    """Raise an alert when ``condition`` matches the step's observed values."""

    model_config = ConfigDict(frozen=True)

    condition: Condition
    severity: AlertSeverity = AlertSeverity.WARNING
    message: str = Field(..., min_length=1)


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    order: int = Field(..., description="Order index; the lowest one is the initial step.")
    required: bool = False
    actions: list[Action] = Field(default_factory=list)
    alerts: list[AlertRule] = Field(default_factory=list)
    conditions: list[NextStepCondition] = Field(
        default_factory=list,
        description="Branches evaluated in declaration order; the first match wins.",
    )
    default_next_step_id: Optional[str] = Field(
        default=None,
        description="Fallback edge.  None means the step may be terminal.",
    )

    @property
    def has_outgoing_edges(self) -> bool:
        return bool(self.conditions) or self.default_next_step_id is not None

    def required_action_ids(self) -> list[str]:
        """Ids of required actions the clinician must report as performed."""
        return [a.action_id for a in self.actions if a.required and not a.automatic]

    def automatic_actions(self) -> list[Action]:
        return [a for a in self.actions if a.automatic]


class DecisionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    option_id: str = Field(..., min_length=1)
    label: str = ""
    description: str = ""
    criteria: Optional[CriteriaProfile] = None
    leads_to: Optional[str] = Field(
        default=None,
        description="Step id the option routes to, or a protocol endpoint label.",
    )
    rationale: str = ""


class DecisionPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision_point_id: str = Field(..., min_length=1)
    name: str = ""
    question: str = ""
    evaluation_type: str = Field(
        default="clinical_judgment",
        description="'clinical_judgment', 'algorithmic' or 'hybrid'.",
    )
    options: list[DecisionOption] = Field(default_factory=list)
    default_option_id: Optional[str] = None

    def get_option(self, option_id: str) -> Optional[DecisionOption]:
        return next((o for o in self.options if o.option_id == option_id), None)


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome_id: str = Field(..., min_length=1)
    name: str = ""
    type: str = Field(default="primary", description="'primary', 'secondary' or 'safety'.")
    metric: str = ""
    target_value: Optional[float] = None
    unit: str = ""
    timeframe: str = ""


class Trigger(BaseModel):
    """Event rule of the workflow variant: when ``event`` fires for
    ``entity_type`` and every condition matches, run ``actions``."""

    model_config = ConfigDict(frozen=True)

    trigger_id: str = Field(..., min_length=1)
    event: TriggerEvent
    entity_type: str = Field(..., min_length=1)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    enabled: bool = True
    priority: int = 0


class Definition(BaseModel):
    """Immutable protocol / workflow template.

    Structural integrity is checked at construction: step ids, decision
    point ids and outcome ids are unique, and every branch target and
    default edge names a step of this definition.
    """

    model_config = ConfigDict(frozen=True)

    definition_id: str = Field(..., min_length=1)
    version: str = Field(default="1.0", min_length=1)
    name: str = ""
    description: str = ""
    category: str = ""
    specialty: str = ""
    status: DefinitionStatus = DefinitionStatus.DRAFT
    criteria: CriteriaProfile = Field(default_factory=CriteriaProfile)
    steps: list[Step] = Field(default_factory=list)
    decision_points: list[DecisionPoint] = Field(default_factory=list)
    outcomes: list[Outcome] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_graph(self) -> "Definition":
        step_ids = [s.step_id for s in self.steps]
        _ensure_unique("step_id", step_ids)
        _ensure_unique("decision_point_id", [d.decision_point_id for d in self.decision_points])
        _ensure_unique("outcome_id", [o.outcome_id for o in self.outcomes])
        _ensure_unique("trigger_id", [t.trigger_id for t in self.triggers])

        known = set(step_ids)
        for step in self.steps:
            targets = [c.next_step_id for c in step.conditions]
            if step.default_next_step_id is not None:
                targets.append(step.default_next_step_id)
            unknown = [t for t in targets if t not in known]
            if unknown:
                raise ValueError(
                    f"Step '{step.step_id}' routes to unknown step(s): {unknown}"
                )
            _ensure_unique(f"action_id in step '{step.step_id}'", [a.action_id for a in step.actions])
        for point in self.decision_points:
            _ensure_unique(
                f"option_id in decision point '{point.decision_point_id}'",
                [o.option_id for o in point.options],
            )
        return self

    # -- lookups --

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.step_id == step_id), None)

    def initial_step(self) -> Optional[Step]:
        """The step with the lowest order index (first declared on ties)."""
        if not self.steps:
            return None
        return min(self.steps, key=lambda s: s.order)

    def required_step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps if s.required]

    def get_decision_point(self, decision_point_id: str) -> Optional[DecisionPoint]:
        return next(
            (d for d in self.decision_points if d.decision_point_id == decision_point_id),
            None,
        )

    def get_outcome(self, outcome_id: str) -> Optional[Outcome]:
        return next((o for o in self.outcomes if o.outcome_id == outcome_id), None)


def _ensure_unique(label: str, values: list[str]) -> None:
    duplicates = sorted(v for v, n in Counter(values).items() if n > 1)
    if duplicates:
        raise ValueError(f"Duplicate {label}: {duplicates}")


# ---------------------------------------------------------------------------
# Execution-side models
# ---------------------------------------------------------------------------

class ActionResult(BaseModel):
    """Outcome of dispatching one action.  Failures are data, not
    exceptions."""

    action_id: str
    action_type: ActionType
    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    dispatched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TriggeredAlert(BaseModel):
    step_id: str
    severity: AlertSeverity
    message: str


class CompletedStep(BaseModel):
    completion_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: str
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_by: str
    actions_performed: list[str] = Field(default_factory=list)
    observed_values: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    action_results: list[ActionResult] = Field(
        default_factory=list,
        description="Results of the automatic actions and alerts dispatched after the step was committed.",
    )
    triggered_alerts: list[TriggeredAlert] = Field(default_factory=list)


class ExecutionDecision(BaseModel):
    decision_point_id: str
    selected_option_id: str
    decided_by: str
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    rationale: Optional[str] = None
    override_reason: Optional[str] = None
    redirected_from: Optional[str] = None
    redirected_to: Optional[str] = None


class Deviation(BaseModel):
    deviation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: str
    type: DeviationType
    description: str = ""
    reason: str = ""
    approved_by: Optional[str] = None
    risk_assessment: Optional[str] = None
    documented_by: Optional[str] = None
    documented_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionNote(BaseModel):
    note_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    author_id: str
    author_name: str = ""
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OutcomeMeasurement(BaseModel):
    outcome_id: str
    achieved: bool
    measured_value: Optional[float] = None
    measured_by: Optional[str] = None
    measured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    notes: Optional[str] = None


class StatusChange(BaseModel):
    from_status: Optional[ExecutionStatus]
    to_status: ExecutionStatus
    actor_id: str
    reason: Optional[str] = None
    changed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Execution(BaseModel):
    """One running or finished instance of a definition bound to a subject.

    ``definition_version`` is frozen at start.  ``current_step_id`` is None
    once the execution is terminal, or while it awaits manual resolution
    (``awaiting_resolution``) after reaching a step with no edge to follow.
    ``revision`` is bumped by the repository on every committed update.
    """

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    definition_id: str
    definition_version: str
    subject_id: str
    initiated_by: str
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    current_step_id: Optional[str] = None
    awaiting_resolution: bool = False
    completed_steps: list[CompletedStep] = Field(default_factory=list)
    decisions: list[ExecutionDecision] = Field(default_factory=list)
    deviations: list[Deviation] = Field(default_factory=list)
    outcomes: list[OutcomeMeasurement] = Field(default_factory=list)
    notes: list[ExecutionNote] = Field(default_factory=list)
    status_history: list[StatusChange] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    abandoned_reason: Optional[str] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_completed(self, step_id: str) -> bool:
        return any(cs.step_id == step_id for cs in self.completed_steps)

    def find_completion(self, idempotency_key: str) -> Optional[CompletedStep]:
        return next(
            (cs for cs in self.completed_steps if cs.idempotency_key == idempotency_key),
            None,
        )


class StepCompletion(BaseModel):
    """Returned by ``complete_step``.

    The step itself succeeded; individual side effects may still have
    failed (see ``action_results``).  ``replayed`` is True when an
    idempotency key matched an earlier completion and nothing was redone.
    """

    execution: Execution
    completed_step: CompletedStep
    action_results: list[ActionResult] = Field(default_factory=list)
    next_step_id: Optional[str] = None
    replayed: bool = False

    @property
    def failed_actions(self) -> list[ActionResult]:
        return [r for r in self.action_results if not r.success]


class TriggerRunStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerRun(BaseModel):
    """Record of one trigger whose conditions matched."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    definition_id: str
    trigger_id: str
    event: TriggerEvent
    entity_type: str
    entity_id: Optional[str] = Field(default=None, description="The entity the event was about.")
    triggered_by: str = "SYSTEM"
    status: TriggerRunStatus
    action_results: list[ActionResult] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed_actions(self) -> list[ActionResult]:
        return [r for r in self.action_results if not r.success]
