"""
Criteria Matcher -- eligibility and exclusion checks.

Evaluates a ``CriteriaProfile`` against a ``Candidate`` and explains the
result: every inclusion criterion lands in ``met`` or ``unmet``, every
matching exclusion term lands in ``exclusions``.  A candidate is eligible
iff nothing is unmet and nothing excludes it.

Profile fields that are not populated are vacuously satisfied and produce
no entry at all.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pydantic

from careflow.conditions import evaluate_condition
from careflow.errors import ValidationError
from careflow.models import Candidate, CriteriaProfile, DecisionOption, DecisionPoint, EligibilityResult


def coerce_candidate(candidate: Candidate | Mapping[str, Any]) -> Candidate:
    """Validate raw candidate data into a ``Candidate``.

    Raises:
        ValidationError: If the data does not fit the candidate model.
    """
    if isinstance(candidate, Candidate):
        return candidate
    try:
        return Candidate.model_validate(candidate)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Malformed candidate data.",
            details=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
        ) from exc


def check_eligibility(
    profile: CriteriaProfile,
    candidate: Candidate | Mapping[str, Any],
) -> EligibilityResult:
    """Match a candidate against a criteria profile.

    Args:
        profile: The target population and exclusion terms.
        candidate: A ``Candidate`` or a mapping validated into one.

    Returns:
        An ``EligibilityResult`` listing met, unmet and excluding criteria.
    """
    candidate = coerce_candidate(candidate)
    met: list[str] = []
    unmet: list[str] = []
    exclusions: list[str] = []

    # --- Age range ---
    if profile.age_range is not None and (
        profile.age_range.min is not None or profile.age_range.max is not None
    ):
        low, high = profile.age_range.min, profile.age_range.max
        if candidate.age is None:
            unmet.append("Age unknown; age range criterion cannot be verified")
        elif low is not None and candidate.age < low:
            unmet.append(f"Minimum age {_fmt(low)} required")
        elif high is not None and candidate.age > high:
            unmet.append(f"Maximum age {_fmt(high)} exceeded")
        else:
            met.append("Age criterion met")

    # --- Gender ---
    if profile.gender and profile.gender != "any":
        if candidate.gender == profile.gender:
            met.append(f"Gender {profile.gender}")
        else:
            unmet.append(f"Gender {profile.gender} required")

    # --- Coded items (diagnoses) ---
    present = {(c.code, c.code_system) for c in candidate.coded_items}
    for item in profile.coded_items:
        label = f"{item.code_system} {item.code}"
        if (item.code, item.code_system) in present:
            met.append(f"{label} present")
        elif item.required:
            unmet.append(f"{label} required")

    # --- Current medications ---
    for med in profile.medications:
        if _any_substring(med.drug, candidate.medications):
            met.append(f"Medication {med.drug} present")
        elif med.required:
            unmet.append(f"Medication {med.drug} required")

    # --- Named value checks ---
    for check in profile.value_checks:
        label = f"{check.field} {check.operator.value} {check.value}"
        if evaluate_condition(check, candidate.values):
            met.append(f"Value check passed: {label}")
        else:
            unmet.append(f"Value check failed: {label}")

    # --- Exclusions ---
    for term in profile.excluded_conditions:
        if _any_substring(term, candidate.conditions):
            exclusions.append(f"Excluded condition: {term}")
    for term in profile.excluded_allergies:
        if _any_substring(term, candidate.allergies):
            exclusions.append(f"Excluded allergy: {term}")

    return EligibilityResult(
        eligible=not unmet and not exclusions,
        met=met,
        unmet=unmet,
        exclusions=exclusions,
    )


def matching_options(
    decision_point: DecisionPoint,
    candidate: Candidate | Mapping[str, Any],
) -> list[DecisionOption]:
    """Options of a decision point whose criteria the candidate satisfies.

    Options without criteria always match.  Declaration order is kept.
    """
    candidate = coerce_candidate(candidate)
    return [
        option
        for option in decision_point.options
        if option.criteria is None or check_eligibility(option.criteria, candidate).eligible
    ]


def _any_substring(term: str, values: list[str]) -> bool:
    needle = term.lower()
    return any(needle in v.lower() for v in values)


def _fmt(n: float) -> str:
    return str(int(n)) if float(n).is_integer() else str(n)
