"""
Synthetic Scenario: Hypertension Protocol Walkthrough
=====================================================

Runs the hypertension management protocol from ``definitions.yaml`` end to
end on synthetic data.  No real patient data is used.

Steps demonstrated:
  1. Load settings and definitions from YAML
  2. Check a synthetic patient's eligibility
  3. Start an execution and complete the initial assessment
  4. Record a deviation and a clinician override at a decision point
  5. Complete the protocol and record an outcome
  6. Fire a threshold trigger for a critical blood pressure reading and
     use the protocol's order set
  7. Generate an Execution Review Report and protocol analytics
  8. Export the audit log for review

DISCLAIMER: This is a synthetic demonstration.  Protocol content is
illustrative and is not clinical guidance.

Usage:
    python -m examples.hta_scenario
    # or: python examples/hta_scenario.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from careflow.actions import ActionDispatcher
from careflow.audit import AuditLog
from careflow.config import (
    configure_logging,
    load_definitions_from_yaml,
    load_order_sets_from_yaml,
    load_settings_from_yaml,
)
from careflow.engine import ExecutionEngine
from careflow.models import TriggerEvent
from careflow.order_sets import OrderSetCatalog
from careflow.report import generate_execution_report
from careflow.repository import InMemoryDefinitionRepository, InMemoryExecutionRepository
from careflow.triggers import TriggerRunner


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    configure_logging("INFO")
    _banner("Careflow Synthetic Scenario: Hypertension Protocol")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load settings and definitions
    # ------------------------------------------------------------------
    _banner("Step 1: Load Definitions")

    source = Path(__file__).parent / "definitions.yaml"
    settings = load_settings_from_yaml(source)
    definitions = InMemoryDefinitionRepository(load_definitions_from_yaml(source))
    for definition in definitions.list():
        print(f"Loaded {definition.definition_id} v{definition.version} ({definition.status.value})")

    audit_log = AuditLog()
    # The in-memory dispatcher holds a real httpx client for webhooks;
    # this protocol has none, so nothing leaves the process.
    dispatcher = ActionDispatcher.in_memory(settings)
    engine = ExecutionEngine(
        definitions,
        InMemoryExecutionRepository(),
        dispatcher=dispatcher,
        audit_log=audit_log,
        settings=settings,
    )

    # ------------------------------------------------------------------
    # Step 2: Eligibility
    # ------------------------------------------------------------------
    _banner("Step 2: Eligibility Check")

    patient = {
        "age": 67,
        "gender": "F",
        "coded_items": [{"code": "I10", "code_system": "ICD-10"}],
        "conditions": ["Type 2 diabetes"],
        "allergies": [],
    }
    eligibility = engine.check_eligibility("hta-management", patient)
    print(f"Eligible: {eligibility.eligible}")
    for item in eligibility.met:
        print(f"  + {item}")

    # ------------------------------------------------------------------
    # Step 3: Start and complete the initial assessment
    # ------------------------------------------------------------------
    _banner("Step 3: Initial Assessment")

    execution = engine.start_execution("hta-management", "synthetic-patient-001", "dr_synthetic")
    print(f"Execution {execution.execution_id} at step {execution.current_step_id}")

    completion = engine.complete_step(
        execution.execution_id,
        "S1",
        "dr_synthetic",
        actions_performed=["measure_bp"],
        observed_values={"systolic": 184, "diastolic": 104},
        notes="Deviation: labs deferred, patient fasting requirement not met",
        idempotency_key="visit-1-S1",
    )
    print(f"Next step: {completion.next_step_id}")
    for alert in completion.completed_step.triggered_alerts:
        print(f"  ALERT ({alert.severity.value}): {alert.message}")
    for result in completion.action_results:
        print(f"  action {result.action_id}: {'ok' if result.success else result.error}")

    # ------------------------------------------------------------------
    # Step 4: Deviation and clinician override
    # ------------------------------------------------------------------
    _banner("Step 4: Deviation and Override")

    engine.record_deviation(
        execution.execution_id, "S1", "omission", "Labs deferred to next visit", actor_id="dr_synthetic",
    )
    engine.complete_step(
        execution.execution_id, "S2", "dr_synthetic", [], observed_values={"riskLevel": "moderate"},
    )
    execution = engine.record_decision(
        execution.execution_id,
        "start_treatment",
        "treat",
        "dr_synthetic",
        rationale="Target organ damage on ECG",
        override_reason="Clinical judgment overrides moderate risk score",
    )
    decision = execution.decisions[-1]
    print(f"Redirected from {decision.redirected_from} to {decision.redirected_to}")

    # ------------------------------------------------------------------
    # Step 5: Complete and measure
    # ------------------------------------------------------------------
    _banner("Step 5: Treatment and Outcome")

    # A finished execution is immutable: outcomes and notes go in first.
    engine.record_outcome(
        execution.execution_id, "bp_control", True, measured_value=134, actor_id="dr_synthetic",
    )
    engine.add_note(execution.execution_id, "dr_synthetic", "Home BP monitoring explained", "Dr Synthetic")
    completion = engine.complete_step(execution.execution_id, "S3", "dr_synthetic", ["prescribe"], {})
    execution = completion.execution
    print(f"Status: {execution.status.value}")

    # ------------------------------------------------------------------
    # Step 6: Threshold trigger
    # ------------------------------------------------------------------
    _banner("Step 6: Threshold Trigger and Order Set")

    runner = TriggerRunner(definitions, dispatcher, audit_log)
    runs = runner.fire(
        TriggerEvent.ON_THRESHOLD,
        "vital_sign",
        {"type": "blood_pressure", "systolic": 192, "patient_id": "synthetic-patient-002"},
        entity_id="vital-0042",
    )
    for run in runs:
        print(f"Trigger {run.trigger_id} on {run.entity_id}: {run.status.value}")
    print(f"Runs in history: {len(runner.history('hta-management'))}")

    order_sets = OrderSetCatalog(load_order_sets_from_yaml(source), audit_log)
    order_set = order_sets.list(definition_id="hta-management")[0]
    ordered = order_sets.execute(
        order_set.order_set_id,
        "synthetic-patient-002",
        "dr_synthetic",
        order_set.default_item_ids(),
        modifications={"amlodipine": {"dose": "10 mg"}},
    )
    for order in ordered.orders_created:
        print(f"  ordered {order.type.value}: {order.name} {order.details}")

    # ------------------------------------------------------------------
    # Step 7: Report and analytics
    # ------------------------------------------------------------------
    _banner("Step 7: Execution Review Report")

    definition = definitions.get_by_id(execution.definition_id, execution.definition_version)
    report = generate_execution_report(execution, definition)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    analytics = engine.get_analytics("hta-management")
    print(json.dumps(analytics.model_dump(mode="json"), indent=2))

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Audit Log Export")

    export = audit_log.export_for_review("hta-management")
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    dispatcher.webhooks.close()
    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
