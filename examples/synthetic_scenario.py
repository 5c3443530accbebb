"""
Synthetic Scenario: Drug Interaction Intervention Walkthrough
=============================================================

This script demonstrates the full RxIntervene workflow using entirely
synthetic data.  No real patient data, PHI, or PII is used.

The scenario simulates a community pharmacy where a pharmacist identifies
a critical drug interaction for a patient on multiple medications.

Steps demonstrated:
  1. Load tenant settings from YAML
  2. Register synthetic patient and staff
  3. Get strategy recommendations and open the intervention
  4. Assign the care team
  5. Walk the intervention through its lifecycle to completion
  6. Generate compliance and outcome reports
  7. Export the audit log for compliance review

DISCLAIMER: This is a synthetic demonstration.  Strategy recommendations
and cost estimates are decision-support aids; all clinical actions require
a licensed professional.

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
from datetime import date, timedelta
from pathlib import Path

from rxintervene.assignments import AssignmentWorkflow
from rxintervene.audit import AuditLog
from rxintervene.config import EngineSettings, SettingsRegistry, load_settings_from_yaml
from rxintervene.directory import Patient, PatientDirectory, StaffDirectory, StaffMember
from rxintervene.exports import compliance_report_to_csv, export_audit_log
from rxintervene.interventions import InterventionWorkflow
from rxintervene.models import (
    AssignmentRole,
    AssignmentStatus,
    DateRange,
    InterventionCategory,
    InterventionPatch,
    InterventionPriority,
    InterventionStatus,
    Outcome,
    PatientResponse,
    RequestContext,
    SuccessMetrics,
    utcnow,
)
from rxintervene.notifications import NotificationDispatcher
from rxintervene.reports import InterventionAnalytics, OutcomeFilters
from rxintervene.repository import InterventionRepository


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    _banner("RxIntervene Synthetic Scenario: Drug Interaction")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load tenant settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Tenant Settings")

    sample_yaml = Path(__file__).parent / "tenant_settings.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)[0]
        print(f"Loaded settings for tenant: {settings.tenant_id}")
    else:
        settings = EngineSettings(tenant_id="demo_pharmacy")
        print(f"Created inline settings for tenant: {settings.tenant_id}")

    registry = SettingsRegistry()
    registry.register(settings)
    tenant_id = settings.tenant_id

    # ------------------------------------------------------------------
    # Step 2: Register synthetic patient and staff
    # ------------------------------------------------------------------
    _banner("Step 2: Register Synthetic Patient and Staff")

    patients = PatientDirectory()
    patient = patients.register(Patient(
        tenant_id=tenant_id,
        display_name="Synthetic Patient A (not a real person)",
        date_of_birth=date(1950, 3, 14),
        active_medications=["warfarin", "amiodarone", "metoprolol", "atorvastatin",
                            "lisinopril", "omeprazole"],
    ))
    staff = StaffDirectory()
    pharmacist = staff.register(StaffMember(
        tenant_id=tenant_id, display_name="Pharmacist (synthetic)", workplace_role="Pharmacist",
    ))
    physician = staff.register(StaffMember(
        tenant_id=tenant_id, display_name="Physician (synthetic)", workplace_role="Physician",
    ))
    print(f"Patient: {patient.display_name} (age {patient.age()})")
    print(f"Staff: {pharmacist.user_id} (Pharmacist), {physician.user_id} (Physician)")

    audit_log = AuditLog()
    repository = InterventionRepository()
    workflow = InterventionWorkflow(repository, audit_log, patients, settings=registry)
    team = AssignmentWorkflow(
        repository, audit_log, staff,
        notifier=NotificationDispatcher(),
        settings=registry,
    )
    ctx = RequestContext(tenant_id=tenant_id, user_id=pharmacist.user_id, ip_address="10.0.0.5")

    # ------------------------------------------------------------------
    # Step 3: Recommendations and intervention
    # ------------------------------------------------------------------
    _banner("Step 3: Strategy Recommendations and New Intervention")

    description = "(Synthetic) Warfarin and amiodarone co-prescribed; INR rising."
    recommended = workflow.recommend_strategies(
        ctx, InterventionCategory.DRUG_INTERACTION, InterventionPriority.CRITICAL,
        description, patient_id=patient.patient_id,
    )
    for template in recommended:
        print(f"  - {template.label} [{template.priority.value}]: {template.rationale}")

    intervention = workflow.create(
        ctx,
        patient_id=patient.patient_id,
        category=InterventionCategory.DRUG_INTERACTION,
        priority=InterventionPriority.CRITICAL,
        issue_description=description,
        strategies=[t.to_strategy() for t in recommended],
        estimated_duration_minutes=45,
    )
    print(f"\nCreated {intervention.intervention_number} (status={intervention.status.value})")
    print(f"  Patient flagged: {patients.get(tenant_id, patient.patient_id).has_active_interventions}")

    # ------------------------------------------------------------------
    # Step 4: Care team
    # ------------------------------------------------------------------
    _banner("Step 4: Assign Care Team")

    team.assign(ctx, intervention.intervention_id, physician.user_id,
                AssignmentRole.PHYSICIAN, "Review anticoagulation plan")
    team.assign(ctx, intervention.intervention_id, pharmacist.user_id,
                AssignmentRole.PHARMACIST, "Monitor INR and counsel patient")
    team.update_assignment_status(ctx, intervention.intervention_id, physician.user_id,
                                  AssignmentStatus.IN_PROGRESS)
    team.update_assignment_status(ctx, intervention.intervention_id, physician.user_id,
                                  AssignmentStatus.COMPLETED, "Warfarin dose reduced 30%")
    workload = team.workload_stats(tenant_id)
    print(f"Assignments: total={workload.total_assignments} active={workload.active_assignments} "
          f"completed={workload.completed_assignments}")

    # ------------------------------------------------------------------
    # Step 5: Lifecycle
    # ------------------------------------------------------------------
    _banner("Step 5: Intervention Lifecycle")

    for status in (InterventionStatus.PLANNING, InterventionStatus.IN_PROGRESS,
                   InterventionStatus.IMPLEMENTED):
        intervention = workflow.update(ctx, intervention.intervention_id,
                                       InterventionPatch(status=status))
        print(f"  -> {intervention.status.value}")

    workflow.schedule_follow_up(ctx, intervention.intervention_id,
                                utcnow() + timedelta(days=7), "Repeat INR")
    intervention = workflow.record_outcome(ctx, intervention.intervention_id, Outcome(
        patient_response=PatientResponse.IMPROVED,
        success_metrics=SuccessMetrics(problem_resolved=True, medication_optimized=True,
                                       cost_savings=1500),
        notes="(Synthetic) INR back in range.",
    ))
    print(f"Outcome recorded. Status: {intervention.status.value}")

    # ------------------------------------------------------------------
    # Step 6: Reports
    # ------------------------------------------------------------------
    _banner("Step 6: Compliance and Outcome Reports")

    analytics = InterventionAnalytics(repository, audit_log, registry)
    period = DateRange(start=utcnow() - timedelta(days=1), end=utcnow() + timedelta(minutes=1))
    compliance = analytics.compliance_report(tenant_id, period)
    print(f"{compliance}")
    print(compliance_report_to_csv(compliance))

    outcomes = analytics.outcome_report(tenant_id, OutcomeFilters(
        date_from=period.start, date_to=period.end,
    ))
    print(json.dumps(outcomes.summary.model_dump(), indent=2))
    savings = analytics.cost_savings(tenant_id, [intervention])
    print(f"Estimated savings: {savings.total_savings:.2f} ({savings.breakdown})")

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Log Export (Compliance Review)")

    export = audit_log.export_for_review(tenant_id)
    print(json.dumps(export["export_metadata"], indent=2))
    csv_text = export_audit_log(audit_log, ctx, "csv")
    print(f"\nCSV export rows: {len(csv_text.splitlines()) - 1}")

    valid, broken_at = audit_log.verify_chain()
    print(f"Full chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")


if __name__ == "__main__":
    main()
