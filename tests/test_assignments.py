"""
Tests for rxintervene.assignments -- Care-Team Roster Sub-workflow.

Covers: assignment rules (existence, duplicates, eligibility), the
assignment state machine, removal, notifications, history, and workload
statistics including overdue detection and naive datetimes, and the
staff directory under concurrent registration.
"""

import threading
from datetime import timedelta

import pytest

from rxintervene.assignments import AssignmentWorkflow, is_valid_assignment_transition
from rxintervene.audit import AuditAction, AuditFilters, AuditLog
from rxintervene.config import EngineSettings, SettingsRegistry
from rxintervene.directory import Patient, PatientDirectory, StaffDirectory, StaffMember
from rxintervene.errors import BusinessRuleError, NotFoundError
from rxintervene.interventions import InterventionWorkflow
from rxintervene.models import (
    AssignmentRole,
    AssignmentStatus,
    DateRange,
    InterventionCategory,
    InterventionPriority,
    RequestContext,
    utcnow,
)
from rxintervene.notifications import NotificationDispatcher
from rxintervene.repository import InterventionRepository
from rxintervene.tasks import DetachedTaskRunner

TENANT = "pharmacy_a"


class _Team:
    """Intervention and assignment workflows sharing one store."""

    def __init__(self, notifier=None, settings=None):
        self.repository = InterventionRepository()
        self.audit_log = AuditLog()
        self.patients = PatientDirectory()
        self.staff = StaffDirectory()
        self.tasks = DetachedTaskRunner()
        self.notifier = notifier if notifier is not None else NotificationDispatcher()
        self.interventions = InterventionWorkflow(self.repository, self.audit_log, self.patients)
        self.workflow = AssignmentWorkflow(
            self.repository, self.audit_log, self.staff,
            notifier=self.notifier, tasks=self.tasks, settings=settings,
        )
        self.patients.register(Patient(tenant_id=TENANT, patient_id="patient-001"))
        for user_id, role in [
            ("pharm-1", "Pharmacist"),
            ("owner-1", "Owner"),
            ("doc-1", "Physician"),
            ("nurse-1", "Nurse"),
            ("tech-1", "Technician"),
        ]:
            self.staff.register(StaffMember(tenant_id=TENANT, user_id=user_id, workplace_role=role))

    def open_intervention(self):
        return self.interventions.create(
            _make_ctx(), "patient-001", InterventionCategory.DRUG_INTERACTION,
            InterventionPriority.HIGH, "Synthetic interaction for roster tests",
        )


def _make_ctx(tenant_id: str = TENANT) -> RequestContext:
    return RequestContext(tenant_id=tenant_id, user_id="pharm-1")


# ---------------------------------------------------------------------------
# 1. Assignment rules
# ---------------------------------------------------------------------------

class TestAssign:
    def test_assign_pending(self):
        team = _Team()
        intervention = team.open_intervention()
        updated = team.workflow.assign(
            _make_ctx(), intervention.intervention_id, "doc-1",
            AssignmentRole.PHYSICIAN, "Review anticoagulation",
        )
        assert len(updated.assignments) == 1
        assert updated.assignments[0].status == AssignmentStatus.PENDING

    def test_unknown_user(self):
        team = _Team()
        intervention = team.open_intervention()
        with pytest.raises(NotFoundError, match="User not found"):
            team.workflow.assign(_make_ctx(), intervention.intervention_id, "ghost",
                                 AssignmentRole.CAREGIVER, "Help")

    def test_user_from_other_tenant(self):
        team = _Team()
        team.staff.register(StaffMember(tenant_id="pharmacy_b", user_id="remote-doc",
                                        workplace_role="Physician"))
        intervention = team.open_intervention()
        with pytest.raises(NotFoundError):
            team.workflow.assign(_make_ctx(), intervention.intervention_id, "remote-doc",
                                 AssignmentRole.PHYSICIAN, "Review")

    def test_unknown_intervention(self):
        with pytest.raises(NotFoundError):
            _Team().workflow.assign(_make_ctx(), "missing", "doc-1",
                                    AssignmentRole.PHYSICIAN, "Review")

    def test_duplicate_assignment_rejected(self):
        team = _Team()
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                             AssignmentRole.NURSE, "Check vitals")
        with pytest.raises(BusinessRuleError, match="already assigned"):
            team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                                 AssignmentRole.CAREGIVER, "Anything")

    def test_reassign_after_cancellation(self):
        team = _Team()
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                             AssignmentRole.NURSE, "Check vitals")
        team.workflow.remove_assignment(_make_ctx(), intervention.intervention_id, "nurse-1")
        updated = team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                                       AssignmentRole.NURSE, "Check vitals again")
        assert [a.status for a in updated.assignments] == [
            AssignmentStatus.CANCELLED, AssignmentStatus.PENDING,
        ]

    @pytest.mark.parametrize("user_id,role", [
        ("tech-1", AssignmentRole.PHARMACIST),
        ("nurse-1", AssignmentRole.PHYSICIAN),
        ("doc-1", AssignmentRole.NURSE),
    ])
    def test_ineligible_role(self, user_id, role):
        team = _Team()
        intervention = team.open_intervention()
        with pytest.raises(BusinessRuleError, match="not authorized"):
            team.workflow.assign(_make_ctx(), intervention.intervention_id, user_id, role, "Task")

    def test_owner_may_act_as_nurse(self):
        team = _Team()
        intervention = team.open_intervention()
        updated = team.workflow.assign(_make_ctx(), intervention.intervention_id, "owner-1",
                                       AssignmentRole.NURSE, "Counsel patient")
        assert updated.assignments[0].role == AssignmentRole.NURSE

    def test_assign_does_not_change_intervention_status(self):
        team = _Team()
        intervention = team.open_intervention()
        updated = team.workflow.assign(_make_ctx(), intervention.intervention_id, "doc-1",
                                       AssignmentRole.PHYSICIAN, "Review")
        assert updated.status == intervention.status


# ---------------------------------------------------------------------------
# 2. Assignment state machine
# ---------------------------------------------------------------------------

class TestAssignmentStatus:
    @pytest.mark.parametrize("current,target,expected", [
        (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS, True),
        (AssignmentStatus.PENDING, AssignmentStatus.COMPLETED, False),
        (AssignmentStatus.IN_PROGRESS, AssignmentStatus.COMPLETED, True),
        (AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED, True),
        (AssignmentStatus.COMPLETED, AssignmentStatus.IN_PROGRESS, False),
        (AssignmentStatus.CANCELLED, AssignmentStatus.PENDING, False),
    ])
    def test_transition_table(self, current, target, expected):
        assert is_valid_assignment_transition(current, target) is expected

    def test_progress_to_completion(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.IN_PROGRESS)
        updated = team.workflow.update_assignment_status(
            _make_ctx(), iid, "doc-1", AssignmentStatus.COMPLETED, "Dose reduced"
        )
        assignment = updated.assignments[0]
        assert assignment.status == AssignmentStatus.COMPLETED
        assert assignment.completed_at is not None
        assert assignment.notes == "Dose reduced"

    def test_skipping_rejected(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        with pytest.raises(BusinessRuleError, match="Allowed transitions"):
            team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.COMPLETED)

    def test_missing_assignment(self):
        team = _Team()
        intervention = team.open_intervention()
        with pytest.raises(NotFoundError, match="Assignment not found"):
            team.workflow.update_assignment_status(
                _make_ctx(), intervention.intervention_id, "doc-1", AssignmentStatus.IN_PROGRESS
            )

    def test_status_audit_details(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.IN_PROGRESS)
        entry = team.audit_log.select(TENANT, AuditFilters(
            action=AuditAction.INTERVENTION_UPDATE_ASSIGNMENT_STATUS,
        ))[0]
        assert entry.details.previous_status == "pending"
        assert entry.details.new_status == "in_progress"
        assert entry.changed_fields == ["assignments"]


# ---------------------------------------------------------------------------
# 3. Removal
# ---------------------------------------------------------------------------

class TestRemove:
    def test_remove_cancels_and_keeps_history(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "nurse-1", AssignmentRole.NURSE, "Vitals")
        updated = team.workflow.remove_assignment(_make_ctx(), iid, "nurse-1", "Shift change")
        assert len(updated.assignments) == 1
        assert updated.assignments[0].status == AssignmentStatus.CANCELLED
        assert updated.assignments[0].notes == "Shift change"

    def test_default_removal_note(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "nurse-1", AssignmentRole.NURSE, "Vitals")
        updated = team.workflow.remove_assignment(_make_ctx(), iid, "nurse-1")
        assert updated.assignments[0].notes == "Assignment removed"

    def test_completed_cannot_be_removed(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.IN_PROGRESS)
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.COMPLETED)
        with pytest.raises(BusinessRuleError, match="Cannot remove a completed assignment"):
            team.workflow.remove_assignment(_make_ctx(), iid, "doc-1")

    def test_remove_twice_not_found(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "nurse-1", AssignmentRole.NURSE, "Vitals")
        team.workflow.remove_assignment(_make_ctx(), iid, "nurse-1")
        with pytest.raises(NotFoundError):
            team.workflow.remove_assignment(_make_ctx(), iid, "nurse-1")


# ---------------------------------------------------------------------------
# 4. Notifications and history
# ---------------------------------------------------------------------------

class TestNotificationsAndHistory:
    def test_notifications_sent(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.IN_PROGRESS)
        assert len(team.notifier.sent) == 2
        assert all(r.recipient_id == "doc-1" for r in team.notifier.sent)

    def test_notification_failure_is_swallowed(self):
        class _BrokenNotifier(NotificationDispatcher):
            def notify_assignment(self, intervention, assignment, assigned_by, channels=None):
                raise ConnectionError("mail relay down")

        team = _Team(notifier=_BrokenNotifier())
        intervention = team.open_intervention()
        updated = team.workflow.assign(_make_ctx(), intervention.intervention_id, "doc-1",
                                       AssignmentRole.PHYSICIAN, "Review")
        assert len(updated.assignments) == 1
        assert [f.name for f in team.tasks.failures] == ["assignment-notification"]

    def test_registered_tenant_channels_used(self):
        registry = SettingsRegistry()
        registry.register(EngineSettings(tenant_id=TENANT, notification_channels=["dashboard", "email"]))
        team = _Team(settings=registry)
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "doc-1",
                             AssignmentRole.PHYSICIAN, "Review")
        assert [r.channel for r in team.notifier.sent] == ["dashboard", "email"]

    def test_unregistered_tenant_uses_dispatcher_channels(self):
        team = _Team(notifier=NotificationDispatcher(channels=["sms"]))
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "doc-1",
                             AssignmentRole.PHYSICIAN, "Review")
        assert [r.channel for r in team.notifier.sent] == ["sms"]

    def test_history(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "nurse-1", AssignmentRole.NURSE, "Vitals")
        team.workflow.remove_assignment(_make_ctx(), iid, "nurse-1")
        history = team.workflow.assignment_history(TENANT, iid)
        assert len(history.assignments) == 1
        assert [e.action for e in history.audit_entries] == [
            AuditAction.INTERVENTION_ASSIGN_TEAM_MEMBER.value,
            AuditAction.INTERVENTION_REMOVE_ASSIGNMENT.value,
        ]

    def test_user_assignments_filtered_by_status(self):
        team = _Team()
        first = team.open_intervention()
        second = team.interventions.create(
            _make_ctx(), "patient-001", InterventionCategory.OTHER,
            InterventionPriority.LOW, "Second synthetic intervention",
        )
        team.workflow.assign(_make_ctx(), first.intervention_id, "nurse-1", AssignmentRole.NURSE, "A")
        team.workflow.assign(_make_ctx(), second.intervention_id, "nurse-1", AssignmentRole.NURSE, "B")
        team.workflow.remove_assignment(_make_ctx(), second.intervention_id, "nurse-1")
        assert len(team.workflow.user_assignments(TENANT, "nurse-1")) == 2
        pending = team.workflow.user_assignments(TENANT, "nurse-1", [AssignmentStatus.PENDING])
        assert [r.intervention_id for r in pending] == [first.intervention_id]


# ---------------------------------------------------------------------------
# 5. Workload statistics
# ---------------------------------------------------------------------------

class TestWorkload:
    def test_empty_tenant(self):
        stats = _Team().workflow.workload_stats(TENANT)
        assert stats.total_assignments == 0
        assert stats.by_user == []

    def test_counts_and_overdue(self):
        team = _Team()
        intervention = team.open_intervention()
        iid = intervention.intervention_id
        team.workflow.assign(_make_ctx(), iid, "doc-1", AssignmentRole.PHYSICIAN, "Review")
        team.workflow.assign(_make_ctx(), iid, "nurse-1", AssignmentRole.NURSE, "Vitals")
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.IN_PROGRESS)
        team.workflow.update_assignment_status(_make_ctx(), iid, "doc-1", AssignmentStatus.COMPLETED)

        today = team.workflow.workload_stats(TENANT)
        assert today.total_assignments == 2
        assert today.active_assignments == 1
        assert today.completed_assignments == 1
        assert today.overdue_assignments == 0
        assert today.by_role == {"physician": 1, "nurse": 1}

        later = team.workflow.workload_stats(TENANT, now=utcnow() + timedelta(days=8))
        assert later.overdue_assignments == 1
        assert later.by_user[0].user_id == "nurse-1"

    def test_user_workload(self):
        team = _Team()
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                             AssignmentRole.NURSE, "Vitals")
        workload = team.workflow.user_workload(TENANT, "nurse-1", now=utcnow() + timedelta(days=6))
        assert workload.total == 1
        assert workload.active == 1
        assert workload.overdue == 0

    def test_naive_range_and_now(self):
        team = _Team()
        intervention = team.open_intervention()
        team.workflow.assign(_make_ctx(), intervention.intervention_id, "nurse-1",
                             AssignmentRole.NURSE, "Vitals")
        naive_now = utcnow().replace(tzinfo=None)

        stats = team.workflow.workload_stats(
            TENANT,
            DateRange(start=naive_now - timedelta(days=1), end=naive_now + timedelta(days=1)),
            now=naive_now + timedelta(days=8),
        )
        assert stats.total_assignments == 1
        assert stats.overdue_assignments == 1
        assert team.workflow.user_workload(TENANT, "nurse-1", now=naive_now).overdue == 0


# ---------------------------------------------------------------------------
# 6. Staff directory
# ---------------------------------------------------------------------------

class TestStaffDirectory:
    def test_concurrent_registration(self):
        staff = StaffDirectory()

        def register_batch(offset):
            for i in range(50):
                staff.register(StaffMember(tenant_id=TENANT, user_id=f"user-{offset + i}",
                                           workplace_role="Nurse"))
                staff.get(TENANT, f"user-{offset}")

        threads = [threading.Thread(target=register_batch, args=(n * 50,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(staff) == 400

    def test_lookups_are_copies(self):
        staff = StaffDirectory()
        member = StaffMember(tenant_id=TENANT, user_id="doc-1", workplace_role="Physician")
        staff.register(member)
        member.workplace_role = "Technician"
        staff.get(TENANT, "doc-1").workplace_role = "Owner"
        assert staff.get(TENANT, "doc-1").workplace_role == "Physician"
