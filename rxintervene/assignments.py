"""
Assignment Sub-workflow -- Care-Team Roster for an Intervention.

Each intervention carries a roster of staff assignments.  Every assignment
has its own small state machine:

    pending -> in_progress -> completed
    pending | in_progress  -> cancelled

``completed`` and ``cancelled`` are terminal.  Assignments are never
physically removed: ``remove`` cancels, so the roster keeps its history.

**Rules enforced in code:**

* A user holds at most one non-cancelled assignment per intervention.
* The assignee's workplace role must be eligible for the requested
  assignment role (see ``rxintervene.roles``).
* Completed assignments cannot be removed.

Every mutation writes one audit entry and spawns a best-effort
notification; notification failures are logged and never reach the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from rxintervene.audit import (
    AssignmentDetails,
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditLog,
    record_activity,
)
from rxintervene.config import SettingsRegistry
from rxintervene.directory import StaffDirectory
from rxintervene.errors import BusinessRuleError, NotFoundError
from rxintervene.interventions import snapshot
from rxintervene.models import (
    Assignment,
    AssignmentRole,
    AssignmentStatus,
    DateRange,
    Intervention,
    RequestContext,
    as_utc,
    utcnow,
)
from rxintervene.notifications import NotificationDispatcher
from rxintervene.repository import InterventionRepository
from rxintervene.roles import require_role_eligibility
from rxintervene.tasks import DetachedTaskRunner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid assignment transitions
# ---------------------------------------------------------------------------

_ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    AssignmentStatus.PENDING: {AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED},
    AssignmentStatus.IN_PROGRESS: {AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED},
    AssignmentStatus.COMPLETED: set(),
    AssignmentStatus.CANCELLED: set(),
}


def is_valid_assignment_transition(current: AssignmentStatus, target: AssignmentStatus) -> bool:
    return target in _ASSIGNMENT_TRANSITIONS.get(current, set())


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class UserAssignment(BaseModel):
    """One assignment together with the intervention it belongs to."""

    intervention_id: str
    intervention_number: str
    patient_id: str
    intervention_status: str
    priority: str
    assignment: Assignment


class AssignmentHistory(BaseModel):
    intervention_id: str
    assignments: list[Assignment]
    audit_entries: list[AuditEntry]


class UserWorkload(BaseModel):
    user_id: str
    total: int = 0
    active: int = 0
    completed: int = 0
    cancelled: int = 0
    overdue: int = 0
    average_completion_hours: float = 0.0


class WorkloadStats(BaseModel):
    """Tenant-wide assignment statistics."""

    total_assignments: int = 0
    active_assignments: int = 0
    completed_assignments: int = 0
    overdue_assignments: int = 0
    average_completion_hours: float = 0.0
    by_role: dict[str, int] = Field(default_factory=dict)
    by_user: list[UserWorkload] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Assignment workflow
# ---------------------------------------------------------------------------

class AssignmentWorkflow:
    """Manages the per-intervention care-team roster."""

    def __init__(
        self,
        repository: InterventionRepository,
        audit_log: AuditLog,
        staff: StaffDirectory,
        notifier: Optional[NotificationDispatcher] = None,
        tasks: Optional[DetachedTaskRunner] = None,
        settings: Optional[SettingsRegistry] = None,
    ) -> None:
        self._repository = repository
        self._audit_log = audit_log
        self._staff = staff
        self._notifier = notifier if notifier is not None else NotificationDispatcher()
        self._tasks = tasks if tasks is not None else DetachedTaskRunner()
        self._settings = settings if settings is not None else SettingsRegistry()

    def _validate_transition(
        self, assignment: Assignment, target: AssignmentStatus
    ) -> None:
        allowed = _ASSIGNMENT_TRANSITIONS.get(assignment.status, set())
        if target not in allowed:
            raise BusinessRuleError(
                f"Invalid assignment status transition from {assignment.status.value} "
                f"to {target.value}. Allowed transitions: {sorted(s.value for s in allowed)}"
            )

    def _emit_audit(
        self,
        ctx: RequestContext,
        action: AuditAction,
        before: Intervention,
        after: Intervention,
        details: AssignmentDetails,
    ) -> None:
        record_activity(
            self._audit_log,
            ctx,
            action,
            after.intervention_id,
            patient_id=after.patient_id,
            intervention_id=after.intervention_id,
            details=details,
            old_values=snapshot(before),
            new_values=snapshot(after),
        )

    def _channels_for(self, tenant_id: str) -> Optional[list[str]]:
        """A registered tenant's channels; otherwise the notifier's own."""
        if tenant_id in self._settings:
            return self._settings.get(tenant_id).notification_channels
        return None

    # -- mutations --

    def assign(
        self,
        ctx: RequestContext,
        intervention_id: str,
        user_id: str,
        role: AssignmentRole,
        task: str,
        notes: str = "",
    ) -> Intervention:
        """Add a team member to an intervention's roster.

        Args:
            ctx: Caller context.
            intervention_id: Target intervention.
            user_id: Staff member to assign.
            role: Role the member plays on this intervention.
            task: What the member is expected to do.
            notes: Optional notes.

        Returns:
            The updated intervention.

        Raises:
            NotFoundError: If the intervention or user is absent.
            BusinessRuleError: If the user already holds a non-cancelled
                assignment, or is not eligible for ``role``.
        """
        member = self._staff.get(ctx.tenant_id, user_id)
        if member is None:
            raise NotFoundError("User not found")
        role = AssignmentRole(role)
        assignment = Assignment(user_id=user_id, role=role, task=task, notes=notes)

        def apply(intervention: Intervention) -> None:
            if intervention.find_assignment(user_id, include_cancelled=False) is not None:
                raise BusinessRuleError("User is already assigned to this intervention")
            require_role_eligibility(role, member.workplace_role)
            intervention.assignments.append(assignment)
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_ASSIGN_TEAM_MEMBER,
            before,
            after,
            AssignmentDetails(
                assigned_user_id=user_id,
                role=role.value,
                task=task,
                new_status=assignment.status.value,
            ),
        )
        self._tasks.spawn(
            "assignment-notification", self._notifier.notify_assignment,
            after, assignment, ctx.user_id, channels=self._channels_for(ctx.tenant_id),
        )
        logger.info(
            "User %s assigned to intervention %s as %s",
            user_id, after.intervention_number, role.value,
        )
        return after

    def update_assignment_status(
        self,
        ctx: RequestContext,
        intervention_id: str,
        user_id: str,
        status: AssignmentStatus,
        notes: Optional[str] = None,
    ) -> Intervention:
        """Move a user's current assignment along its state machine.

        Raises:
            NotFoundError: If the intervention or assignment is absent.
            BusinessRuleError: If the transition is not allowed.
        """
        status = AssignmentStatus(status)
        now = utcnow()
        changed: dict[str, Assignment] = {}

        def apply(intervention: Intervention) -> None:
            assignment = intervention.find_assignment(user_id)
            if assignment is None:
                raise NotFoundError("Assignment not found")
            self._validate_transition(assignment, status)
            changed["previous"] = assignment.model_copy()
            assignment.status = status
            if status in (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED):
                assignment.completed_at = now
            if notes is not None:
                assignment.notes = notes
            intervention.updated_by = ctx.user_id
            changed["current"] = assignment.model_copy()

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        previous = changed["previous"]
        current = changed["current"]
        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_UPDATE_ASSIGNMENT_STATUS,
            before,
            after,
            AssignmentDetails(
                assigned_user_id=user_id,
                role=current.role.value,
                previous_status=previous.status.value,
                new_status=current.status.value,
                notes=notes,
            ),
        )
        self._tasks.spawn(
            "assignment-status-notification", self._notifier.notify_status_change,
            after, current, previous.status, ctx.user_id,
            channels=self._channels_for(ctx.tenant_id),
        )
        return after

    def remove_assignment(
        self,
        ctx: RequestContext,
        intervention_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Intervention:
        """Cancel a user's assignment, keeping it on the roster.

        Raises:
            NotFoundError: If the intervention or an active assignment is absent.
            BusinessRuleError: If the assignment is already completed.
        """
        now = utcnow()
        changed: dict[str, Assignment] = {}

        def apply(intervention: Intervention) -> None:
            assignment = intervention.find_assignment(user_id, include_cancelled=False)
            if assignment is None:
                raise NotFoundError("Assignment not found")
            if assignment.status == AssignmentStatus.COMPLETED:
                raise BusinessRuleError("Cannot remove a completed assignment")
            changed["previous"] = assignment.model_copy()
            assignment.status = AssignmentStatus.CANCELLED
            assignment.completed_at = now
            assignment.notes = reason or "Assignment removed"
            intervention.updated_by = ctx.user_id
            changed["current"] = assignment.model_copy()

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        previous = changed["previous"]
        current = changed["current"]
        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_REMOVE_ASSIGNMENT,
            before,
            after,
            AssignmentDetails(
                assigned_user_id=user_id,
                role=current.role.value,
                previous_status=previous.status.value,
                new_status=current.status.value,
                notes=current.notes,
            ),
        )
        self._tasks.spawn(
            "assignment-status-notification", self._notifier.notify_status_change,
            after, current, previous.status, ctx.user_id,
            channels=self._channels_for(ctx.tenant_id),
        )
        logger.info("Assignment for user %s removed from %s", user_id, after.intervention_number)
        return after

    # -- queries --

    def user_assignments(
        self,
        tenant_id: str,
        user_id: str,
        statuses: Optional[list[AssignmentStatus]] = None,
    ) -> list[UserAssignment]:
        """All of a user's assignments across active (not deleted) interventions."""
        wanted = {AssignmentStatus(s) for s in statuses} if statuses else None
        results = []
        for intervention in self._repository.find(tenant_id):
            for assignment in intervention.assignments:
                if assignment.user_id != user_id:
                    continue
                if wanted is not None and assignment.status not in wanted:
                    continue
                results.append(UserAssignment(
                    intervention_id=intervention.intervention_id,
                    intervention_number=intervention.intervention_number,
                    patient_id=intervention.patient_id,
                    intervention_status=intervention.status.value,
                    priority=intervention.priority.value,
                    assignment=assignment,
                ))
        results.sort(key=lambda r: r.assignment.assigned_at, reverse=True)
        return results

    def assignment_history(self, tenant_id: str, intervention_id: str) -> AssignmentHistory:
        """Roster plus the assignment-related audit entries, oldest first."""
        intervention = self._repository.get(tenant_id, intervention_id, include_deleted=True)
        if intervention is None:
            raise NotFoundError("Clinical intervention not found")

        assignment_actions = {
            AuditAction.INTERVENTION_ASSIGN_TEAM_MEMBER.value,
            AuditAction.INTERVENTION_UPDATE_ASSIGNMENT_STATUS.value,
            AuditAction.INTERVENTION_REMOVE_ASSIGNMENT.value,
        }
        entries = [
            entry
            for entry in self._audit_log.select(
                tenant_id, AuditFilters(intervention_id=intervention_id)
            )
            if entry.action in assignment_actions
        ]
        return AssignmentHistory(
            intervention_id=intervention_id,
            assignments=intervention.assignments,
            audit_entries=entries,
        )

    def user_workload(
        self, tenant_id: str, user_id: str, now: Optional[datetime] = None
    ) -> UserWorkload:
        assignments = [
            a for i in self._repository.find(tenant_id) for a in i.assignments
            if a.user_id == user_id
        ]
        return self._workload_for(tenant_id, user_id, assignments, as_utc(now) or utcnow())

    def workload_stats(
        self,
        tenant_id: str,
        date_range: Optional[DateRange] = None,
        now: Optional[datetime] = None,
    ) -> WorkloadStats:
        """Assignment counts for the tenant, optionally limited by assignment date.

        An active assignment older than the tenant's overdue threshold
        (seven days by default) counts as overdue.
        """
        now = as_utc(now) or utcnow()
        assignments = [
            a for i in self._repository.find(tenant_id) for a in i.assignments
            if date_range is None or date_range.contains(a.assigned_at)
        ]
        if not assignments:
            return WorkloadStats()

        per_user: dict[str, list[Assignment]] = {}
        by_role: dict[str, int] = {}
        for assignment in assignments:
            per_user.setdefault(assignment.user_id, []).append(assignment)
            by_role[assignment.role.value] = by_role.get(assignment.role.value, 0) + 1

        users = [
            self._workload_for(tenant_id, user_id, items, now)
            for user_id, items in per_user.items()
        ]
        users.sort(key=lambda w: (-w.active, w.user_id))

        return WorkloadStats(
            total_assignments=len(assignments),
            active_assignments=sum(w.active for w in users),
            completed_assignments=sum(w.completed for w in users),
            overdue_assignments=sum(w.overdue for w in users),
            average_completion_hours=_average_completion_hours(assignments),
            by_role=by_role,
            by_user=users,
        )

    def _workload_for(
        self,
        tenant_id: str,
        user_id: str,
        assignments: list[Assignment],
        now: datetime,
    ) -> UserWorkload:
        overdue_days = self._settings.get_or_default(tenant_id).overdue_assignment_days
        cutoff = now - timedelta(days=overdue_days)
        return UserWorkload(
            user_id=user_id,
            total=len(assignments),
            active=sum(1 for a in assignments if a.is_active),
            completed=sum(1 for a in assignments if a.status == AssignmentStatus.COMPLETED),
            cancelled=sum(1 for a in assignments if a.status == AssignmentStatus.CANCELLED),
            overdue=sum(1 for a in assignments if a.is_active and a.assigned_at < cutoff),
            average_completion_hours=_average_completion_hours(assignments),
        )


def _average_completion_hours(assignments: list[Assignment]) -> float:
    latencies = [
        (a.completed_at - a.assigned_at).total_seconds() / 3600
        for a in assignments
        if a.status == AssignmentStatus.COMPLETED and a.completed_at is not None
    ]
    if not latencies:
        return 0.0
    return round(sum(latencies) / len(latencies), 1)
