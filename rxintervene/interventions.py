"""
Intervention Workflow -- the Clinical Intervention State Machine.

This module owns the intervention lifecycle as an explicit state machine
and enforces every rule that keeps the record trustworthy.

**State machine:**

    identified -> planning -> in_progress -> implemented -> completed

With cancellation from any non-terminal state:

    identified | planning | in_progress | implemented -> cancelled

``completed`` and ``cancelled`` are terminal.  States cannot be skipped.

**Rules enforced in code:**

* Only legal edges are accepted; anything else raises ``BusinessRuleError``.
* Completing requires a recorded outcome with a patient response.
* Completing or cancelling stamps ``completed_at``.
* Completed interventions cannot be deleted; deletion is always soft.
* Linking to a therapy review requires both to concern the same patient.
* Custom strategies must pass content validation before they are attached.

**Side effects:**  every successful mutation writes exactly one audit
entry (with before/after snapshots and the changed-field list).  Changes
that affect a patient's active-intervention count spawn a detached
patient-flag refresh whose failure is logged and never propagated.
Nothing advances status implicitly: attaching strategies, assigning staff,
and recording an outcome leave the status alone, except that an improved,
resolved outcome on an ``implemented`` intervention completes it.

**Multi-tenant isolation:**  every operation is scoped by the request
context's ``tenant_id``; a patient or intervention from another tenant is
reported as not found.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from rxintervene.audit import (
    AccessDetails,
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditLog,
    AuditSummary,
    CreatedDetails,
    DeletedDetails,
    FollowUpDetails,
    OutcomeDetails,
    ReviewBatchDetails,
    ReviewLinkDetails,
    RiskLevel,
    StatusChange,
    StrategyDetails,
    UpdatedDetails,
    record_activity,
)
from rxintervene.config import SettingsRegistry
from rxintervene.directory import DrugTherapyProblem, PatientDirectory, TherapyReviewDirectory
from rxintervene.errors import BusinessRuleError, NotFoundError, ValidationError
from rxintervene.models import (
    FollowUp,
    Intervention,
    InterventionCategory,
    InterventionPatch,
    InterventionPriority,
    InterventionStatus,
    Outcome,
    PatientResponse,
    RequestContext,
    Strategy,
    StrategyPatch,
    StrategyPriority,
    StrategyType,
    as_utc,
    utcnow,
)
from rxintervene.repository import InterventionRepository
from rxintervene.strategies import (
    PatientFactors,
    StrategyTemplate,
    generate_recommendations,
    validate_custom_strategy,
)
from rxintervene.tasks import DetachedTaskRunner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[InterventionStatus, set[InterventionStatus]] = {
    InterventionStatus.IDENTIFIED: {InterventionStatus.PLANNING, InterventionStatus.CANCELLED},
    InterventionStatus.PLANNING: {InterventionStatus.IN_PROGRESS, InterventionStatus.CANCELLED},
    InterventionStatus.IN_PROGRESS: {InterventionStatus.IMPLEMENTED, InterventionStatus.CANCELLED},
    InterventionStatus.IMPLEMENTED: {InterventionStatus.COMPLETED, InterventionStatus.CANCELLED},
    InterventionStatus.COMPLETED: set(),  # terminal state
    InterventionStatus.CANCELLED: set(),  # terminal state
}


def is_valid_transition(current: InterventionStatus, target: InterventionStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


# ---------------------------------------------------------------------------
# Therapy-review problem mapping
# ---------------------------------------------------------------------------

_PROBLEM_CATEGORY_MAP: dict[str, InterventionCategory] = {
    "untreated_indication": InterventionCategory.DRUG_THERAPY_PROBLEM,
    "improper_drug_selection": InterventionCategory.DRUG_THERAPY_PROBLEM,
    "subtherapeutic_dosage": InterventionCategory.DOSING_ISSUE,
    "failure_to_receive_drug": InterventionCategory.MEDICATION_NONADHERENCE,
    "overdosage": InterventionCategory.DOSING_ISSUE,
    "adverse_drug_reaction": InterventionCategory.ADVERSE_DRUG_REACTION,
    "drug_interaction": InterventionCategory.DRUG_INTERACTION,
    "drug_use_without_indication": InterventionCategory.DRUG_THERAPY_PROBLEM,
}


def map_problem_category(problem_category: str) -> InterventionCategory:
    """Map a drug-therapy-problem category onto an intervention category."""
    return _PROBLEM_CATEGORY_MAP.get(problem_category, InterventionCategory.OTHER)


def priority_for_problem(problem: DrugTherapyProblem) -> InterventionPriority:
    if problem.severity == "critical" or problem.category == "adverse_drug_reaction":
        return InterventionPriority.CRITICAL
    if problem.severity == "major" or problem.category == "drug_interaction":
        return InterventionPriority.HIGH
    if problem.severity == "moderate":
        return InterventionPriority.MEDIUM
    return InterventionPriority.LOW


def strategies_for_problem(problem: DrugTherapyProblem) -> list[Strategy]:
    """Seed strategy for an intervention created from a review problem."""
    if problem.category == "adverse_drug_reaction":
        seed = (StrategyType.DISCONTINUATION,
                "Consider discontinuing the offending medication",
                "Eliminate source of adverse drug reaction",
                "Resolution of adverse effects")
    elif problem.category == "drug_interaction":
        seed = (StrategyType.MEDICATION_REVIEW,
                "Review all medications for interactions",
                "Identify and manage drug interactions",
                "Elimination of harmful interactions")
    elif problem.category in ("subtherapeutic_dosage", "overdosage"):
        seed = (StrategyType.DOSE_ADJUSTMENT,
                "Adjust medication dosage",
                "Optimize therapeutic effect",
                "Improved clinical response")
    else:
        seed = (StrategyType.MEDICATION_REVIEW,
                "Comprehensive medication review",
                "Address identified drug therapy problem",
                "Optimized medication therapy")
    strategy_type, description, rationale, expected = seed
    return [Strategy(
        type=strategy_type,
        description=description,
        rationale=rationale,
        expected_outcome=expected,
        priority=StrategyPriority.PRIMARY,
    )]


# ---------------------------------------------------------------------------
# Query and summary models
# ---------------------------------------------------------------------------

class InterventionFilters(BaseModel):
    """Filters for ``InterventionWorkflow.list_interventions``."""

    category: Optional[InterventionCategory] = None
    priority: Optional[InterventionPriority] = None
    status: Optional[InterventionStatus] = None
    patient_id: Optional[str] = None
    identified_by: Optional[str] = None
    identified_from: Optional[datetime] = None
    identified_to: Optional[datetime] = None
    search: Optional[str] = Field(
        default=None,
        description="Case-insensitive match on intervention number or issue description.",
    )

    def matches(self, intervention: Intervention) -> bool:
        if self.category is not None and intervention.category != self.category:
            return False
        if self.priority is not None and intervention.priority != self.priority:
            return False
        if self.status is not None and intervention.status != self.status:
            return False
        if self.patient_id is not None and intervention.patient_id != self.patient_id:
            return False
        if self.identified_by is not None and intervention.identified_by != self.identified_by:
            return False
        if self.identified_from is not None and intervention.identified_at < self.identified_from:
            return False
        if self.identified_to is not None and intervention.identified_at > self.identified_to:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{intervention.intervention_number} {intervention.issue_description}".lower()
            if needle not in haystack:
                return False
        return True


class InterventionPage(BaseModel):
    items: list[Intervention]
    total: int
    page: int
    limit: int


class PatientInterventionSummary(BaseModel):
    patient_id: str
    total_interventions: int = 0
    active_interventions: int = 0
    completed_interventions: int = 0
    successful_interventions: int = 0
    category_breakdown: dict[str, int] = Field(default_factory=dict)
    recent_interventions: list[Intervention] = Field(default_factory=list)


class InterventionAuditTrail(BaseModel):
    entries: list[AuditEntry]
    total: int
    summary: AuditSummary


# ---------------------------------------------------------------------------
# Intervention workflow
# ---------------------------------------------------------------------------

class InterventionWorkflow:
    """Orchestrates the intervention lifecycle.

    All operations take a ``RequestContext`` and write to the shared
    ``AuditLog``.  Patient-flag refreshes run through the
    ``DetachedTaskRunner``.
    """

    def __init__(
        self,
        repository: InterventionRepository,
        audit_log: AuditLog,
        patients: PatientDirectory,
        reviews: Optional[TherapyReviewDirectory] = None,
        tasks: Optional[DetachedTaskRunner] = None,
        settings: Optional[SettingsRegistry] = None,
    ) -> None:
        self._repository = repository
        self._audit_log = audit_log
        self._patients = patients
        self._reviews = reviews if reviews is not None else TherapyReviewDirectory()
        self._tasks = tasks if tasks is not None else DetachedTaskRunner()
        self._settings = settings if settings is not None else SettingsRegistry()

    # -- helpers --

    def _validate_transition(
        self, intervention: Intervention, target: InterventionStatus
    ) -> None:
        """Raise BusinessRuleError if the transition is not allowed."""
        allowed = _VALID_TRANSITIONS.get(intervention.status, set())
        if target not in allowed:
            raise BusinessRuleError(
                f"Invalid status transition from {intervention.status.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )

    def _validate_strategy(self, strategy: Strategy) -> None:
        if strategy.type != StrategyType.CUSTOM:
            return
        result = validate_custom_strategy(strategy)
        if not result.is_valid:
            raise ValidationError("Invalid custom strategy", result.errors)

    def _load(self, ctx: RequestContext, intervention_id: str) -> Intervention:
        intervention = self._repository.get(ctx.tenant_id, intervention_id)
        if intervention is None:
            raise NotFoundError("Clinical intervention not found")
        return intervention

    def _emit_audit(
        self,
        ctx: RequestContext,
        action: AuditAction,
        intervention: Intervention,
        details: Optional[BaseModel] = None,
        before: Optional[Intervention] = None,
        after: Optional[Intervention] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> None:
        """Emit a structured audit event for an intervention action."""
        record_activity(
            self._audit_log,
            ctx,
            action,
            intervention.intervention_id,
            patient_id=intervention.patient_id,
            intervention_id=intervention.intervention_id,
            details=details,
            old_values=snapshot(before) if before is not None else None,
            new_values=snapshot(after) if after is not None else None,
            risk_level=risk_level,
        )

    def _schedule_flag_refresh(self, tenant_id: str, patient_id: str) -> None:
        self._tasks.spawn(
            "patient-flag-refresh", self._refresh_patient_flags, tenant_id, patient_id
        )

    def _refresh_patient_flags(self, tenant_id: str, patient_id: str) -> None:
        active = self._repository.find(
            tenant_id, lambda i: i.patient_id == patient_id and i.is_active
        )
        self._patients.refresh_intervention_flags(tenant_id, patient_id, len(active))

    @staticmethod
    def _apply_status(
        intervention: Intervention, target: InterventionStatus, now: datetime
    ) -> None:
        intervention.status = target
        if target in (InterventionStatus.COMPLETED, InterventionStatus.CANCELLED):
            intervention.completed_at = now
        if target == InterventionStatus.COMPLETED and intervention.actual_duration_minutes is None:
            elapsed = (now - intervention.started_at).total_seconds() / 60
            intervention.actual_duration_minutes = max(0, round(elapsed))

    # -- lifecycle operations --

    def create(
        self,
        ctx: RequestContext,
        patient_id: str,
        category: InterventionCategory,
        priority: InterventionPriority,
        issue_description: str,
        strategies: Optional[list[Strategy]] = None,
        estimated_duration_minutes: Optional[int] = None,
        related_review_id: Optional[str] = None,
        related_problem_ids: Optional[list[str]] = None,
    ) -> Intervention:
        """Open a new intervention in the ``identified`` state.

        Runs duplicate detection (same patient and category, still active,
        identified within the tenant's duplicate window).  Duplicates never
        block creation; their count is recorded in the audit entry.

        Args:
            ctx: Caller context; the identifying pharmacist is ``ctx.user_id``.
            patient_id: Patient the problem concerns.
            category: Intervention category.
            priority: Intervention priority.
            issue_description: Free-text description (10-1000 characters).
            strategies: Optional strategies to attach immediately.
            estimated_duration_minutes: Optional pharmacist time estimate.
            related_review_id: Optional linked therapy review.
            related_problem_ids: Optional linked drug-therapy problems.

        Returns:
            The stored intervention.

        Raises:
            NotFoundError: If the patient is missing or belongs to another tenant.
            ValidationError: If a supplied custom strategy is malformed.
        """
        patient = self._patients.get(ctx.tenant_id, patient_id)
        if patient is None:
            raise NotFoundError("Patient not found")

        strategies = [s.model_copy(deep=True) for s in strategies or []]
        for strategy in strategies:
            self._validate_strategy(strategy)

        duplicates = self.check_duplicates(ctx.tenant_id, patient_id, category)

        now = utcnow()
        intervention = Intervention(
            intervention_number=self._repository.next_number(ctx.tenant_id, now),
            tenant_id=ctx.tenant_id,
            patient_id=patient_id,
            category=category,
            priority=priority,
            status=InterventionStatus.IDENTIFIED,
            issue_description=issue_description,
            strategies=strategies,
            identified_by=ctx.user_id,
            identified_at=now,
            started_at=now,
            estimated_duration_minutes=estimated_duration_minutes,
            related_review_id=related_review_id,
            related_problem_ids=list(related_problem_ids or []),
            updated_by=ctx.user_id,
            updated_at=now,
        )
        intervention = self._repository.add(intervention)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_CREATED,
            intervention,
            details=CreatedDetails(
                intervention_number=intervention.intervention_number,
                category=intervention.category.value,
                priority=intervention.priority.value,
                duplicates_found=len(duplicates),
                strategies_count=len(intervention.strategies),
            ),
            after=intervention,
        )
        self._schedule_flag_refresh(ctx.tenant_id, patient_id)

        if duplicates:
            logger.info(
                "Intervention %s created with %d possible duplicate(s)",
                intervention.intervention_number, len(duplicates),
            )
        else:
            logger.info("Intervention %s created", intervention.intervention_number)
        return intervention

    def get(self, ctx: RequestContext, intervention_id: str) -> Intervention:
        """Return an active (not soft-deleted) intervention.

        Raises:
            NotFoundError: If absent, deleted, or in another tenant.
        """
        return self._load(ctx, intervention_id)

    def list_interventions(
        self,
        ctx: RequestContext,
        filters: Optional[InterventionFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> InterventionPage:
        """List active interventions, newest identified first."""
        settings = self._settings.get_or_default(ctx.tenant_id)
        limit = min(max(limit or settings.default_page_size, 1), settings.max_page_size)
        page = max(page, 1)
        filters = filters or InterventionFilters()

        matches = self._repository.find(ctx.tenant_id, filters.matches)
        matches.sort(key=lambda i: i.identified_at, reverse=True)
        offset = (page - 1) * limit
        return InterventionPage(
            items=matches[offset:offset + limit],
            total=len(matches),
            page=page,
            limit=limit,
        )

    def update(
        self,
        ctx: RequestContext,
        intervention_id: str,
        patch: InterventionPatch,
        expected_version: Optional[int] = None,
    ) -> Intervention:
        """Apply a partial update, including status transitions.

        Non-status fields are applied first, so a patch may set the outcome
        and complete the intervention in one call.

        Args:
            ctx: Caller context.
            intervention_id: Target intervention.
            patch: Fields to change; unset and None fields are ignored.
            expected_version: Optional optimistic-concurrency check.  When
                omitted, concurrent updates resolve last-write-wins.

        Returns:
            The updated intervention.

        Raises:
            NotFoundError: If the intervention is absent.
            BusinessRuleError: On an illegal transition, or completing
                without a recorded patient response.
            VersionConflictError: If ``expected_version`` is stale.
        """
        fields = [name for name in patch.applied_fields() if getattr(patch, name) is not None]
        target = patch.status if "status" in fields else None
        now = utcnow()

        def apply(intervention: Intervention) -> None:
            if target is not None:
                self._validate_transition(intervention, target)
            for name in fields:
                if name == "status":
                    continue
                value = getattr(patch, name)
                if isinstance(value, BaseModel):
                    value = value.model_copy(deep=True)
                setattr(intervention, name, value)
            if target == InterventionStatus.COMPLETED and not intervention.has_patient_response():
                raise BusinessRuleError(
                    "Patient response outcome is required to complete intervention"
                )
            if target is not None:
                self._apply_status(intervention, target, now)
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(
            ctx.tenant_id, intervention_id, apply, expected_version
        )

        if target == InterventionStatus.CANCELLED:
            action = AuditAction.INTERVENTION_CANCELLED
        elif target == InterventionStatus.COMPLETED:
            action = AuditAction.INTERVENTION_COMPLETED
        else:
            action = AuditAction.INTERVENTION_UPDATED

        status_change = None
        if before.status != after.status:
            status_change = StatusChange(previous=before.status.value, new=after.status.value)

        self._emit_audit(
            ctx,
            action,
            after,
            details=UpdatedDetails(
                intervention_number=after.intervention_number,
                updates=fields,
                status_change=status_change,
            ),
            before=before,
            after=after,
        )
        if status_change is not None:
            self._schedule_flag_refresh(ctx.tenant_id, after.patient_id)
            logger.info(
                "Intervention %s moved %s -> %s",
                after.intervention_number, status_change.previous, status_change.new,
            )
        return after

    def delete(self, ctx: RequestContext, intervention_id: str) -> Intervention:
        """Soft-delete an intervention.

        Raises:
            NotFoundError: If the intervention is absent.
            BusinessRuleError: If the intervention is completed.
        """
        def apply(intervention: Intervention) -> None:
            if intervention.status == InterventionStatus.COMPLETED:
                raise BusinessRuleError(
                    "Completed interventions cannot be deleted (required for audit integrity)"
                )
            intervention.is_deleted = True
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_DELETED,
            after,
            details=DeletedDetails(
                intervention_number=after.intervention_number,
                status=after.status.value,
            ),
            before=before,
            after=after,
        )
        self._schedule_flag_refresh(ctx.tenant_id, after.patient_id)
        logger.info("Intervention %s soft-deleted", after.intervention_number)
        return after

    def link_to_external_review(
        self, ctx: RequestContext, intervention_id: str, review_id: str
    ) -> Intervention:
        """Link an intervention to a therapy review of the same patient.

        Raises:
            NotFoundError: If the intervention or review is absent.
            BusinessRuleError: If the two concern different patients.
        """
        review = self._reviews.get(ctx.tenant_id, review_id)

        def apply(intervention: Intervention) -> None:
            if review is None:
                raise NotFoundError("Therapy review not found")
            if intervention.patient_id != review.patient_id:
                raise BusinessRuleError(
                    "Intervention and therapy review must be for the same patient"
                )
            intervention.related_review_id = review.review_id
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_LINK_TO_REVIEW,
            after,
            details=ReviewLinkDetails(review_id=review.review_id, review_number=review.review_number),
            before=before,
            after=after,
        )
        return after

    def create_from_review(
        self,
        ctx: RequestContext,
        review_id: str,
        problem_ids: list[str],
        priority: Optional[InterventionPriority] = None,
        estimated_duration_minutes: Optional[int] = None,
    ) -> list[Intervention]:
        """Create one intervention per selected problem on a therapy review.

        Each intervention maps the problem's category and severity onto an
        intervention category and priority (unless ``priority`` overrides
        it) and starts with one seeded primary strategy.  Each creation is
        audited individually, followed by one batch entry on the review.

        Raises:
            NotFoundError: If the review or any problem is absent.
        """
        review = self._reviews.get(ctx.tenant_id, review_id)
        if review is None:
            raise NotFoundError("Therapy review not found")

        problems = [review.find_problem(pid) for pid in problem_ids]
        if not problem_ids or any(p is None for p in problems):
            raise NotFoundError("One or more problems not found")

        created: list[Intervention] = []
        for problem in problems:
            created.append(self.create(
                ctx,
                patient_id=review.patient_id,
                category=map_problem_category(problem.category),
                priority=priority or priority_for_problem(problem),
                issue_description=f"Review-identified issue: {problem.description}"[:1000],
                strategies=strategies_for_problem(problem),
                estimated_duration_minutes=estimated_duration_minutes,
                related_review_id=review.review_id,
                related_problem_ids=[problem.problem_id],
            ))

        record_activity(
            self._audit_log,
            ctx,
            AuditAction.INTERVENTIONS_FROM_REVIEW,
            review.review_id,
            resource_type="TherapyReview",
            patient_id=review.patient_id,
            details=ReviewBatchDetails(
                review_id=review.review_id,
                review_number=review.review_number,
                problem_ids=list(problem_ids),
                intervention_ids=[i.intervention_id for i in created],
            ),
        )
        return created

    # -- strategies --

    def add_strategy(
        self, ctx: RequestContext, intervention_id: str, strategy: Strategy
    ) -> Intervention:
        """Attach a strategy.

        Raises:
            NotFoundError: If the intervention is absent.
            ValidationError: If a custom strategy is malformed.
        """
        self._validate_strategy(strategy)
        strategy = strategy.model_copy(deep=True)

        def apply(intervention: Intervention) -> None:
            intervention.strategies.append(strategy)
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_ADD_STRATEGY,
            after,
            details=StrategyDetails(strategy_id=strategy.strategy_id, strategy_type=strategy.type.value),
            before=before,
            after=after,
        )
        return after

    def update_strategy(
        self,
        ctx: RequestContext,
        intervention_id: str,
        strategy_id: str,
        patch: StrategyPatch,
    ) -> Intervention:
        """Edit an attached strategy.

        Raises:
            NotFoundError: If the intervention or strategy is absent.
            ValidationError: If the edit leaves a custom strategy malformed.
        """
        updates = {
            name: getattr(patch, name)
            for name in patch.model_fields_set
            if getattr(patch, name) is not None
        }
        updated: dict[str, Strategy] = {}

        def apply(intervention: Intervention) -> None:
            for index, strategy in enumerate(intervention.strategies):
                if strategy.strategy_id == strategy_id:
                    break
            else:
                raise NotFoundError("Strategy not found")
            candidate = strategy.model_copy(update=updates)
            candidate = Strategy.model_validate(candidate.model_dump())
            self._validate_strategy(candidate)
            intervention.strategies[index] = candidate
            intervention.updated_by = ctx.user_id
            updated["strategy"] = candidate

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        strategy = updated["strategy"]
        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_UPDATE_STRATEGY,
            after,
            details=StrategyDetails(
                strategy_id=strategy.strategy_id,
                strategy_type=strategy.type.value,
                updated_fields=sorted(updates),
            ),
            before=before,
            after=after,
        )
        return after

    def recommend_strategies(
        self,
        ctx: RequestContext,
        category: InterventionCategory,
        priority: InterventionPriority,
        issue_description: str = "",
        patient_id: Optional[str] = None,
    ) -> list[StrategyTemplate]:
        """Recommend strategies, using the patient's age and medications when known."""
        factors = None
        if patient_id is not None:
            patient = self._patients.get(ctx.tenant_id, patient_id)
            if patient is None:
                raise NotFoundError("Patient not found")
            factors = PatientFactors(
                age=patient.age(),
                current_medications=patient.active_medications,
            )
        settings = self._settings.get_or_default(ctx.tenant_id)
        return generate_recommendations(
            category, priority, issue_description, factors, settings.recommendations
        )

    # -- outcome and follow-up --

    def record_outcome(
        self, ctx: RequestContext, intervention_id: str, outcome: Outcome
    ) -> Intervention:
        """Record (or replace) the intervention's outcome.

        An ``implemented`` intervention whose outcome is ``improved`` with
        the problem resolved is completed in the same mutation.
        """
        outcome = outcome.model_copy(deep=True)
        now = utcnow()

        def apply(intervention: Intervention) -> None:
            intervention.outcome = outcome
            if (
                intervention.status == InterventionStatus.IMPLEMENTED
                and outcome.patient_response == PatientResponse.IMPROVED
                and outcome.success_metrics.problem_resolved
            ):
                self._apply_status(intervention, InterventionStatus.COMPLETED, now)
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        status_change = None
        if before.status != after.status:
            status_change = StatusChange(previous=before.status.value, new=after.status.value)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_RECORD_OUTCOME,
            after,
            details=OutcomeDetails(
                patient_response=outcome.patient_response.value if outcome.patient_response else None,
                problem_resolved=outcome.success_metrics.problem_resolved,
                status_change=status_change,
            ),
            before=before,
            after=after,
        )
        if status_change is not None:
            self._schedule_flag_refresh(ctx.tenant_id, after.patient_id)
        return after

    def schedule_follow_up(
        self,
        ctx: RequestContext,
        intervention_id: str,
        scheduled_date: datetime,
        notes: str = "",
    ) -> Intervention:
        follow_up = FollowUp(required=True, scheduled_date=scheduled_date, notes=notes)

        def apply(intervention: Intervention) -> None:
            intervention.follow_up = follow_up
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_SCHEDULE_FOLLOW_UP,
            after,
            details=FollowUpDetails(required=True, scheduled_date=scheduled_date),
            before=before,
            after=after,
        )
        return after

    def complete_follow_up(
        self, ctx: RequestContext, intervention_id: str, notes: str = ""
    ) -> Intervention:
        """Mark the scheduled follow-up as done.

        Raises:
            BusinessRuleError: If no follow-up is scheduled or it is already done.
        """
        now = utcnow()

        def apply(intervention: Intervention) -> None:
            follow_up = intervention.follow_up
            if not follow_up.required or follow_up.scheduled_date is None:
                raise BusinessRuleError("No follow-up is scheduled for this intervention")
            if follow_up.completed:
                raise BusinessRuleError("Follow-up has already been completed")
            follow_up.completed = True
            follow_up.completed_at = now
            if notes:
                follow_up.notes = notes
            intervention.updated_by = ctx.user_id

        before, after = self._repository.mutate(ctx.tenant_id, intervention_id, apply)

        self._emit_audit(
            ctx,
            AuditAction.INTERVENTION_RECORD_FOLLOW_UP,
            after,
            details=FollowUpDetails(
                required=True,
                scheduled_date=after.follow_up.scheduled_date,
                completed=True,
            ),
            before=before,
            after=after,
        )
        return after

    # -- queries --

    def check_duplicates(
        self,
        tenant_id: str,
        patient_id: str,
        category: InterventionCategory,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[Intervention]:
        """Active interventions for the same patient and category within the window."""
        window_days = self._settings.get_or_default(tenant_id).duplicate_window_days
        since = (as_utc(now) or utcnow()) - timedelta(days=window_days)
        return self._repository.find(
            tenant_id,
            lambda i: (
                i.patient_id == patient_id
                and i.category == category
                and i.is_active
                and i.identified_at >= since
                and i.intervention_id != exclude_id
            ),
        )

    def patient_summary(self, ctx: RequestContext, patient_id: str) -> PatientInterventionSummary:
        interventions = self._repository.find(ctx.tenant_id, lambda i: i.patient_id == patient_id)
        breakdown: dict[str, int] = {}
        for intervention in interventions:
            key = intervention.category.value
            breakdown[key] = breakdown.get(key, 0) + 1

        completed = [i for i in interventions if i.status == InterventionStatus.COMPLETED]
        successful = [
            i for i in completed
            if i.outcome is not None and i.outcome.success_metrics.problem_resolved
        ]
        recent = sorted(interventions, key=lambda i: i.identified_at, reverse=True)[:5]
        return PatientInterventionSummary(
            patient_id=patient_id,
            total_interventions=len(interventions),
            active_interventions=sum(1 for i in interventions if i.is_active),
            completed_interventions=len(completed),
            successful_interventions=len(successful),
            category_breakdown=breakdown,
            recent_interventions=recent,
        )

    def audit_trail(
        self,
        ctx: RequestContext,
        intervention_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> InterventionAuditTrail:
        """Audit entries linked to one intervention, newest first, with a summary.

        Soft-deleted interventions keep their trail, so this does not
        require the intervention to be active.
        """
        if self._repository.get(ctx.tenant_id, intervention_id, include_deleted=True) is None:
            raise NotFoundError("Clinical intervention not found")

        filters = AuditFilters(intervention_id=intervention_id)
        result = self._audit_log.query(ctx.tenant_id, filters, page=page, limit=limit)
        entries = self._audit_log.select(ctx.tenant_id, filters)
        summary = AuditSummary(
            total_actions=len(entries),
            unique_actors=len({e.actor_id for e in entries}),
            risk_activities=sum(1 for e in entries if e.is_high_risk),
            last_activity=max((e.timestamp for e in entries), default=None),
        )
        return InterventionAuditTrail(entries=result.entries, total=result.total, summary=summary)

    def record_access(
        self, ctx: RequestContext, intervention_id: str, access_type: str = "view"
    ) -> None:
        """Audit a read of an intervention (views and exports)."""
        intervention = self._load(ctx, intervention_id)
        action = (
            AuditAction.ACCESS_INTERVENTION_EXPORT
            if access_type == "export"
            else AuditAction.ACCESS_INTERVENTION_VIEW
        )
        self._emit_audit(
            ctx,
            action,
            intervention,
            details=AccessDetails(access_type=access_type),
        )


def snapshot(intervention: Intervention) -> dict[str, Any]:
    """JSON-safe snapshot of an intervention for audit before/after values.

    Storage housekeeping fields (``version``, ``updated_at``) are left out
    so they do not show up as changed fields.
    """
    return intervention.model_dump(mode="json", exclude={"version", "updated_at"})
