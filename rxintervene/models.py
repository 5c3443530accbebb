"""
Core data models for the RxIntervene clinical intervention engine.

An ``Intervention`` is the aggregate root: its strategies, team
assignments, outcome, and follow-up are owned value collections that are
only mutated through the workflow operations in
``rxintervene.interventions`` and ``rxintervene.assignments``.  Keeping
them embedded (rather than as separately referenced records) keeps the
transition and eligibility rules in one place.

DISCLAIMER: Interventions document pharmacist-initiated workflow actions.
They record professional judgement; they do not make clinical decisions.
"""

from __future__ import annotations

import enum
import math
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat a naive datetime as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InterventionCategory(str, enum.Enum):
    """Kind of drug-therapy problem an intervention addresses."""

    DRUG_THERAPY_PROBLEM = "drug_therapy_problem"
    ADVERSE_DRUG_REACTION = "adverse_drug_reaction"
    MEDICATION_NONADHERENCE = "medication_nonadherence"
    DRUG_INTERACTION = "drug_interaction"
    DOSING_ISSUE = "dosing_issue"
    CONTRAINDICATION = "contraindication"
    OTHER = "other"


CATEGORY_LABELS: dict[InterventionCategory, str] = {
    InterventionCategory.DRUG_THERAPY_PROBLEM: "Drug Therapy Problem",
    InterventionCategory.ADVERSE_DRUG_REACTION: "Adverse Drug Reaction",
    InterventionCategory.MEDICATION_NONADHERENCE: "Medication Non-adherence",
    InterventionCategory.DRUG_INTERACTION: "Drug Interaction",
    InterventionCategory.DOSING_ISSUE: "Dosing Issue",
    InterventionCategory.CONTRAINDICATION: "Contraindication",
    InterventionCategory.OTHER: "Other",
}
"""Display labels used by reports and exports."""


class InterventionPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InterventionStatus(str, enum.Enum):
    """Lifecycle states for an intervention.

    ``IDENTIFIED`` is the initial state.  ``COMPLETED`` and ``CANCELLED``
    are terminal.  Legal edges live in ``rxintervene.interventions``.
    """

    IDENTIFIED = "identified"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: frozenset[InterventionStatus] = frozenset({
    InterventionStatus.IDENTIFIED,
    InterventionStatus.PLANNING,
    InterventionStatus.IN_PROGRESS,
    InterventionStatus.IMPLEMENTED,
})

TERMINAL_STATUSES: frozenset[InterventionStatus] = frozenset({
    InterventionStatus.COMPLETED,
    InterventionStatus.CANCELLED,
})

# Forward progression used for completion percentage and "next step" hints.
_STATUS_FLOW: list[InterventionStatus] = [
    InterventionStatus.IDENTIFIED,
    InterventionStatus.PLANNING,
    InterventionStatus.IN_PROGRESS,
    InterventionStatus.IMPLEMENTED,
    InterventionStatus.COMPLETED,
]

# Days an active intervention may run before it counts as overdue.
_OVERDUE_THRESHOLD_DAYS: dict[InterventionPriority, int] = {
    InterventionPriority.CRITICAL: 1,
    InterventionPriority.HIGH: 1,
    InterventionPriority.MEDIUM: 3,
    InterventionPriority.LOW: 7,
}


class StrategyType(str, enum.Enum):
    MEDICATION_REVIEW = "medication_review"
    DOSE_ADJUSTMENT = "dose_adjustment"
    ALTERNATIVE_THERAPY = "alternative_therapy"
    DISCONTINUATION = "discontinuation"
    ADDITIONAL_MONITORING = "additional_monitoring"
    PATIENT_COUNSELING = "patient_counseling"
    PHYSICIAN_CONSULTATION = "physician_consultation"
    CUSTOM = "custom"


class StrategyPriority(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class AssignmentRole(str, enum.Enum):
    """Role a team member plays within one intervention."""

    PHARMACIST = "pharmacist"
    PHYSICIAN = "physician"
    NURSE = "nurse"
    PATIENT = "patient"
    CAREGIVER = "caregiver"


class AssignmentStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PatientResponse(str, enum.Enum):
    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    WORSENED = "worsened"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Embedded sub-documents
# ---------------------------------------------------------------------------

class Strategy(BaseModel):
    """A remediation action attached to an intervention."""

    strategy_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifier of the strategy within its intervention.",
    )
    type: StrategyType = Field(..., description="Strategy type; ``custom`` for free-form strategies.")
    description: str = Field(..., max_length=500)
    rationale: str = Field(..., max_length=500)
    expected_outcome: str = Field(..., max_length=500)
    priority: StrategyPriority = Field(default=StrategyPriority.PRIMARY)


class StrategyPatch(BaseModel):
    """Partial update for an attached strategy."""

    description: Optional[str] = Field(default=None, max_length=500)
    rationale: Optional[str] = Field(default=None, max_length=500)
    expected_outcome: Optional[str] = Field(default=None, max_length=500)
    priority: Optional[StrategyPriority] = None


class Assignment(BaseModel):
    """One staff member's responsibility within an intervention.

    Assignments are cancelled rather than removed so that the roster keeps
    its full history.
    """

    user_id: str = Field(..., min_length=1, description="Identity of the assignee.")
    role: AssignmentRole = Field(..., description="Role the assignee plays in this intervention.")
    task: str = Field(..., min_length=1, max_length=500, description="What the assignee is expected to do.")
    status: AssignmentStatus = Field(default=AssignmentStatus.PENDING)
    assigned_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    notes: str = Field(default="", max_length=1000)

    @field_validator("assigned_at", "completed_at")
    @classmethod
    def timestamps_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status in (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)


class SuccessMetrics(BaseModel):
    problem_resolved: bool = False
    medication_optimized: bool = False
    adherence_improved: bool = False
    cost_savings: Optional[float] = Field(default=None, ge=0)
    quality_of_life_improved: Optional[bool] = None


class Outcome(BaseModel):
    """Recorded clinical result of an intervention.

    ``patient_response`` may be left unset while results are still being
    gathered; completing the intervention requires it.
    """

    patient_response: Optional[PatientResponse] = Field(default=None)
    success_metrics: SuccessMetrics = Field(default_factory=SuccessMetrics)
    adverse_effects: str = Field(default="", max_length=1000)
    notes: str = Field(default="", max_length=1000)


class FollowUp(BaseModel):
    required: bool = False
    scheduled_date: Optional[datetime] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    notes: str = Field(default="", max_length=1000)

    @field_validator("scheduled_date", "completed_at")
    @classmethod
    def timestamps_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


# ---------------------------------------------------------------------------
# Intervention aggregate
# ---------------------------------------------------------------------------

class Intervention(BaseModel):
    """A tracked clinical action resolving one drug-therapy problem."""

    intervention_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier.",
    )
    intervention_number: str = Field(
        default="",
        description="Human-facing sequential number, unique per tenant (``CI-YYYYMM-NNNN``).",
    )
    tenant_id: str = Field(..., min_length=1, description="Owning pharmacy/organization.")
    patient_id: str = Field(..., min_length=1)
    category: InterventionCategory
    priority: InterventionPriority
    status: InterventionStatus = Field(default=InterventionStatus.IDENTIFIED)
    issue_description: str = Field(..., min_length=10, max_length=1000)
    strategies: list[Strategy] = Field(default_factory=list)
    assignments: list[Assignment] = Field(default_factory=list)
    outcome: Optional[Outcome] = Field(default=None)
    follow_up: FollowUp = Field(default_factory=FollowUp)
    identified_by: str = Field(..., min_length=1)
    identified_at: datetime = Field(default_factory=utcnow)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    estimated_duration_minutes: Optional[int] = Field(default=None, ge=0)
    actual_duration_minutes: Optional[int] = Field(default=None, ge=0)
    related_review_id: Optional[str] = Field(
        default=None,
        description="Linked external therapy review, if any.",
    )
    related_problem_ids: list[str] = Field(
        default_factory=list,
        description="Linked external drug-therapy-problem records.",
    )
    is_deleted: bool = Field(default=False)
    updated_by: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1, description="Incremented on every stored mutation.")

    @field_validator("identified_at", "started_at", "completed_at", "updated_at")
    @classmethod
    def timestamps_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return not self.is_deleted and self.status in ACTIVE_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Whether an active intervention has outlived its priority threshold."""
        if self.status in TERMINAL_STATUSES:
            return False
        now = as_utc(now) or utcnow()
        days = (now - self.started_at).days
        return days > _OVERDUE_THRESHOLD_DAYS[self.priority]

    def completion_percentage(self) -> int:
        if self.status == InterventionStatus.CANCELLED:
            return 0
        step = _STATUS_FLOW.index(self.status) + 1
        return round(step / len(_STATUS_FLOW) * 100)

    def next_status(self) -> Optional[InterventionStatus]:
        if self.status in TERMINAL_STATUSES:
            return None
        return _STATUS_FLOW[_STATUS_FLOW.index(self.status) + 1]

    def duration_days(self, now: Optional[datetime] = None) -> int:
        end = self.completed_at or as_utc(now) or utcnow()
        return math.ceil(abs((end - self.started_at).total_seconds()) / 86400)

    def resolution_days(self) -> Optional[float]:
        """Days from identification to completion, or None while open."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.identified_at).total_seconds() / 86400

    def has_patient_response(self) -> bool:
        return self.outcome is not None and self.outcome.patient_response is not None

    def find_strategy(self, strategy_id: str) -> Optional[Strategy]:
        for strategy in self.strategies:
            if strategy.strategy_id == strategy_id:
                return strategy
        return None

    def find_assignment(
        self, user_id: str, include_cancelled: bool = True
    ) -> Optional[Assignment]:
        """Return the user's most recent assignment on this intervention."""
        for assignment in reversed(self.assignments):
            if assignment.user_id != user_id:
                continue
            if not include_cancelled and assignment.status == AssignmentStatus.CANCELLED:
                continue
            return assignment
        return None


class InterventionPatch(BaseModel):
    """Partial update for ``InterventionWorkflow.update``.

    Only fields explicitly set by the caller are applied.
    """

    category: Optional[InterventionCategory] = None
    priority: Optional[InterventionPriority] = None
    status: Optional[InterventionStatus] = None
    issue_description: Optional[str] = Field(default=None, min_length=10, max_length=1000)
    outcome: Optional[Outcome] = None
    follow_up: Optional[FollowUp] = None
    estimated_duration_minutes: Optional[int] = Field(default=None, ge=0)

    def applied_fields(self) -> list[str]:
        """Names of the fields the caller set, in declaration order."""
        return [name for name in type(self).model_fields if name in self.model_fields_set]


# ---------------------------------------------------------------------------
# Request context and ranges
# ---------------------------------------------------------------------------

class RequestContext(BaseModel):
    """Caller identity handed in by the HTTP collaborator."""

    tenant_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_role: str = Field(default="Pharmacist", description="Workplace role of the caller.")
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None


class DateRange(BaseModel):
    """Inclusive time range.  Naive datetimes are taken as UTC."""

    start: datetime
    end: datetime

    @field_validator("start")
    @classmethod
    def start_as_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        v = as_utc(v)
        start = info.data.get("start")
        if start is not None and v < start:
            raise ValueError(f"end ({v.isoformat()}) must be >= start ({start.isoformat()})")
        return v

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    @property
    def length(self):
        return self.end - self.start
