"""
Compliance & Analytics Aggregator.

Turns the audit trail and stored interventions into reports for
pharmacy managers and compliance reviewers:

* **Compliance report** -- per-intervention audit coverage, an overall
  compliance score, the risk-flagged entries, and recommendations.
* **Outcome report** -- success and cost-savings metrics, a per-category
  breakdown, a six-month trend, and a comparison with the preceding period.
* **Cost-savings estimate** -- a heuristic value model over a set of
  interventions.
* **Dashboard metrics and trend analysis** -- counts and distributions for
  the operational dashboard.

Reads may run concurrently with workflow writes; reports reflect whatever
was stored when the scan ran.  Empty inputs yield well-formed, zero-valued
reports rather than errors.

DISCLAIMER: Cost-savings figures are heuristic estimates for operational
reporting.  They are not health-economics evaluations.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, field_validator

from rxintervene.audit import (
    INTERVENTION_RESOURCE,
    AuditEntry,
    AuditFilters,
    AuditLog,
    RiskLevel,
    SuspiciousActivity,
)
from rxintervene.config import CostParameters, SettingsRegistry
from rxintervene.errors import ValidationError
from rxintervene.models import (
    CATEGORY_LABELS,
    DateRange,
    Intervention,
    InterventionCategory,
    InterventionPriority,
    InterventionStatus,
    PatientResponse,
    as_utc,
    utcnow,
)
from rxintervene.repository import InterventionRepository


# ---------------------------------------------------------------------------
# Compliance report
# ---------------------------------------------------------------------------

class ComplianceStatus(str, enum.Enum):
    COMPLIANT = "compliant"
    WARNING = "warning"
    NON_COMPLIANT = "non-compliant"


class InterventionCompliance(BaseModel):
    """Audit coverage of one intervention."""

    intervention_id: str
    intervention_number: str
    audit_count: int
    risk_activities: int
    last_audit: datetime
    compliance_status: ComplianceStatus
    risk_level: RiskLevel


class ComplianceReport:
    """Audit-coverage compliance report for one tenant and period."""

    def __init__(
        self,
        tenant_id: str,
        date_range: DateRange,
        total_interventions: int,
        audited_actions: int,
        compliance_score: int,
        risk_activities: int,
        interventions: list[InterventionCompliance],
        violations: list[AuditEntry],
        recommendations: list[str],
        generated_at: datetime,
    ) -> None:
        self.tenant_id = tenant_id
        self.date_range = date_range
        self.total_interventions = total_interventions
        self.audited_actions = audited_actions
        self.compliance_score = compliance_score
        self.risk_activities = risk_activities
        self.interventions = interventions
        self.violations = violations
        self.recommendations = recommendations
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a JSON-safe dictionary."""
        return {
            "report_type": "Intervention Compliance Report",
            "tenant_id": self.tenant_id,
            "date_range": self.date_range.model_dump(mode="json"),
            "summary": {
                "total_interventions": self.total_interventions,
                "audited_actions": self.audited_actions,
                "compliance_score": self.compliance_score,
                "risk_activities": self.risk_activities,
            },
            "intervention_compliance": [i.model_dump(mode="json") for i in self.interventions],
            "violations": [v.model_dump(mode="json") for v in self.violations],
            "recommendations": list(self.recommendations),
            "generated_at": self.generated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"ComplianceReport(tenant={self.tenant_id}, "
            f"score={self.compliance_score}, interventions={self.total_interventions})"
        )


# ---------------------------------------------------------------------------
# Outcome report models
# ---------------------------------------------------------------------------

class OutcomeFilters(BaseModel):
    """Selection for ``InterventionAnalytics.outcome_report``.

    An intervention is in the period when it was identified or completed
    between ``date_from`` and ``date_to``.
    """

    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    category: Optional[InterventionCategory] = None
    priority: Optional[InterventionPriority] = None
    patient_response: Optional[PatientResponse] = None
    identified_by: Optional[str] = None

    @field_validator("date_from", "date_to")
    @classmethod
    def bounds_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def matches_attributes(self, intervention: Intervention) -> bool:
        if self.category is not None and intervention.category != self.category:
            return False
        if self.priority is not None and intervention.priority != self.priority:
            return False
        if self.patient_response is not None and (
            intervention.outcome is None
            or intervention.outcome.patient_response != self.patient_response
        ):
            return False
        if self.identified_by is not None and intervention.identified_by != self.identified_by:
            return False
        return True


class OutcomeSummary(BaseModel):
    total_interventions: int = 0
    completed_interventions: int = 0
    successful_interventions: int = 0
    success_rate: float = 0.0
    total_cost_savings: float = 0.0
    average_cost_savings: float = 0.0
    average_resolution_days: float = 0.0


class CategoryOutcome(BaseModel):
    category: InterventionCategory
    label: str
    total: int = 0
    completed: int = 0
    successful: int = 0
    success_rate: float = 0.0
    total_cost_savings: float = 0.0
    average_cost_savings: float = 0.0
    average_resolution_days: float = 0.0


class MonthlyTrend(BaseModel):
    period: str = Field(..., description="Calendar month, ``YYYY-MM``.")
    interventions: int = 0
    successful: int = 0
    success_rate: float = 0.0
    cost_savings: float = 0.0


class PeriodMetrics(BaseModel):
    interventions: int = 0
    success_rate: float = 0.0
    cost_savings: float = 0.0


class ComparativeAnalysis(BaseModel):
    current_period: PeriodMetrics
    previous_period: PeriodMetrics
    percentage_change: PeriodMetrics


class DetailedOutcome(BaseModel):
    intervention_id: str
    intervention_number: str
    category: InterventionCategory
    priority: InterventionPriority
    status: InterventionStatus
    patient_response: str
    cost_savings: float
    resolution_days: Optional[float]
    completed_at: Optional[datetime]


class OutcomeReport(BaseModel):
    tenant_id: str
    filters: OutcomeFilters
    summary: OutcomeSummary
    category_analysis: list[CategoryOutcome]
    trend_analysis: list[MonthlyTrend]
    comparative_analysis: ComparativeAnalysis
    detailed_outcomes: list[DetailedOutcome]
    generated_at: datetime


# ---------------------------------------------------------------------------
# Cost savings, dashboard, trends
# ---------------------------------------------------------------------------

class CostBreakdown(BaseModel):
    adverse_events_avoided: float = 0.0
    hospital_admissions_avoided: float = 0.0
    medication_waste_reduced: float = 0.0
    intervention_cost: float = 0.0


class CostSavingsEstimate(BaseModel):
    total_savings: float = 0.0
    breakdown: CostBreakdown = Field(default_factory=CostBreakdown)


class DashboardMetrics(BaseModel):
    total_interventions: int = 0
    completed_interventions: int = 0
    active_interventions: int = 0
    pending_interventions: int = 0
    overdue_interventions: int = 0
    success_rate: float = 0.0
    average_resolution_days: float = 0.0
    category_distribution: dict[str, int] = Field(default_factory=dict)
    priority_distribution: dict[str, int] = Field(default_factory=dict)
    recent_interventions: list[Intervention] = Field(default_factory=list)


class TrendPoint(BaseModel):
    period: str
    group: Optional[str] = None
    count: int = 0
    completed: int = 0
    successful: int = 0


TREND_PERIODS = ("day", "week", "month", "quarter")
TREND_GROUPS = ("total", "category", "priority", "status")

_ADVERSE_EVENT_CATEGORIES = {InterventionCategory.ADVERSE_DRUG_REACTION}
_ADMISSION_CATEGORIES = {InterventionCategory.CONTRAINDICATION, InterventionCategory.DRUG_INTERACTION}
_WASTE_CATEGORIES = {InterventionCategory.MEDICATION_NONADHERENCE, InterventionCategory.DOSING_ISSUE}

_DETAIL_LIMIT = 100
_DEFAULT_COMPARISON_DAYS = 30


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def _is_successful(intervention: Intervention) -> bool:
    return (
        intervention.outcome is not None
        and intervention.outcome.patient_response == PatientResponse.IMPROVED
    )


def _cost_savings(intervention: Intervention) -> float:
    if intervention.outcome is None:
        return 0.0
    return intervention.outcome.success_metrics.cost_savings or 0.0


def _percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


def _percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _bucket_label(ts: datetime, period: str) -> str:
    if period == "day":
        return ts.strftime("%Y-%m-%d")
    if period == "week":
        iso = ts.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    if period == "month":
        return ts.strftime("%Y-%m")
    return f"{ts.year}-Q{(ts.month - 1) // 3 + 1}"


def estimate_cost_savings(
    interventions: list[Intervention],
    parameters: Optional[CostParameters] = None,
) -> CostSavingsEstimate:
    """Heuristic value of a set of interventions.

    Improved outcomes count as avoided events: adverse drug reactions as
    adverse events, contraindications and interactions as hospital
    admissions, non-adherence and dosing issues as medication waste.  The
    pharmacist time spent (actual, else estimated, else a default duration)
    is subtracted, and the total is floored at zero.

    Args:
        interventions: Interventions to value.
        parameters: Per-event costs; defaults to ``CostParameters()``.

    Returns:
        A ``CostSavingsEstimate`` with the itemized breakdown.
    """
    params = parameters or CostParameters()
    adverse = admissions = waste = 0
    minutes = 0
    for intervention in interventions:
        if _is_successful(intervention):
            if intervention.category in _ADVERSE_EVENT_CATEGORIES:
                adverse += 1
            if intervention.category in _ADMISSION_CATEGORIES:
                admissions += 1
            if intervention.category in _WASTE_CATEGORIES:
                waste += 1
        if intervention.actual_duration_minutes:
            minutes += intervention.actual_duration_minutes
        elif intervention.estimated_duration_minutes:
            minutes += intervention.estimated_duration_minutes
        else:
            minutes += params.default_duration_minutes

    breakdown = CostBreakdown(
        adverse_events_avoided=adverse * params.adverse_event_cost,
        hospital_admissions_avoided=admissions * params.hospital_admission_cost,
        medication_waste_reduced=waste * params.medication_waste_cost,
        intervention_cost=minutes / 60 * params.pharmacist_hourly_cost,
    )
    total = (
        breakdown.adverse_events_avoided
        + breakdown.hospital_admissions_avoided
        + breakdown.medication_waste_reduced
        - breakdown.intervention_cost
    )
    return CostSavingsEstimate(total_savings=max(0.0, total), breakdown=breakdown)


def classify_compliance(audit_count: int, risk_count: int, min_entries: int = 3) -> tuple[ComplianceStatus, RiskLevel]:
    """Classify one intervention's audit coverage.

    Zero entries is non-compliant.  Any high/critical entry is a warning
    (critical risk when more than two).  Fewer than ``min_entries`` is a
    warning.  Otherwise compliant.
    """
    if audit_count == 0:
        return ComplianceStatus.NON_COMPLIANT, RiskLevel.HIGH
    if risk_count > 0:
        return ComplianceStatus.WARNING, RiskLevel.CRITICAL if risk_count > 2 else RiskLevel.MEDIUM
    if audit_count < min_entries:
        return ComplianceStatus.WARNING, RiskLevel.MEDIUM
    return ComplianceStatus.COMPLIANT, RiskLevel.LOW


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class InterventionAnalytics:
    """Builds compliance and outcome reports from stored records."""

    def __init__(
        self,
        repository: InterventionRepository,
        audit_log: AuditLog,
        settings: Optional[SettingsRegistry] = None,
    ) -> None:
        self._repository = repository
        self._audit_log = audit_log
        self._settings = settings if settings is not None else SettingsRegistry()

    def compliance_report(
        self,
        tenant_id: str,
        date_range: DateRange,
        intervention_ids: Optional[list[str]] = None,
    ) -> ComplianceReport:
        """Score audit coverage for interventions identified in the period.

        Each intervention is classified by ``classify_compliance`` over its
        intervention audit entries in the period.  The score is the
        percentage of compliant interventions.  Recommendations are emitted
        when the score is below target, when risk-flagged entries exceed the
        configured share of interventions, or when any intervention has no
        audit coverage.

        Args:
            tenant_id: Tenant to report on.
            date_range: Identification window for interventions and the
                timestamp window for audit entries.
            intervention_ids: Optionally restrict to these interventions.

        Returns:
            A ``ComplianceReport``.  A period with no interventions yields a
            zero-valued report without recommendations.
        """
        thresholds = self._settings.get_or_default(tenant_id).compliance
        wanted = set(intervention_ids) if intervention_ids else None
        interventions = self._repository.find(
            tenant_id,
            lambda i: date_range.contains(i.identified_at)
            and (wanted is None or i.intervention_id in wanted),
        )
        interventions.sort(key=lambda i: i.identified_at)

        entries = self._audit_log.select(
            tenant_id,
            AuditFilters(resource_type=INTERVENTION_RESOURCE, start=date_range.start, end=date_range.end),
        )
        violations = [e for e in entries if e.is_high_risk]

        by_intervention: dict[str, list[AuditEntry]] = {}
        for entry in entries:
            if entry.intervention_id is not None:
                by_intervention.setdefault(entry.intervention_id, []).append(entry)

        rows = []
        for intervention in interventions:
            linked = by_intervention.get(intervention.intervention_id, [])
            risk_count = sum(1 for e in linked if e.is_high_risk)
            status, risk = classify_compliance(len(linked), risk_count, thresholds.min_audit_entries)
            rows.append(InterventionCompliance(
                intervention_id=intervention.intervention_id,
                intervention_number=intervention.intervention_number,
                audit_count=len(linked),
                risk_activities=risk_count,
                last_audit=max((e.timestamp for e in linked), default=intervention.identified_at),
                compliance_status=status,
                risk_level=risk,
            ))

        total = len(rows)
        score = 0
        recommendations: list[str] = []
        if total:
            compliant = sum(1 for r in rows if r.compliance_status == ComplianceStatus.COMPLIANT)
            score = round(compliant / total * 100)
            if score < thresholds.target_score:
                recommendations.append("Improve audit trail completeness for clinical interventions")
            if len(violations) > total * thresholds.risk_ratio_threshold:
                recommendations.append("Review high-risk activities and implement additional controls")
            if any(r.audit_count == 0 for r in rows):
                recommendations.append("Ensure all interventions have proper audit logging")

        return ComplianceReport(
            tenant_id=tenant_id,
            date_range=date_range,
            total_interventions=total,
            audited_actions=len(entries),
            compliance_score=score,
            risk_activities=len(violations),
            interventions=rows,
            violations=violations,
            recommendations=recommendations,
            generated_at=utcnow(),
        )

    def outcome_report(
        self,
        tenant_id: str,
        filters: Optional[OutcomeFilters] = None,
        now: Optional[datetime] = None,
    ) -> OutcomeReport:
        """Outcome metrics for a period, with trend and period comparison.

        The comparison period has the same length as the requested one and
        ends where it starts (30 days ending at ``date_from``, or at ``now``,
        when the period is open-ended).  Percentage changes against a zero
        previous value are reported as 0.
        """
        filters = filters or OutcomeFilters()
        now = as_utc(now) or utcnow()

        def in_window(start: Optional[datetime], end: Optional[datetime]) -> Callable[[Intervention], bool]:
            def check(intervention: Intervention) -> bool:
                if not filters.matches_attributes(intervention):
                    return False
                stamps = [intervention.identified_at]
                if intervention.completed_at is not None:
                    stamps.append(intervention.completed_at)
                return any(
                    (start is None or ts >= start) and (end is None or ts <= end)
                    for ts in stamps
                )
            return check

        current = self._repository.find(tenant_id, in_window(filters.date_from, filters.date_to))

        if filters.date_from is not None and filters.date_to is not None:
            length = filters.date_to - filters.date_from
        else:
            length = timedelta(days=_DEFAULT_COMPARISON_DAYS)
        previous_end = filters.date_from or now
        previous = self._repository.find(
            tenant_id, in_window(previous_end - length, previous_end)
        )

        summary = self._summarize_outcomes(current)
        previous_metrics = self._period_metrics(previous)
        current_metrics = PeriodMetrics(
            interventions=summary.total_interventions,
            success_rate=summary.success_rate,
            cost_savings=summary.total_cost_savings,
        )

        detailed = sorted(
            current,
            key=lambda i: i.completed_at or i.identified_at,
            reverse=True,
        )[:_DETAIL_LIMIT]

        return OutcomeReport(
            tenant_id=tenant_id,
            filters=filters,
            summary=summary,
            category_analysis=self._category_analysis(current),
            trend_analysis=self._six_month_trend(tenant_id, filters, now),
            comparative_analysis=ComparativeAnalysis(
                current_period=current_metrics,
                previous_period=previous_metrics,
                percentage_change=PeriodMetrics(
                    interventions=round(_percent_change(
                        current_metrics.interventions, previous_metrics.interventions
                    )),
                    success_rate=_percent_change(
                        current_metrics.success_rate, previous_metrics.success_rate
                    ),
                    cost_savings=_percent_change(
                        current_metrics.cost_savings, previous_metrics.cost_savings
                    ),
                ),
            ),
            detailed_outcomes=[
                DetailedOutcome(
                    intervention_id=i.intervention_id,
                    intervention_number=i.intervention_number,
                    category=i.category,
                    priority=i.priority,
                    status=i.status,
                    patient_response=(
                        i.outcome.patient_response.value
                        if i.outcome is not None and i.outcome.patient_response is not None
                        else "unknown"
                    ),
                    cost_savings=_cost_savings(i),
                    resolution_days=i.resolution_days(),
                    completed_at=i.completed_at,
                )
                for i in detailed
            ],
            generated_at=utcnow(),
        )

    def cost_savings(
        self,
        tenant_id: str,
        interventions: list[Intervention],
        parameters: Optional[CostParameters] = None,
    ) -> CostSavingsEstimate:
        """Estimate savings using the tenant's cost parameters unless overridden."""
        params = parameters or self._settings.get_or_default(tenant_id).costs
        return estimate_cost_savings(interventions, params)

    def suspicious_activity(
        self, tenant_id: str, now: Optional[datetime] = None
    ) -> list[SuspiciousActivity]:
        """Suspicious (actor, address) groups using the tenant's thresholds."""
        limits = self._settings.get_or_default(tenant_id).suspicious
        return self._audit_log.find_suspicious(
            tenant_id,
            window_hours=limits.window_hours,
            max_actions=limits.max_actions,
            max_errors=limits.max_errors,
            now=now,
        )

    def dashboard_metrics(
        self,
        tenant_id: str,
        date_range: DateRange,
        now: Optional[datetime] = None,
    ) -> DashboardMetrics:
        """Operational counts for interventions identified in the period."""
        now = as_utc(now) or utcnow()
        interventions = self._repository.find(
            tenant_id, lambda i: date_range.contains(i.identified_at)
        )
        if not interventions:
            return DashboardMetrics()

        completed = [i for i in interventions if i.status == InterventionStatus.COMPLETED]
        active = [i for i in interventions if i.status == InterventionStatus.IN_PROGRESS]
        overdue = [
            i for i in interventions
            if i.is_active
            and i.follow_up.scheduled_date is not None
            and not i.follow_up.completed
            and i.follow_up.scheduled_date < now
        ]
        categories: dict[str, int] = {}
        priorities: dict[str, int] = {}
        for intervention in interventions:
            categories[intervention.category.value] = categories.get(intervention.category.value, 0) + 1
            priorities[intervention.priority.value] = priorities.get(intervention.priority.value, 0) + 1

        resolution = [i.resolution_days() for i in completed if i.resolution_days() is not None]
        recent = sorted(interventions, key=lambda i: i.identified_at, reverse=True)[:5]

        return DashboardMetrics(
            total_interventions=len(interventions),
            completed_interventions=len(completed),
            active_interventions=len(active),
            pending_interventions=sum(
                1 for i in interventions if i.status == InterventionStatus.IDENTIFIED
            ),
            overdue_interventions=len(overdue),
            success_rate=round(_percent(len(completed), len(interventions)), 2),
            average_resolution_days=round(_average(resolution), 1),
            category_distribution=categories,
            priority_distribution=priorities,
            recent_interventions=recent,
        )

    def trend_analysis(
        self,
        tenant_id: str,
        date_range: DateRange,
        period: str = "month",
        group_by: str = "total",
    ) -> list[TrendPoint]:
        """Bucket interventions identified in the period by time and attribute.

        Raises:
            ValidationError: If ``period`` or ``group_by`` is unsupported.
        """
        errors = []
        if period not in TREND_PERIODS:
            errors.append(f"period must be one of {list(TREND_PERIODS)}")
        if group_by not in TREND_GROUPS:
            errors.append(f"group_by must be one of {list(TREND_GROUPS)}")
        if errors:
            raise ValidationError("Invalid trend analysis parameters", errors)

        interventions = self._repository.find(
            tenant_id, lambda i: date_range.contains(i.identified_at)
        )
        buckets: dict[tuple[str, Optional[str]], TrendPoint] = {}
        for intervention in interventions:
            label = _bucket_label(intervention.identified_at, period)
            group = None if group_by == "total" else getattr(intervention, group_by).value
            point = buckets.setdefault((label, group), TrendPoint(period=label, group=group))
            point.count += 1
            if intervention.status == InterventionStatus.COMPLETED:
                point.completed += 1
            if _is_successful(intervention):
                point.successful += 1

        return [buckets[key] for key in sorted(buckets, key=lambda k: (k[0], k[1] or ""))]

    # -- outcome helpers --

    @staticmethod
    def _summarize_outcomes(interventions: list[Intervention]) -> OutcomeSummary:
        if not interventions:
            return OutcomeSummary()
        completed = [i for i in interventions if i.status == InterventionStatus.COMPLETED]
        successful = [i for i in interventions if _is_successful(i)]
        savings = sum(_cost_savings(i) for i in interventions)
        resolution = [i.resolution_days() for i in completed if i.resolution_days() is not None]
        return OutcomeSummary(
            total_interventions=len(interventions),
            completed_interventions=len(completed),
            successful_interventions=len(successful),
            success_rate=_percent(len(successful), len(interventions)),
            total_cost_savings=savings,
            average_cost_savings=savings / len(interventions),
            average_resolution_days=_average(resolution),
        )

    @staticmethod
    def _period_metrics(interventions: list[Intervention]) -> PeriodMetrics:
        successful = sum(1 for i in interventions if _is_successful(i))
        return PeriodMetrics(
            interventions=len(interventions),
            success_rate=_percent(successful, len(interventions)),
            cost_savings=sum(_cost_savings(i) for i in interventions),
        )

    def _category_analysis(self, interventions: list[Intervention]) -> list[CategoryOutcome]:
        grouped: dict[InterventionCategory, list[Intervention]] = {}
        for intervention in interventions:
            grouped.setdefault(intervention.category, []).append(intervention)

        rows = []
        for category, items in grouped.items():
            summary = self._summarize_outcomes(items)
            rows.append(CategoryOutcome(
                category=category,
                label=CATEGORY_LABELS.get(category, category.value),
                total=summary.total_interventions,
                completed=summary.completed_interventions,
                successful=summary.successful_interventions,
                success_rate=summary.success_rate,
                total_cost_savings=summary.total_cost_savings,
                average_cost_savings=summary.average_cost_savings,
                average_resolution_days=summary.average_resolution_days,
            ))
        rows.sort(key=lambda r: (-r.total, r.label))
        return rows

    def _six_month_trend(
        self, tenant_id: str, filters: OutcomeFilters, now: datetime
    ) -> list[MonthlyTrend]:
        """Monthly buckets for the six calendar months ending with ``now``.

        Each intervention falls in the month it was completed, or identified
        if still open.  The period filter does not apply here.
        """
        months = [_shift_month(now.year, now.month, -offset) for offset in range(5, -1, -1)]
        buckets = {f"{y:04d}-{m:02d}": MonthlyTrend(period=f"{y:04d}-{m:02d}") for y, m in months}

        for intervention in self._repository.find(tenant_id, filters.matches_attributes):
            ts = intervention.completed_at or intervention.identified_at
            bucket = buckets.get(ts.strftime("%Y-%m"))
            if bucket is None:
                continue
            bucket.interventions += 1
            bucket.cost_savings += _cost_savings(intervention)
            if _is_successful(intervention):
                bucket.successful += 1

        for bucket in buckets.values():
            bucket.success_rate = _percent(bucket.successful, bucket.interventions)
        return list(buckets.values())
