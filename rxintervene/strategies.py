"""
Strategy Recommendation Engine -- Rule-Based Remediation Suggestions.

Maps each intervention category to a ranked list of remediation strategy
templates.  The table is a module-level constant built once at import;
every lookup returns copies, so callers may annotate or edit results
without affecting later requests.

**Ranking:**  strategies are ordered primary-before-secondary, then
alphabetically by label.

**Contextual re-ranking** (``generate_recommendations``):

* high/critical priority keeps primary strategies only;
* adherence/compliance wording in the issue description restricts the list
  to patient counseling and medication review, except that the polypharmacy
  and geriatric rules below keep their strategies in place;
* polypharmacy (more than five active medications) moves a medication
  review to the front;
* geriatric patients (older than 65) get a pharmacokinetics note on
  dose-adjustment rationale;
* at most four strategies are returned.

Custom strategies are checked by ``validate_custom_strategy``, which
returns every failure instead of raising on the first.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, Field

from rxintervene.config import RecommendationSettings
from rxintervene.models import (
    InterventionCategory,
    InterventionPriority,
    Strategy,
    StrategyPriority,
    StrategyType,
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class StrategyTemplate(BaseModel):
    """A recommended strategy as it appears in the rule table."""

    type: StrategyType
    label: str
    description: str
    rationale: str
    expected_outcome: str
    priority: StrategyPriority
    applicable_categories: tuple[InterventionCategory, ...] = Field(default_factory=tuple)

    def to_strategy(self) -> Strategy:
        """Instantiate this template as a strategy attachable to an intervention."""
        return Strategy(
            type=self.type,
            description=self.description,
            rationale=self.rationale,
            expected_outcome=self.expected_outcome,
            priority=self.priority,
        )


class PatientFactors(BaseModel):
    """Patient context used for contextual re-ranking."""

    age: Optional[int] = Field(default=None, ge=0)
    current_medications: list[str] = Field(default_factory=list)


class StrategyValidationResult:
    """Result of validating a custom strategy."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def __repr__(self) -> str:
        return f"StrategyValidationResult(is_valid={self.is_valid}, errors={self.errors})"


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

_C = InterventionCategory
_T = StrategyType
_P = StrategyPriority


def _template(type_, label, description, rationale, expected_outcome, priority, *categories):
    return StrategyTemplate(
        type=type_,
        label=label,
        description=description,
        rationale=rationale,
        expected_outcome=expected_outcome,
        priority=priority,
        applicable_categories=categories,
    )


STRATEGY_MAPPINGS: dict[InterventionCategory, tuple[StrategyTemplate, ...]] = {
    _C.DRUG_THERAPY_PROBLEM: (
        _template(
            _T.MEDICATION_REVIEW, "Comprehensive Medication Review",
            "Conduct thorough review of all medications",
            "Identify potential drug therapy problems and optimization opportunities",
            "Improved medication safety and efficacy",
            _P.PRIMARY, _C.DRUG_THERAPY_PROBLEM, _C.DOSING_ISSUE,
        ),
        _template(
            _T.DOSE_ADJUSTMENT, "Dose Optimization",
            "Adjust medication dosage based on clinical parameters",
            "Optimize therapeutic effect while minimizing adverse effects",
            "Improved clinical response with reduced side effects",
            _P.PRIMARY, _C.DRUG_THERAPY_PROBLEM, _C.DOSING_ISSUE,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Alternative Medication Selection",
            "Consider alternative medications with better safety/efficacy profile",
            "Current therapy may not be optimal for patient-specific factors",
            "Better therapeutic outcomes with improved tolerability",
            _P.SECONDARY, _C.DRUG_THERAPY_PROBLEM, _C.ADVERSE_DRUG_REACTION, _C.CONTRAINDICATION,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Enhanced Monitoring Protocol",
            "Implement additional monitoring parameters",
            "Ensure early detection of therapeutic response or adverse effects",
            "Improved safety monitoring and outcome tracking",
            _P.SECONDARY, _C.DRUG_THERAPY_PROBLEM, _C.ADVERSE_DRUG_REACTION,
        ),
    ),
    _C.ADVERSE_DRUG_REACTION: (
        _template(
            _T.DISCONTINUATION, "Medication Discontinuation",
            "Discontinue the offending medication",
            "Eliminate the source of adverse drug reaction",
            "Resolution of adverse effects",
            _P.PRIMARY, _C.ADVERSE_DRUG_REACTION, _C.CONTRAINDICATION,
        ),
        _template(
            _T.DOSE_ADJUSTMENT, "Dose Reduction",
            "Reduce medication dose to minimize adverse effects",
            "Maintain therapeutic benefit while reducing toxicity",
            "Reduced adverse effects while preserving efficacy",
            _P.PRIMARY, _C.ADVERSE_DRUG_REACTION, _C.DOSING_ISSUE,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Switch to Alternative Agent",
            "Replace with medication having better tolerability profile",
            "Maintain therapeutic effect with improved safety profile",
            "Continued therapeutic benefit without adverse effects",
            _P.SECONDARY, _C.ADVERSE_DRUG_REACTION, _C.CONTRAINDICATION,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Intensive Safety Monitoring",
            "Implement close monitoring for adverse effect resolution",
            "Ensure safe resolution and prevent recurrence",
            "Safe management and prevention of future ADRs",
            _P.SECONDARY, _C.ADVERSE_DRUG_REACTION,
        ),
    ),
    _C.MEDICATION_NONADHERENCE: (
        _template(
            _T.PATIENT_COUNSELING, "Patient Education and Counseling",
            "Provide comprehensive medication education",
            "Address knowledge gaps and misconceptions about medications",
            "Improved understanding and medication adherence",
            _P.PRIMARY, _C.MEDICATION_NONADHERENCE,
        ),
        _template(
            _T.MEDICATION_REVIEW, "Adherence-Focused Medication Review",
            "Review regimen complexity and adherence barriers",
            "Identify and address specific adherence challenges",
            "Simplified regimen with improved adherence",
            _P.PRIMARY, _C.MEDICATION_NONADHERENCE,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Adherence-Friendly Alternatives",
            "Consider medications with better adherence profiles",
            "Reduce dosing frequency or complexity to improve adherence",
            "Improved adherence through simplified regimen",
            _P.SECONDARY, _C.MEDICATION_NONADHERENCE,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Adherence Monitoring Program",
            "Implement systematic adherence monitoring",
            "Track adherence patterns and provide timely interventions",
            "Sustained improvement in medication adherence",
            _P.SECONDARY, _C.MEDICATION_NONADHERENCE,
        ),
    ),
    _C.DRUG_INTERACTION: (
        _template(
            _T.MEDICATION_REVIEW, "Drug Interaction Assessment",
            "Comprehensive review of all medications for interactions",
            "Identify and manage clinically significant drug interactions",
            "Elimination of harmful drug interactions",
            _P.PRIMARY, _C.DRUG_INTERACTION,
        ),
        _template(
            _T.DOSE_ADJUSTMENT, "Interaction-Based Dose Modification",
            "Adjust doses to account for drug interactions",
            "Maintain efficacy while minimizing interaction effects",
            "Safe concurrent use of interacting medications",
            _P.PRIMARY, _C.DRUG_INTERACTION, _C.DOSING_ISSUE,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Non-Interacting Alternative",
            "Replace one medication with non-interacting alternative",
            "Eliminate interaction while maintaining therapeutic goals",
            "Continued therapy without drug interactions",
            _P.SECONDARY, _C.DRUG_INTERACTION,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Interaction Monitoring Protocol",
            "Implement monitoring for interaction effects",
            "Early detection of interaction-related problems",
            "Safe management of unavoidable interactions",
            _P.SECONDARY, _C.DRUG_INTERACTION,
        ),
    ),
    _C.DOSING_ISSUE: (
        _template(
            _T.DOSE_ADJUSTMENT, "Dose Optimization",
            "Adjust dose based on patient-specific factors",
            "Optimize dose for individual patient characteristics",
            "Improved therapeutic response with optimal safety",
            _P.PRIMARY, _C.DOSING_ISSUE,
        ),
        _template(
            _T.MEDICATION_REVIEW, "Dosing Regimen Review",
            "Comprehensive review of dosing appropriateness",
            "Ensure dosing aligns with current guidelines and patient factors",
            "Evidence-based dosing optimization",
            _P.PRIMARY, _C.DOSING_ISSUE,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Therapeutic Drug Monitoring",
            "Implement monitoring of drug levels or therapeutic markers",
            "Guide dose adjustments based on objective measurements",
            "Precision dosing with improved outcomes",
            _P.SECONDARY, _C.DOSING_ISSUE,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Alternative Dosing Strategy",
            "Consider alternative formulations or dosing approaches",
            "Improve dosing convenience or therapeutic profile",
            "Better dosing outcomes through alternative approach",
            _P.SECONDARY, _C.DOSING_ISSUE,
        ),
    ),
    _C.CONTRAINDICATION: (
        _template(
            _T.DISCONTINUATION, "Immediate Discontinuation",
            "Stop contraindicated medication immediately",
            "Prevent serious adverse outcomes from contraindicated use",
            "Elimination of contraindication risk",
            _P.PRIMARY, _C.CONTRAINDICATION,
        ),
        _template(
            _T.ALTERNATIVE_THERAPY, "Safe Alternative Selection",
            "Replace with medication without contraindications",
            "Maintain therapeutic benefit while ensuring safety",
            "Continued therapy without contraindication risk",
            _P.PRIMARY, _C.CONTRAINDICATION,
        ),
        _template(
            _T.PHYSICIAN_CONSULTATION, "Specialist Consultation",
            "Consult with specialist for complex contraindication management",
            "Obtain expert guidance for challenging clinical situations",
            "Expert-guided safe medication management",
            _P.SECONDARY, _C.CONTRAINDICATION,
        ),
        _template(
            _T.ADDITIONAL_MONITORING, "Risk Mitigation Monitoring",
            "Implement intensive monitoring if discontinuation not possible",
            "Minimize risk when contraindicated medication must be continued",
            "Safest possible management of unavoidable contraindication",
            _P.SECONDARY, _C.CONTRAINDICATION,
        ),
    ),
    _C.OTHER: (
        _template(
            _T.MEDICATION_REVIEW, "Comprehensive Assessment",
            "Thorough evaluation of the clinical situation",
            "Understand the specific nature of the clinical issue",
            "Clear identification and management plan",
            _P.PRIMARY, _C.OTHER,
        ),
        _template(
            _T.PATIENT_COUNSELING, "Patient Education",
            "Provide relevant patient education and counseling",
            "Ensure patient understanding of their medication therapy",
            "Improved patient knowledge and engagement",
            _P.PRIMARY, _C.OTHER,
        ),
        _template(
            _T.PHYSICIAN_CONSULTATION, "Healthcare Provider Consultation",
            "Collaborate with other healthcare providers",
            "Ensure coordinated care and optimal outcomes",
            "Integrated healthcare team approach",
            _P.SECONDARY, _C.OTHER,
        ),
        _template(
            _T.CUSTOM, "Custom Intervention Strategy",
            "Develop tailored intervention for unique situation",
            "Address specific clinical needs not covered by standard approaches",
            "Individualized solution for complex clinical issue",
            _P.SECONDARY, _C.OTHER,
        ),
    ),
}

_ADHERENCE_KEYWORDS = re.compile(r"adherence|compliance", re.IGNORECASE)
_ADHERENCE_TYPES = {StrategyType.PATIENT_COUNSELING, StrategyType.MEDICATION_REVIEW}
_GERIATRIC_NOTE = " (Consider age-related pharmacokinetic changes)"

_MIN_LENGTHS = {"description": 10, "rationale": 10, "expected_outcome": 20}
_MAX_LENGTH = 500
_FIELD_LABELS = {
    "description": "Strategy description",
    "rationale": "Strategy rationale",
    "expected_outcome": "Expected outcome",
}


def _rank_key(template: StrategyTemplate) -> tuple[int, str]:
    return (0 if template.priority == StrategyPriority.PRIMARY else 1, template.label.lower())


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_recommended_strategies(category: InterventionCategory | str) -> list[StrategyTemplate]:
    """Return ranked strategy templates for a category.

    Unknown categories fall back to the ``other`` table.
    """
    try:
        key = InterventionCategory(category)
    except ValueError:
        key = InterventionCategory.OTHER
    templates = STRATEGY_MAPPINGS.get(key, STRATEGY_MAPPINGS[InterventionCategory.OTHER])
    return [t.model_copy(deep=True) for t in sorted(templates, key=_rank_key)]


def get_all_strategies() -> list[StrategyTemplate]:
    """Return one template per strategy type, sorted by label."""
    seen: dict[StrategyType, StrategyTemplate] = {}
    for templates in STRATEGY_MAPPINGS.values():
        for template in templates:
            seen.setdefault(template.type, template)
    return [t.model_copy(deep=True) for t in sorted(seen.values(), key=lambda t: t.label.lower())]


def get_strategies_for_categories(
    categories: list[InterventionCategory],
) -> list[StrategyTemplate]:
    """Merge ranked strategies for several categories, one per type.

    A template is only taken from a category's table when that category is
    among its applicable categories.
    """
    merged: dict[StrategyType, StrategyTemplate] = {}
    for category in categories:
        for template in get_recommended_strategies(category):
            if template.type in merged:
                continue
            if InterventionCategory(category) in template.applicable_categories:
                merged[template.type] = template
    return sorted(merged.values(), key=_rank_key)


def get_strategy_by_type(strategy_type: StrategyType | str) -> Optional[StrategyTemplate]:
    """Return the first template of the given type, or None."""
    for templates in STRATEGY_MAPPINGS.values():
        for template in templates:
            if template.type == strategy_type:
                return template.model_copy(deep=True)
    return None


# ---------------------------------------------------------------------------
# Recommendation
# ---------------------------------------------------------------------------

def generate_recommendations(
    category: InterventionCategory | str,
    priority: InterventionPriority | str,
    issue_description: str = "",
    patient_factors: Optional[PatientFactors] = None,
    settings: Optional[RecommendationSettings] = None,
) -> list[StrategyTemplate]:
    """Recommend strategies for a new or existing intervention.

    Args:
        category: Intervention category.
        priority: Intervention priority; high/critical keep primary strategies only.
        issue_description: Free-text issue, scanned for adherence wording.
        patient_factors: Optional patient context for re-ranking.
        settings: Optional tuning; defaults to ``RecommendationSettings()``.

    Returns:
        At most ``settings.max_results`` templates, best first.
    """
    settings = settings or RecommendationSettings()
    recommendations = get_recommended_strategies(category)

    if InterventionPriority(priority) in (InterventionPriority.HIGH, InterventionPriority.CRITICAL):
        recommendations = [r for r in recommendations if r.priority == StrategyPriority.PRIMARY]

    adherence = bool(issue_description and _ADHERENCE_KEYWORDS.search(issue_description))
    factors = patient_factors or PatientFactors()
    polypharmacy = len(factors.current_medications) > settings.polypharmacy_threshold
    geriatric = factors.age is not None and factors.age > settings.geriatric_age

    kept: list[StrategyTemplate] = []
    for template in recommendations:
        # Patient-factor keeps win over the adherence restriction.
        if polypharmacy and template.type == StrategyType.MEDICATION_REVIEW:
            kept.append(template)
        elif geriatric and template.type == StrategyType.DOSE_ADJUSTMENT:
            template.rationale += _GERIATRIC_NOTE
            kept.append(template)
        elif not adherence or template.type in _ADHERENCE_TYPES:
            kept.append(template)

    if polypharmacy:
        # Stable sort: medication reviews move ahead, relative order otherwise kept.
        kept.sort(key=lambda r: r.type != StrategyType.MEDICATION_REVIEW)

    return kept[:settings.max_results]


# ---------------------------------------------------------------------------
# Custom strategy validation
# ---------------------------------------------------------------------------

def validate_custom_strategy(strategy: Strategy | dict[str, Any]) -> StrategyValidationResult:
    """Check a custom strategy's type and text lengths.

    Accepts either a ``Strategy`` or a raw mapping (as received from a form
    before model validation).  Minimum lengths are measured on stripped
    text; maximum lengths on the raw text.

    Returns:
        A ``StrategyValidationResult`` listing every failure.
    """
    if isinstance(strategy, Strategy):
        data: dict[str, Any] = strategy.model_dump()
    else:
        data = dict(strategy)

    errors: list[str] = []
    if data.get("type") != StrategyType.CUSTOM:
        errors.append('Custom strategy must have type "custom"')

    for field, minimum in _MIN_LENGTHS.items():
        value = data.get(field) or ""
        if len(value.strip()) < minimum:
            errors.append(f"{_FIELD_LABELS[field]} must be at least {minimum} characters")

    for field in _MIN_LENGTHS:
        value = data.get(field) or ""
        if len(value) > _MAX_LENGTH:
            errors.append(f"{_FIELD_LABELS[field]} cannot exceed {_MAX_LENGTH} characters")

    return StrategyValidationResult(errors)
