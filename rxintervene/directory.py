"""
Collaborator directories: patients, staff, and therapy reviews.

The engine does not own patient, user, or medication-therapy-review
records; it only needs to look them up.  These registries stand in for
those collaborators with the same multi-tenant contract as the settings
registry: lookups are scoped by ``tenant_id`` and return deep copies, and
a record registered for tenant A is not found under tenant B.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Patient(BaseModel):
    """A patient as seen by the intervention engine (synthetic only in examples)."""

    patient_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(..., min_length=1)
    display_name: str = Field(default="")
    date_of_birth: Optional[date] = Field(default=None)
    active_medications: list[str] = Field(default_factory=list)
    has_active_interventions: bool = Field(
        default=False,
        description="Flag maintained by the workflow's patient-flag refresh.",
    )
    active_intervention_count: int = Field(default=0, ge=0)

    def age(self, as_of: Optional[date] = None) -> Optional[int]:
        if self.date_of_birth is None:
            return None
        as_of = as_of or date.today()
        years = as_of.year - self.date_of_birth.year
        if (as_of.month, as_of.day) < (self.date_of_birth.month, self.date_of_birth.day):
            years -= 1
        return years


class StaffMember(BaseModel):
    """A workplace user who can be assigned to interventions."""

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(..., min_length=1)
    display_name: str = Field(default="")
    workplace_role: str = Field(
        ...,
        description="Organizational role (e.g. 'Pharmacist', 'Owner', 'Physician', 'Nurse').",
    )


class DrugTherapyProblem(BaseModel):
    """A problem identified during a medication therapy review."""

    problem_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(..., min_length=1)
    patient_id: str
    category: str = Field(
        ...,
        description=(
            "Problem category, e.g. 'untreated_indication', 'overdosage', "
            "'adverse_drug_reaction', 'drug_interaction'."
        ),
    )
    severity: str = Field(default="moderate", description="'critical', 'major', 'moderate' or 'minor'.")
    description: str = Field(..., min_length=1)


class TherapyReview(BaseModel):
    """An external medication therapy review with its identified problems."""

    review_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(..., min_length=1)
    patient_id: str
    review_number: str = Field(default="")
    status: str = Field(default="in_progress")
    problems: list[DrugTherapyProblem] = Field(default_factory=list)

    def find_problem(self, problem_id: str) -> Optional[DrugTherapyProblem]:
        for problem in self.problems:
            if problem.problem_id == problem_id:
                return problem
        return None


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------

class PatientDirectory:
    """Tenant-scoped patient lookup."""

    def __init__(self) -> None:
        self._patients: dict[tuple[str, str], Patient] = {}
        self._lock = threading.Lock()

    def register(self, patient: Patient) -> Patient:
        with self._lock:
            self._patients[(patient.tenant_id, patient.patient_id)] = copy.deepcopy(patient)
        return patient

    def get(self, tenant_id: str, patient_id: str) -> Optional[Patient]:
        with self._lock:
            patient = self._patients.get((tenant_id, patient_id))
            return copy.deepcopy(patient) if patient is not None else None

    def refresh_intervention_flags(
        self, tenant_id: str, patient_id: str, active_count: int
    ) -> None:
        """Record how many active interventions the patient has.

        Raises:
            KeyError: If the patient is not registered for the tenant.
        """
        with self._lock:
            patient = self._patients.get((tenant_id, patient_id))
            if patient is None:
                raise KeyError(f"No patient '{patient_id}' in tenant '{tenant_id}'")
            patient.active_intervention_count = active_count
            patient.has_active_interventions = active_count > 0

    def __len__(self) -> int:
        return len(self._patients)


class StaffDirectory:
    """Tenant-scoped staff lookup used for assignment eligibility."""

    def __init__(self) -> None:
        self._staff: dict[tuple[str, str], StaffMember] = {}
        self._lock = threading.Lock()

    def register(self, member: StaffMember) -> StaffMember:
        with self._lock:
            self._staff[(member.tenant_id, member.user_id)] = copy.deepcopy(member)
        return member

    def get(self, tenant_id: str, user_id: str) -> Optional[StaffMember]:
        with self._lock:
            member = self._staff.get((tenant_id, user_id))
            return copy.deepcopy(member) if member is not None else None

    def __len__(self) -> int:
        return len(self._staff)


class TherapyReviewDirectory:
    """Tenant-scoped lookup of external therapy reviews."""

    def __init__(self) -> None:
        self._reviews: dict[tuple[str, str], TherapyReview] = {}
        self._lock = threading.Lock()

    def register(self, review: TherapyReview) -> TherapyReview:
        with self._lock:
            self._reviews[(review.tenant_id, review.review_id)] = copy.deepcopy(review)
        return review

    def get(self, tenant_id: str, review_id: str) -> Optional[TherapyReview]:
        with self._lock:
            review = self._reviews.get((tenant_id, review_id))
            return copy.deepcopy(review) if review is not None else None

    def __len__(self) -> int:
        return len(self._reviews)
