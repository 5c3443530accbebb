"""
Assignment role eligibility.

Decides whether a workplace user may take a given role on an
intervention's care team.  Clinical roles are restricted to matching
organizational roles; patient and caregiver roles are open to anyone.

**Eligibility table:**

* pharmacist -- Pharmacist, Owner
* physician  -- Physician, Doctor
* nurse      -- Nurse, Pharmacist, Owner
* patient    -- unrestricted
* caregiver  -- unrestricted
"""

from __future__ import annotations

from rxintervene.errors import BusinessRuleError
from rxintervene.models import AssignmentRole


# ---------------------------------------------------------------------------
# Eligibility definitions
# ---------------------------------------------------------------------------

# Maps assignment role -> workplace roles allowed to hold it (empty = anyone)
_ROLE_REQUIREMENTS: dict[AssignmentRole, frozenset[str]] = {
    AssignmentRole.PHARMACIST: frozenset({"Pharmacist", "Owner"}),
    AssignmentRole.PHYSICIAN: frozenset({"Physician", "Doctor"}),
    AssignmentRole.NURSE: frozenset({"Nurse", "Pharmacist", "Owner"}),
    AssignmentRole.PATIENT: frozenset(),
    AssignmentRole.CAREGIVER: frozenset(),
}


def check_role_eligibility(role: AssignmentRole, workplace_role: str) -> bool:
    """Check whether a workplace role may hold an assignment role.

    Args:
        role: The requested assignment role.
        workplace_role: The user's organizational role.

    Returns:
        True if the user is eligible, False otherwise.
    """
    required = _ROLE_REQUIREMENTS.get(AssignmentRole(role), frozenset())
    return not required or workplace_role in required


def require_role_eligibility(role: AssignmentRole, workplace_role: str) -> None:
    """Enforce role eligibility; raise if the user is not eligible.

    Raises:
        BusinessRuleError: If the workplace role is not in the allow-list.
    """
    if not check_role_eligibility(role, workplace_role):
        raise BusinessRuleError(
            f"User role '{workplace_role}' is not authorized for assignment role "
            f"'{AssignmentRole(role).value}'."
        )


def eligible_workplace_roles(role: AssignmentRole) -> frozenset[str]:
    """Return the workplace roles allowed for an assignment role (empty = any)."""
    return _ROLE_REQUIREMENTS.get(AssignmentRole(role), frozenset())
