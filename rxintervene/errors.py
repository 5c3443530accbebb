"""
Typed error taxonomy for the intervention engine.

Every error raised by a workflow operation is a recoverable,
caller-facing condition.  The HTTP layer maps them onto responses:

* ``NotFoundError``      -- missing or cross-tenant patient, user,
  intervention, assignment, strategy, or therapy review.
* ``BusinessRuleError``  -- the request is well-formed but violates a
  workflow rule (illegal transition, missing outcome, duplicate
  assignment, ineligible role, ...).
* ``ValidationError``    -- malformed input such as a custom strategy that
  fails content checks or an unsupported export format.

Infrastructure failures in best-effort side effects (audit writes,
notifications, patient-flag refreshes) never surface as these errors.
"""

from __future__ import annotations

from typing import Optional


class InterventionError(Exception):
    """Base class for all engine errors."""
    pass


class NotFoundError(InterventionError):
    """Raised when a referenced record does not exist in the caller's tenant."""
    pass


class BusinessRuleError(InterventionError):
    """Raised when an operation violates a workflow rule."""
    pass


class VersionConflictError(BusinessRuleError):
    """Raised when an optimistic-concurrency version check fails."""

    def __init__(self, intervention_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Intervention '{intervention_id}' was modified concurrently: "
            f"expected version {expected}, found {actual}."
        )
        self.intervention_id = intervention_id
        self.expected = expected
        self.actual = actual


class ValidationError(InterventionError):
    """Raised when input fails content validation.

    ``errors`` carries the individual failure messages so callers can
    render them field by field.
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
