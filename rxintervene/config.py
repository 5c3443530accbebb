"""
Engine Settings -- Multi-Tenant Configuration for RxIntervene.

Every pharmacy tenant runs the same workflow rules, but the numbers that
tune them differ: a hospital outpatient pharmacy may keep audit records
for ten years while a community chain keeps the regulatory minimum, and
cost-savings estimates depend on local adverse-event and admission costs.
This module encodes those numbers as validated ``EngineSettings`` objects,
holds one per tenant in a ``SettingsRegistry``, and loads them from YAML.

Nothing here changes *which* transitions are legal or which roles are
eligible for an assignment; those rules are fixed in code.
"""

from __future__ import annotations

import copy
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Nested settings blocks
# ---------------------------------------------------------------------------

class ComplianceThresholds(BaseModel):
    """Thresholds used when classifying interventions for compliance."""

    min_audit_entries: int = Field(
        default=3,
        ge=1,
        description="Audit entries an intervention needs before it can be 'compliant'.",
    )
    target_score: float = Field(
        default=80.0,
        ge=0,
        le=100,
        description="Compliance score below which a completeness recommendation is emitted.",
    )
    risk_ratio_threshold: float = Field(
        default=0.10,
        ge=0,
        description=(
            "Ratio of high/critical audit entries to interventions above which "
            "a risk-review recommendation is emitted."
        ),
    )


class SuspiciousActivityThresholds(BaseModel):
    """Per (actor, address) limits within the suspicious-activity window."""

    max_actions: int = Field(default=100, ge=1)
    max_errors: int = Field(default=10, ge=0)
    window_hours: int = Field(default=24, gt=0)


class CostParameters(BaseModel):
    """Per-event costs used by the cost-savings estimator.

    These are heuristic figures for reporting; tenants should replace them
    with their own health-economics numbers.
    """

    adverse_event_cost: float = Field(default=5000.0, ge=0)
    hospital_admission_cost: float = Field(default=15000.0, ge=0)
    medication_waste_cost: float = Field(default=200.0, ge=0)
    pharmacist_hourly_cost: float = Field(default=50.0, ge=0)
    default_duration_minutes: int = Field(
        default=30,
        ge=0,
        description="Pharmacist time assumed when an intervention records no duration.",
    )


class RecommendationSettings(BaseModel):
    """Tuning for contextual strategy re-ranking."""

    max_results: int = Field(default=4, ge=1)
    polypharmacy_threshold: int = Field(
        default=5,
        ge=0,
        description="Active medication count above which a medication review is boosted.",
    )
    geriatric_age: int = Field(
        default=65,
        ge=0,
        description="Age above which dose-adjustment rationale carries a pharmacokinetics note.",
    )


# ---------------------------------------------------------------------------
# Tenant settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Complete engine configuration for a single tenant."""

    tenant_id: str = Field(
        default="default",
        min_length=1,
        description="Tenant these settings apply to; the registry isolation key.",
    )
    duplicate_window_days: int = Field(
        default=30,
        gt=0,
        description="Look-back window for duplicate (same patient + category) detection.",
    )
    overdue_assignment_days: int = Field(
        default=7,
        gt=0,
        description="Days an active assignment may run before counting as overdue.",
    )
    audit_retention_days: int = Field(
        default=2555,
        ge=30,
        description=(
            "Days audit entries are retained before the retention job may purge "
            "them.  Minimum 30 days."
        ),
    )
    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    notification_channels: list[str] = Field(
        default_factory=lambda: ["dashboard"],
        description="Channels for assignment and status-change notifications.",
    )
    compliance: ComplianceThresholds = Field(default_factory=ComplianceThresholds)
    suspicious: SuspiciousActivityThresholds = Field(default_factory=SuspiciousActivityThresholds)
    costs: CostParameters = Field(default_factory=CostParameters)
    recommendations: RecommendationSettings = Field(default_factory=RecommendationSettings)

    @field_validator("notification_channels")
    @classmethod
    def validate_channels(cls, v: list[str]) -> list[str]:
        allowed = {"dashboard", "email", "sms", "webhook"}
        unknown = [c for c in v if c not in allowed]
        if unknown:
            raise ValueError(f"notification_channels must be drawn from {sorted(allowed)}, got {unknown}")
        return v

    @field_validator("max_page_size")
    @classmethod
    def max_above_default(cls, v: int, info) -> int:
        default = info.data.get("default_page_size")
        if default is not None and v < default:
            raise ValueError(f"max_page_size ({v}) must be >= default_page_size ({default})")
        return v


DEFAULT_SETTINGS = EngineSettings()
"""Built-in settings used when a tenant has no configuration of its own."""


# ---------------------------------------------------------------------------
# Settings registry (multi-tenant)
# ---------------------------------------------------------------------------

class SettingsRegistry:
    """In-memory multi-tenant settings registry keyed by ``tenant_id``.

    Settings are deep-copied on the way in and out, so a caller holding a
    returned object cannot change what another tenant's request sees.
    """

    def __init__(self) -> None:
        self._settings: dict[str, EngineSettings] = {}

    def register(self, settings: EngineSettings) -> None:
        """Register settings for a new tenant.

        Raises:
            ValueError: If the tenant is already registered.
        """
        if settings.tenant_id in self._settings:
            raise ValueError(
                f"Settings for tenant '{settings.tenant_id}' already registered. "
                "Use update() to modify them."
            )
        self._settings[settings.tenant_id] = copy.deepcopy(settings)

    def get(self, tenant_id: str) -> EngineSettings:
        """Return a copy of the tenant's settings.

        Raises:
            KeyError: If no settings are registered for ``tenant_id``.
        """
        if tenant_id not in self._settings:
            raise KeyError(f"No settings registered for tenant '{tenant_id}'")
        return copy.deepcopy(self._settings[tenant_id])

    def get_or_default(self, tenant_id: str) -> EngineSettings:
        if tenant_id in self._settings:
            return copy.deepcopy(self._settings[tenant_id])
        return DEFAULT_SETTINGS.model_copy(update={"tenant_id": tenant_id}, deep=True)

    def update(self, settings: EngineSettings) -> None:
        """Replace a registered tenant's settings.

        Raises:
            KeyError: If the tenant is not registered.
        """
        if settings.tenant_id not in self._settings:
            raise KeyError(
                f"Cannot update: no settings registered for tenant '{settings.tenant_id}'"
            )
        self._settings[settings.tenant_id] = copy.deepcopy(settings)

    def list_tenants(self) -> list[str]:
        return sorted(self._settings.keys())

    def __len__(self) -> int:
        return len(self._settings)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._settings


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> list[EngineSettings]:
    """Load tenant settings from a YAML file.

    The file must contain a top-level ``tenants`` list; each item is
    validated through ``EngineSettings`` (nested blocks included)::

        tenants:
          - tenant_id: "pharmacy_north"
            duplicate_window_days: 14
            costs:
              hospital_admission_cost: 12000
            ...

    Args:
        path: Path to the YAML file.

    Returns:
        List of validated ``EngineSettings`` instances.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any tenant's settings fail validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "tenants" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'tenants' key with a list of settings objects."
        )

    tenants_data = raw["tenants"]
    if not isinstance(tenants_data, list):
        raise ValueError("'tenants' must be a list of settings objects.")

    settings: list[EngineSettings] = []
    for idx, entry in enumerate(tenants_data):
        if not isinstance(entry, dict):
            raise ValueError(f"Settings entry at index {idx} must be a mapping.")
        settings.append(EngineSettings.model_validate(entry))

    return settings
