"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every intervention mutation -- creation, status change, strategy edit,
outcome, follow-up, assignment change, soft delete -- and every sensitive
read is recorded as one structured ``AuditEntry``.  The log is the system
of record: ``append`` never rejects an entry on business-logic grounds.

Entries are linked via a SHA-256 hash chain: each entry stores the hash of
its predecessor, so modifying any stored entry breaks ``verify_chain()``.
The only deletion path is ``purge()``, the retention job, which drops
expired entries and remembers, for each retained entry whose predecessor
was dropped, the hash it links to.

**Entry details** are a tagged union keyed by ``kind``: each action code
records a known detail shape (``CreatedDetails``, ``AssignmentDetails``,
...), and ``GenericDetails`` carries an open key/value map for genuinely
unstructured diagnostic context.

**Multi-tenant isolation:**  All queries, summaries, and exports are scoped
by ``tenant_id``.  Entries belonging to tenant A are never visible to
tenant B.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from rxintervene.config import SettingsRegistry
from rxintervene.models import DateRange, RequestContext, as_utc, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action codes and classification enums
# ---------------------------------------------------------------------------

class AuditAction(str, enum.Enum):
    """Action codes written by the intervention engine.

    ``append`` accepts any action string; these are the codes the engine
    itself emits.
    """

    # Intervention lifecycle
    INTERVENTION_CREATED = "INTERVENTION_CREATED"
    INTERVENTION_UPDATED = "INTERVENTION_UPDATED"
    INTERVENTION_COMPLETED = "INTERVENTION_COMPLETED"
    INTERVENTION_CANCELLED = "INTERVENTION_CANCELLED"
    INTERVENTION_DELETED = "INTERVENTION_DELETED"

    # Therapy review links
    INTERVENTION_LINK_TO_REVIEW = "INTERVENTION_LINK_TO_REVIEW"
    INTERVENTIONS_FROM_REVIEW = "INTERVENTIONS_FROM_REVIEW"

    # Strategies, outcome, follow-up
    INTERVENTION_ADD_STRATEGY = "INTERVENTION_ADD_STRATEGY"
    INTERVENTION_UPDATE_STRATEGY = "INTERVENTION_UPDATE_STRATEGY"
    INTERVENTION_RECORD_OUTCOME = "INTERVENTION_RECORD_OUTCOME"
    INTERVENTION_SCHEDULE_FOLLOW_UP = "INTERVENTION_SCHEDULE_FOLLOW_UP"
    INTERVENTION_RECORD_FOLLOW_UP = "INTERVENTION_RECORD_FOLLOW_UP"

    # Team assignments
    INTERVENTION_ASSIGN_TEAM_MEMBER = "INTERVENTION_ASSIGN_TEAM_MEMBER"
    INTERVENTION_UPDATE_ASSIGNMENT_STATUS = "INTERVENTION_UPDATE_ASSIGNMENT_STATUS"
    INTERVENTION_REMOVE_ASSIGNMENT = "INTERVENTION_REMOVE_ASSIGNMENT"

    # Data access
    ACCESS_INTERVENTION_VIEW = "ACCESS_INTERVENTION_VIEW"
    ACCESS_INTERVENTION_EXPORT = "ACCESS_INTERVENTION_EXPORT"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


class ComplianceCategory(str, enum.Enum):
    CLINICAL_DOCUMENTATION = "clinical_documentation"
    PATIENT_SAFETY = "patient_safety"
    DATA_ACCESS = "data_access"
    SYSTEM_SECURITY = "system_security"
    WORKFLOW_COMPLIANCE = "workflow_compliance"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


HIGH_RISK_LEVELS: frozenset[RiskLevel] = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})

INTERVENTION_RESOURCE = "Intervention"


# ---------------------------------------------------------------------------
# Detail shapes (tagged union)
# ---------------------------------------------------------------------------

class CreatedDetails(BaseModel):
    kind: Literal["created"] = "created"
    intervention_number: str
    category: str
    priority: str
    duplicates_found: int = 0
    strategies_count: int = 0


class StatusChange(BaseModel):
    previous: str
    new: str


class UpdatedDetails(BaseModel):
    kind: Literal["updated"] = "updated"
    intervention_number: str
    updates: list[str] = Field(default_factory=list)
    status_change: Optional[StatusChange] = None


class DeletedDetails(BaseModel):
    kind: Literal["deleted"] = "deleted"
    intervention_number: str
    status: str


class ReviewLinkDetails(BaseModel):
    kind: Literal["review_link"] = "review_link"
    review_id: str
    review_number: str = ""


class ReviewBatchDetails(BaseModel):
    kind: Literal["review_batch"] = "review_batch"
    review_id: str
    review_number: str = ""
    problem_ids: list[str] = Field(default_factory=list)
    intervention_ids: list[str] = Field(default_factory=list)


class StrategyDetails(BaseModel):
    kind: Literal["strategy"] = "strategy"
    strategy_id: str
    strategy_type: str
    updated_fields: list[str] = Field(default_factory=list)


class OutcomeDetails(BaseModel):
    kind: Literal["outcome"] = "outcome"
    patient_response: Optional[str] = None
    problem_resolved: bool = False
    status_change: Optional[StatusChange] = None


class FollowUpDetails(BaseModel):
    kind: Literal["follow_up"] = "follow_up"
    required: bool
    scheduled_date: Optional[datetime] = None
    completed: bool = False


class AssignmentDetails(BaseModel):
    kind: Literal["assignment"] = "assignment"
    assigned_user_id: str
    role: Optional[str] = None
    task: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: Optional[str] = None


class AccessDetails(BaseModel):
    kind: Literal["access"] = "access"
    access_type: str
    record_count: Optional[int] = None


class GenericDetails(BaseModel):
    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)


AuditDetails = Annotated[
    Union[
        CreatedDetails,
        UpdatedDetails,
        DeletedDetails,
        ReviewLinkDetails,
        ReviewBatchDetails,
        StrategyDetails,
        OutcomeDetails,
        FollowUpDetails,
        AssignmentDetails,
        AccessDetails,
        GenericDetails,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry.

    Records who did what to which resource, for which tenant, with
    before/after snapshots where the action changed state, and a hash link
    to the previous entry for tamper evidence.
    """

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="UTC timestamp of the event.",
    )
    tenant_id: str = Field(
        ...,
        description="Tenant identifier -- scopes this entry for multi-tenant isolation.",
    )
    actor_id: str = Field(..., description="Identifier of the acting user or ``SYSTEM``.")
    actor_role: str = Field(default="SYSTEM", description="Workplace role of the actor.")
    action: str = Field(..., description="Action code, usually an ``AuditAction`` value.")
    resource_type: str = Field(default=INTERVENTION_RESOURCE)
    resource_id: str = Field(default="")
    patient_id: Optional[str] = Field(default=None)
    intervention_id: Optional[str] = Field(default=None)
    ip_address: Optional[str] = Field(default=None)
    session_id: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    old_values: Optional[dict[str, Any]] = Field(default=None, description="Snapshot before the change.")
    new_values: Optional[dict[str, Any]] = Field(default=None, description="Snapshot after the change.")
    changed_fields: list[str] = Field(default_factory=list)
    details: Optional[AuditDetails] = Field(default=None)
    compliance_category: Optional[ComplianceCategory] = Field(
        default=None,
        description="Filled in by ``AuditLog.append`` when not supplied.",
    )
    risk_level: Optional[RiskLevel] = Field(
        default=None,
        description="Filled in by ``AuditLog.append`` when not supplied.",
    )
    error_message: Optional[str] = Field(default=None)
    duration_ms: Optional[int] = Field(default=None, ge=0)
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry ever appended."
        ),
    )

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v: Any) -> Any:
        if isinstance(v, enum.Enum):
            return v.value
        return v

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in HIGH_RISK_LEVELS

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

def changed_fields(
    old_values: Optional[dict[str, Any]],
    new_values: Optional[dict[str, Any]],
) -> list[str]:
    """Return keys whose JSON representation differs between two snapshots.

    Compares the union of both key sets, so keys present on only one side
    count as changed.  Order follows first appearance (old keys, then new).
    """
    if old_values is None or new_values is None:
        return []
    keys = list(old_values)
    keys.extend(k for k in new_values if k not in old_values)
    changed = []
    for key in keys:
        before = json.dumps(old_values.get(key), sort_keys=True, default=str)
        after = json.dumps(new_values.get(key), sort_keys=True, default=str)
        if before != after:
            changed.append(key)
    return changed


def determine_risk_level(action: str, details: Optional[BaseModel] = None) -> RiskLevel:
    """Classify an action code by risk.

    Destructive actions (delete, cancel, failed login) are critical.
    Outcome recording, completion, exports, and anything touching a
    critical-priority intervention are high.  Edits, assignments, and
    strategy changes are medium.  Everything else (creation, reads) is low.
    """
    if "DELETE" in action or "CANCEL" in action or "FAILED_LOGIN" in action:
        return RiskLevel.CRITICAL
    if (
        "OUTCOME" in action
        or "COMPLETE" in action
        or "EXPORT" in action
        or "BULK" in action
        or getattr(details, "priority", None) == "critical"
    ):
        return RiskLevel.HIGH
    if "UPDATE" in action or "ASSIGN" in action or "STRATEGY" in action:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def determine_compliance_category(action: str) -> ComplianceCategory:
    if action.startswith("ACCESS") or "PATIENT" in action or "EXPORT" in action:
        return ComplianceCategory.DATA_ACCESS
    if "INTERVENTION" in action or "REVIEW" in action or "PROBLEM" in action:
        return ComplianceCategory.CLINICAL_DOCUMENTATION
    if "LOGIN" in action or "LOGOUT" in action or "FAILED" in action:
        return ComplianceCategory.SYSTEM_SECURITY
    if "WORKFLOW" in action or "STEP" in action:
        return ComplianceCategory.WORKFLOW_COMPLIANCE
    return ComplianceCategory.CLINICAL_DOCUMENTATION


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

# Patterns that might appear in free-text details and are redacted before export.
_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

# Keys likely to hold patient identifiers; their values are fully redacted.
_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "patient_name", "dob",
             "date_of_birth", "ssn", "email", "phone", "address", "zip_code", "mrn"}


def redact_phi(data: Any) -> Any:
    """Return a copy of ``data`` with PHI-looking keys and substrings redacted.

    Walks nested dicts and lists.  Applied to details and value snapshots
    before any export leaves the secure environment.
    """
    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if str(key).lower() in _PHI_KEYS:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = redact_phi(value)
        return redacted
    if isinstance(data, list):
        return [redact_phi(item) for item in data]
    if isinstance(data, str):
        for pattern_name, pattern in _PHI_PATTERNS.items():
            data = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", data)
        return data
    return data


# ---------------------------------------------------------------------------
# Query and result models
# ---------------------------------------------------------------------------

class AuditFilters(BaseModel):
    """Optional filters for ``AuditLog.query``; unset fields match everything."""

    actor_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    compliance_category: Optional[ComplianceCategory] = None
    risk_level: Optional[RiskLevel] = None
    patient_id: Optional[str] = None
    intervention_id: Optional[str] = None
    ip_address: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v: Any) -> Any:
        if isinstance(v, enum.Enum):
            return v.value
        return v

    @field_validator("start", "end")
    @classmethod
    def bounds_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def matches(self, entry: AuditEntry) -> bool:
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        if self.action is not None and entry.action != self.action:
            return False
        if self.resource_type is not None and entry.resource_type != self.resource_type:
            return False
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.compliance_category is not None and entry.compliance_category != self.compliance_category:
            return False
        if self.risk_level is not None and entry.risk_level != self.risk_level:
            return False
        if self.patient_id is not None and entry.patient_id != self.patient_id:
            return False
        if self.intervention_id is not None and entry.intervention_id != self.intervention_id:
            return False
        if self.ip_address is not None and entry.ip_address != self.ip_address:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        return True


class AuditPage(BaseModel):
    entries: list[AuditEntry]
    total: int
    page: int
    limit: int


class AuditSummary(BaseModel):
    total_actions: int = 0
    unique_actors: int = 0
    risk_activities: int = 0
    last_activity: Optional[datetime] = None
    error_count: int = 0
    error_rate: float = 0.0


class SuspiciousActivity(BaseModel):
    """An (actor, source address) group that exceeded activity limits."""

    actor_id: str
    ip_address: Optional[str]
    action_count: int
    error_count: int
    error_rate: float
    first_seen: datetime
    last_seen: datetime


_SORT_FIELDS = {"timestamp", "action", "actor_id", "risk_level"}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    * **Append-only writes** -- there is no ``update()``; the only removal
      path is the retention job, ``purge()``.
    * **Hash chain verification** -- ``verify_chain()`` walks the retained
      log and detects any modification.
    * **Auto-classification** -- entries appended without a compliance
      category or risk level get one derived from the action code.
    * **Multi-tenant isolation** -- every read is scoped by ``tenant_id``
      and returns deep copies.

    Appends are serialized under a lock so the chain stays linear when
    several request threads write at once.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes
        self._last_hash = ""  # hash of the most recently appended entry, even if purged
        # entry_id -> hash of its purged predecessor
        self._purged_links: dict[str, str] = {}
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append a new entry to the audit log.

        Fills in compliance category and risk level when absent, links the
        entry to its predecessor, and logs a warning for high-risk entries.
        The caller's object is never stored.

        Args:
            entry: The audit entry to append.

        Returns:
            A copy of the stored entry with ``previous_hash`` populated.
        """
        entry = entry.model_copy(deep=True)
        if entry.compliance_category is None:
            entry.compliance_category = determine_compliance_category(entry.action)
        if entry.risk_level is None:
            entry.risk_level = determine_risk_level(entry.action, entry.details)

        with self._lock:
            entry.previous_hash = self._last_hash
            if self._last_hash and (not self._hashes or self._hashes[-1] != self._last_hash):
                self._purged_links[entry.entry_id] = self._last_hash
            entry_hash = entry.compute_hash()
            self._entries.append(entry)
            self._hashes.append(entry_hash)
            self._last_hash = entry_hash
            stored = entry.model_copy(deep=True)

        if stored.is_high_risk:
            logger.warning(
                "High-risk activity detected: action=%s actor=%s tenant=%s risk=%s",
                stored.action, stored.actor_id, stored.tenant_id, stored.risk_level.value,
            )
        return stored

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        An entry whose predecessor was purged is checked against the hash
        recorded for it at purge time.

        Returns:
            A tuple of ``(valid, broken_at)`` where ``broken_at`` is the index
            of the first broken link (or None if the chain is intact).
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)
            purged_links = dict(self._purged_links)

        expected_prev = ""
        for i, entry in enumerate(entries):
            expected_prev = purged_links.get(entry.entry_id, expected_prev)
            if entry.previous_hash != expected_prev:
                return (False, i)
            recomputed = entry.compute_hash()
            if hashes[i] != recomputed:
                return (False, i)
            expected_prev = recomputed

        return (True, None)

    def select(
        self, tenant_id: str, filters: Optional[AuditFilters] = None
    ) -> list[AuditEntry]:
        """Return copies of every tenant entry matching ``filters``, oldest first."""
        filters = filters or AuditFilters()
        with self._lock:
            entries = list(self._entries)
        return [
            entry.model_copy(deep=True)
            for entry in entries
            if entry.tenant_id == tenant_id and filters.matches(entry)
        ]

    def query(
        self,
        tenant_id: str,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        limit: int = 50,
        sort: str = "-timestamp",
        max_limit: int = 1000,
    ) -> AuditPage:
        """Query audit entries with multi-tenant isolation and pagination.

        Args:
            tenant_id: Required.  Only entries for this tenant are returned.
            filters: Optional ``AuditFilters``.
            page: 1-based page number.
            limit: Page size, capped at ``max_limit``.
            sort: Field name, prefixed with ``-`` for descending order.

        Returns:
            An ``AuditPage`` with the requested slice and the total match count.

        Raises:
            ValueError: If ``sort`` names an unsupported field.
        """
        descending = sort.startswith("-")
        field = sort.lstrip("-")
        if field not in _SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{field}'. Allowed: {sorted(_SORT_FIELDS)}")

        page = max(page, 1)
        limit = min(max(limit, 1), max_limit)

        matches = self.select(tenant_id, filters)
        matches.sort(key=lambda e: (_sort_value(e, field), e.timestamp), reverse=descending)
        offset = (page - 1) * limit
        return AuditPage(
            entries=matches[offset:offset + limit],
            total=len(matches),
            page=page,
            limit=limit,
        )

    def summarize(
        self, tenant_id: str, date_range: Optional[DateRange] = None
    ) -> AuditSummary:
        """Aggregate statistics for a tenant, optionally within a date range."""
        filters = AuditFilters()
        if date_range is not None:
            filters = AuditFilters(start=date_range.start, end=date_range.end)
        entries = self.select(tenant_id, filters)
        if not entries:
            return AuditSummary()

        errors = sum(1 for e in entries if e.error_message is not None)
        return AuditSummary(
            total_actions=len(entries),
            unique_actors=len({e.actor_id for e in entries}),
            risk_activities=sum(1 for e in entries if e.is_high_risk),
            last_activity=max(e.timestamp for e in entries),
            error_count=errors,
            error_rate=errors / len(entries) * 100,
        )

    def find_suspicious(
        self,
        tenant_id: str,
        window_hours: int = 24,
        max_actions: int = 100,
        max_errors: int = 10,
        now: Optional[datetime] = None,
    ) -> list[SuspiciousActivity]:
        """Flag (actor, source address) groups with unusual activity.

        A group is flagged when, within the trailing window, its action count
        exceeds ``max_actions`` or its error count exceeds ``max_errors``.

        Returns:
            Flagged groups sorted by action count, highest first.
        """
        now = as_utc(now) or utcnow()
        window = AuditFilters(start=now - timedelta(hours=window_hours), end=now)

        groups: dict[tuple[str, Optional[str]], list[AuditEntry]] = {}
        for entry in self.select(tenant_id, window):
            groups.setdefault((entry.actor_id, entry.ip_address), []).append(entry)

        flagged = []
        for (actor_id, ip_address), entries in groups.items():
            errors = sum(1 for e in entries if e.error_message is not None)
            if len(entries) <= max_actions and errors <= max_errors:
                continue
            flagged.append(SuspiciousActivity(
                actor_id=actor_id,
                ip_address=ip_address,
                action_count=len(entries),
                error_count=errors,
                error_rate=errors / len(entries) * 100,
                first_seen=min(e.timestamp for e in entries),
                last_seen=max(e.timestamp for e in entries),
            ))

        flagged.sort(key=lambda s: s.action_count, reverse=True)
        return flagged

    def purge(
        self,
        older_than_days: int,
        now: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Retention job: permanently remove entries older than the window.

        Applies across all tenants unless ``tenant_id`` is given, and removes
        every expired entry, including back-dated entries that sit behind
        newer ones.  A retained entry whose predecessor is removed keeps
        that predecessor's hash as its link, so the retained chain still
        verifies.

        Args:
            older_than_days: Retention window in days.
            tenant_id: Limit the purge to one tenant's entries.

        Returns:
            Number of entries removed.

        Raises:
            ValueError: If ``older_than_days`` is negative.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff = (as_utc(now) or utcnow()) - timedelta(days=older_than_days)

        with self._lock:
            kept_entries: list[AuditEntry] = []
            kept_hashes: list[str] = []
            purged_links: dict[str, str] = {}
            removed_hash: Optional[str] = None
            for entry, entry_hash in zip(self._entries, self._hashes):
                expired = entry.timestamp < cutoff and (
                    tenant_id is None or entry.tenant_id == tenant_id
                )
                if expired:
                    removed_hash = entry_hash
                    continue
                link = self._purged_links.get(entry.entry_id)
                if removed_hash is not None:
                    link = removed_hash
                if link is not None:
                    purged_links[entry.entry_id] = link
                removed_hash = None
                kept_entries.append(entry)
                kept_hashes.append(entry_hash)
            removed = len(self._entries) - len(kept_entries)
            self._entries = kept_entries
            self._hashes = kept_hashes
            self._purged_links = purged_links

        if removed:
            logger.info("Audit retention purge removed %d entries older than %s", removed, cutoff.isoformat())
        return removed

    def export_for_review(
        self,
        tenant_id: str,
        date_range: Optional[DateRange] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for compliance review.

        Applies PHI redaction to details and value snapshots, and includes
        the chain verification result.
        """
        filters = AuditFilters()
        if date_range is not None:
            filters = AuditFilters(start=date_range.start, end=date_range.end)
        entries = self.select(tenant_id, filters)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            for key in ("details", "old_values", "new_values"):
                entry_dict[key] = redact_phi(entry_dict[key])
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "tenant_id": tenant_id,
                "exported_at": utcnow().isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
                "scope_note": (
                    "This export uses SHA-256 hash chaining for structural tamper "
                    "evidence. Production deployment would use WORM storage, "
                    "object-lock, or a cryptographic commitment scheme."
                ),
            },
            "entries": redacted_entries,
        }

    @property
    def length(self) -> int:
        """Return the number of retained entries."""
        return len(self._entries)

    def tenants(self) -> list[str]:
        """Tenants with at least one retained entry."""
        with self._lock:
            return sorted({e.tenant_id for e in self._entries})

    def __len__(self) -> int:
        return len(self._entries)


def _sort_value(entry: AuditEntry, field: str) -> Any:
    value = getattr(entry, field)
    if isinstance(value, enum.Enum):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def apply_retention(
    audit_log: AuditLog,
    settings: SettingsRegistry,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Purge each tenant's entries using its own ``audit_retention_days``.

    Tenants without registered settings use the built-in default.

    Returns:
        Entries removed per tenant, for tenants that lost any.
    """
    removed: dict[str, int] = {}
    for tenant_id in audit_log.tenants():
        days = settings.get_or_default(tenant_id).audit_retention_days
        count = audit_log.purge(days, now=now, tenant_id=tenant_id)
        if count:
            removed[tenant_id] = count
    return removed


# ---------------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------------

def record_activity(
    audit_log: AuditLog,
    ctx: RequestContext,
    action: AuditAction | str,
    resource_id: str,
    *,
    resource_type: str = INTERVENTION_RESOURCE,
    patient_id: Optional[str] = None,
    intervention_id: Optional[str] = None,
    details: Optional[BaseModel] = None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    risk_level: Optional[RiskLevel] = None,
) -> Optional[AuditEntry]:
    """Write one audit entry for a workflow action.

    Audit writes are best-effort relative to the workflow: a failure is
    logged and swallowed so it never fails the operation that triggered it.

    Returns:
        The stored entry, or None if the write failed.
    """
    try:
        return audit_log.append(AuditEntry(
            tenant_id=ctx.tenant_id,
            actor_id=ctx.user_id,
            actor_role=ctx.user_role,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            patient_id=patient_id,
            intervention_id=intervention_id,
            ip_address=ctx.ip_address,
            session_id=ctx.session_id,
            user_agent=ctx.user_agent,
            old_values=old_values,
            new_values=new_values,
            changed_fields=changed_fields(old_values, new_values),
            details=details,
            risk_level=risk_level,
        ))
    except Exception:
        logger.exception("Failed to write audit entry: action=%s resource=%s", action, resource_id)
        return None
