"""
Report and audit exports (JSON and CSV).

* ``export_audit_entries`` -- raw audit entries.  JSON strips the internal
  hash-chain field and redacts PHI from details and value snapshots; CSV
  writes one flat row per entry.
* ``compliance_report_to_csv`` -- one row per intervention, then, when the
  report carries risk-flagged entries, a blank line and a ``violations``
  block listing them.
* ``export_interventions`` -- intervention listings for offline review.
* ``export_audit_log`` -- tenant-scoped audit export that is itself audited.

Any other format raises ``ValidationError``.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any, Iterable, Optional

from rxintervene.audit import (
    AccessDetails,
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditLog,
    redact_phi,
    record_activity,
)
from rxintervene.errors import ValidationError
from rxintervene.models import Intervention, RequestContext
from rxintervene.reports import ComplianceReport

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

# Internal fields left out of JSON audit exports.
_HOUSEKEEPING_FIELDS = {"previous_hash"}

AUDIT_CSV_COLUMNS = [
    "timestamp",
    "action",
    "actor_id",
    "actor_role",
    "resource_type",
    "resource_id",
    "patient_id",
    "intervention_id",
    "compliance_category",
    "risk_level",
    "changed_fields",
    "ip_address",
    "error_message",
]

COMPLIANCE_CSV_COLUMNS = [
    "intervention_number",
    "intervention_id",
    "audit_count",
    "risk_activities",
    "compliance_status",
    "risk_level",
    "last_audit",
]

VIOLATION_CSV_COLUMNS = [
    "timestamp",
    "action",
    "actor_id",
    "intervention_id",
    "risk_level",
    "compliance_category",
]

INTERVENTION_CSV_COLUMNS = [
    "intervention_number",
    "patient_id",
    "category",
    "priority",
    "status",
    "issue_description",
    "identified_by",
    "identified_at",
    "completed_at",
    "patient_response",
    "strategies_count",
    "assignments_count",
]


def _check_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format: {fmt}",
            [f"format must be one of {list(EXPORT_FORMATS)}"],
        )
    return fmt


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, list):
        return ";".join(str(v) for v in value)
    return str(value)


def _write_csv(header: list[str], rows: Iterable[list[Any]], writer=None, buffer=None) -> str:
    buffer = buffer or io.StringIO()
    writer = writer or csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return buffer.getvalue()


def audit_entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    """JSON-safe export form of one entry, redacted and without chain fields."""
    data = entry.model_dump(mode="json", exclude=_HOUSEKEEPING_FIELDS)
    for key in ("details", "old_values", "new_values"):
        data[key] = redact_phi(data[key])
    return data


def export_audit_entries(entries: list[AuditEntry], fmt: str = "json") -> str:
    """Serialize audit entries as JSON or CSV text.

    Raises:
        ValidationError: If ``fmt`` is not ``json`` or ``csv``.
    """
    fmt = _check_format(fmt)
    if fmt == "json":
        return json.dumps([audit_entry_to_dict(e) for e in entries], indent=2)
    return _write_csv(
        AUDIT_CSV_COLUMNS,
        ([getattr(e, column) for column in AUDIT_CSV_COLUMNS] for e in entries),
    )


def compliance_report_to_csv(report: ComplianceReport) -> str:
    """Flatten a compliance report to CSV with a trailing violations block."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    _write_csv(
        COMPLIANCE_CSV_COLUMNS,
        ([getattr(row, column) for column in COMPLIANCE_CSV_COLUMNS] for row in report.interventions),
        writer,
        buffer,
    )
    if report.violations:
        writer.writerow([])
        writer.writerow(["violations"])
        _write_csv(
            VIOLATION_CSV_COLUMNS,
            ([getattr(v, column) for column in VIOLATION_CSV_COLUMNS] for v in report.violations),
            writer,
            buffer,
        )
    return buffer.getvalue()


def _intervention_row(intervention: Intervention) -> list[Any]:
    response = None
    if intervention.outcome is not None:
        response = intervention.outcome.patient_response
    return [
        intervention.intervention_number,
        intervention.patient_id,
        intervention.category,
        intervention.priority,
        intervention.status,
        intervention.issue_description,
        intervention.identified_by,
        intervention.identified_at,
        intervention.completed_at,
        response or "N/A",
        len(intervention.strategies),
        len(intervention.assignments),
    ]


def export_interventions(interventions: list[Intervention], fmt: str = "csv") -> str:
    """Serialize interventions as JSON or CSV text.

    Raises:
        ValidationError: If ``fmt`` is not ``json`` or ``csv``.
    """
    fmt = _check_format(fmt)
    if fmt == "json":
        return json.dumps([i.model_dump(mode="json") for i in interventions], indent=2)
    return _write_csv(INTERVENTION_CSV_COLUMNS, (_intervention_row(i) for i in interventions))


def export_audit_log(
    audit_log: AuditLog,
    ctx: RequestContext,
    fmt: str = "json",
    filters: Optional[AuditFilters] = None,
) -> str:
    """Export the caller's tenant audit entries and record the export.

    The ``AUDIT_EXPORTED`` entry is written after the selection, so it is
    not part of the exported data.

    Raises:
        ValidationError: If ``fmt`` is not ``json`` or ``csv``.
    """
    fmt = _check_format(fmt)
    entries = audit_log.select(ctx.tenant_id, filters)
    data = export_audit_entries(entries, fmt)
    record_activity(
        audit_log,
        ctx,
        AuditAction.AUDIT_EXPORTED,
        ctx.tenant_id,
        resource_type="AuditLog",
        details=AccessDetails(access_type="export", record_count=len(entries)),
    )
    logger.info("Exported %d audit entries for tenant %s as %s", len(entries), ctx.tenant_id, fmt)
    return data
