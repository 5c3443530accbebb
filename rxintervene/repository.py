"""
Tenant-scoped intervention storage.

An in-memory stand-in for the persistence collaborator.  It provides what
the workflow relies on from a document store:

* **Tenant isolation** -- every read and write is keyed by ``tenant_id``;
  an intervention stored for tenant A is invisible to tenant B.
* **Sequential numbering** -- ``next_number`` issues ``CI-YYYYMM-NNNN``
  numbers from a per-tenant, per-month counter, so numbers are unique per
  tenant and monotonically issued.
* **Atomic document updates** -- ``mutate`` applies a change function to
  a working copy under a lock and stores the result only if the function
  returns normally.  Concurrent updates to the same intervention are
  serialized; without ``expected_version`` the later write wins.

Reads return deep copies; callers never hold a reference into the store.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional

from rxintervene.errors import NotFoundError, VersionConflictError
from rxintervene.models import Intervention, utcnow


class InterventionRepository:
    """In-memory, thread-safe intervention store."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Intervention]] = {}
        self._sequences: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def next_number(self, tenant_id: str, now: Optional[datetime] = None) -> str:
        """Issue the next intervention number for a tenant."""
        period = (now or utcnow()).strftime("%Y%m")
        with self._lock:
            seq = self._sequences.get((tenant_id, period), 0) + 1
            self._sequences[(tenant_id, period)] = seq
        return f"CI-{period}-{seq:04d}"

    def add(self, intervention: Intervention) -> Intervention:
        """Store a new intervention.

        Raises:
            ValueError: If the id or number is already used in the tenant.
        """
        with self._lock:
            bucket = self._items.setdefault(intervention.tenant_id, {})
            if intervention.intervention_id in bucket:
                raise ValueError(
                    f"Intervention '{intervention.intervention_id}' already exists"
                )
            if intervention.intervention_number and any(
                i.intervention_number == intervention.intervention_number
                for i in bucket.values()
            ):
                raise ValueError(
                    f"Intervention number '{intervention.intervention_number}' already issued"
                )
            bucket[intervention.intervention_id] = intervention.model_copy(deep=True)
        return intervention.model_copy(deep=True)

    def get(
        self,
        tenant_id: str,
        intervention_id: str,
        include_deleted: bool = False,
    ) -> Optional[Intervention]:
        with self._lock:
            stored = self._items.get(tenant_id, {}).get(intervention_id)
            if stored is None or (stored.is_deleted and not include_deleted):
                return None
            return stored.model_copy(deep=True)

    def find(
        self,
        tenant_id: str,
        predicate: Optional[Callable[[Intervention], bool]] = None,
        include_deleted: bool = False,
    ) -> list[Intervention]:
        """Return copies of matching interventions in insertion order."""
        with self._lock:
            stored = list(self._items.get(tenant_id, {}).values())
        results = []
        for intervention in stored:
            if intervention.is_deleted and not include_deleted:
                continue
            if predicate is not None and not predicate(intervention):
                continue
            results.append(intervention.model_copy(deep=True))
        return results

    def mutate(
        self,
        tenant_id: str,
        intervention_id: str,
        change: Callable[[Intervention], None],
        expected_version: Optional[int] = None,
    ) -> tuple[Intervention, Intervention]:
        """Atomically apply ``change`` to a stored intervention.

        ``change`` receives a working copy and edits it in place; if it
        raises, nothing is stored and the exception propagates.

        Args:
            tenant_id: Owning tenant.
            intervention_id: Target intervention (soft-deleted ones are absent).
            change: In-place edit function.
            expected_version: When given, the stored version must match.

        Returns:
            ``(before, after)`` copies.

        Raises:
            NotFoundError: If the intervention is absent in this tenant.
            VersionConflictError: If ``expected_version`` does not match.
        """
        with self._lock:
            stored = self._items.get(tenant_id, {}).get(intervention_id)
            if stored is None or stored.is_deleted:
                raise NotFoundError("Clinical intervention not found")
            if expected_version is not None and stored.version != expected_version:
                raise VersionConflictError(intervention_id, expected_version, stored.version)

            before = stored.model_copy(deep=True)
            working = stored.model_copy(deep=True)
            change(working)
            working.version = stored.version + 1
            working.updated_at = utcnow()
            self._items[tenant_id][intervention_id] = working
            return before, working.model_copy(deep=True)

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return sum(1 for i in self._items.get(tenant_id, {}).values() if not i.is_deleted)
