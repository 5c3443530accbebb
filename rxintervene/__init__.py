"""
RxIntervene Clinical Intervention Engine
========================================

A Python engine for pharmacist-initiated clinical interventions in a
multi-tenant pharmacy platform.  Provides the intervention lifecycle state
machine with strategy and care-team assignment sub-workflows, rule-based
strategy recommendations, an append-only, tamper-evident audit log, and
compliance and outcome analytics built on that log.

DISCLAIMER: Interventions document professional judgement made by licensed
pharmacists.  Strategy recommendations and cost-savings estimates are
decision-support aids; every clinical action remains the responsibility
of the care team.
"""

__version__ = "0.1.0"
